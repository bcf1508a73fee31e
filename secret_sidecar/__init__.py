# -*- coding: utf-8 -*-
"""secret_sidecar

A sidecar that logs in to a secret store, publishes a secret to a file with an
atomic rename, and keeps it renewed ahead of its lease expiry so the
application next to it always finds a complete, current credential.

"""

from secret_sidecar.exceptions import SidecarError, \
    ConfigError, \
    AuthError, \
    FetchError, \
    SecretNotFound, \
    SecretPermissionDenied, \
    TransientFetchError, \
    NoActiveSecretVersion, \
    PublishError
from secret_sidecar.models import Credential, Lease, AuthToken
from secret_sidecar.lease import LeaseTracker, RENEW, REFETCH
from secret_sidecar.publisher import AtomicPublisher
from secret_sidecar.identity import RoleConfig, IdentitySource, FileIdentity, GoogleIdentity
from secret_sidecar.store_client import CredentialStoreClient, HTTPStoreClient
from secret_sidecar.gcp_store import GCPSecretManagerClient
from secret_sidecar.scheduler import State, Backoff, RenewalScheduler
from secret_sidecar.config import SidecarConfig, load_config
from secret_sidecar.controller import SidecarController
from secret_sidecar.consumer import read_credential, InjectPublishedSecret
from ._version import __version__

__all__ = ["__version__",
           "SidecarError",
           "ConfigError",
           "AuthError",
           "FetchError",
           "SecretNotFound",
           "SecretPermissionDenied",
           "TransientFetchError",
           "NoActiveSecretVersion",
           "PublishError",
           "Credential",
           "Lease",
           "AuthToken",
           "LeaseTracker",
           "RENEW",
           "REFETCH",
           "AtomicPublisher",
           "RoleConfig",
           "IdentitySource",
           "FileIdentity",
           "GoogleIdentity",
           "CredentialStoreClient",
           "HTTPStoreClient",
           "GCPSecretManagerClient",
           "State",
           "Backoff",
           "RenewalScheduler",
           "SidecarConfig",
           "load_config",
           "SidecarController",
           "read_credential",
           "InjectPublishedSecret"]
