# -*- coding: utf-8 -*-
"""Google Cloud Secret Manager as the credential store.

Secret Manager has no leases, so every read gets a non renewable lease of
``static_refresh_seconds`` and the scheduler simply refetches on that period.
"""

import base64
import json
import logging
import re
import threading
from datetime import timezone

import google.auth
import google.auth.exceptions
from google.api_core import exceptions
from google.cloud import secretmanager, secretmanager_v1

from .exceptions import AuthError, NoActiveSecretVersion, SecretNotFound, \
    SecretPermissionDenied, TransientFetchError
from .models import AuthToken, Credential, Lease, utcnow
from .store_client import CredentialStoreClient

SECRET_TRANSIENT_EXCEPTIONS = (exceptions.ServerError,
                               exceptions.TooManyRequests)

"""
Selecting the version to read.

This does not use the "latest" alias. It takes the most recent ENABLED
version, so rolling back is done by disabling the newest version.

A path may pin a version, projects/<p>/secrets/<s>/versions/<n>. The version
read is then the most recent enabled version whose number is at or below n.
Version numbers only ever increase so that is also the latest in time.
A pinned "latest" behaves as if no version was given.
"""

SECRET_VERSION_RE = r'(projects/[^/]+/secrets/[^/]+)/versions/([0-9]+|latest)'
VERSION_NUMBER_RE = r'projects/[^/]+/secrets/[^/]+/versions/([0-9]+)'


def split_secret_path(path):
    match = re.search(SECRET_VERSION_RE, path)
    if not match:
        return path, None
    max_version = match.group(2)
    if max_version == "latest":
        max_version = None
    return match.group(1), max_version


class GCPSecretManagerClient(CredentialStoreClient):

    def __init__(self, static_refresh_seconds=300, _credentials_callback=None, _client_factory=None):
        self._static_refresh_seconds = static_refresh_seconds
        self._credentials_callback = _credentials_callback
        self._client_factory = _client_factory or secretmanager.SecretManagerServiceClient
        self.ns = threading.local()

    def login(self, role_config):
        """Resolve Google credentials. The role is informational only here."""
        try:
            if self._credentials_callback is not None:
                credentials, _project_id = self._credentials_callback()
            else:
                credentials, _project_id = google.auth.default()
        except google.auth.exceptions.GoogleAuthError as e:
            raise AuthError(role_config.role, f"no google credentials: {e}") from e

        # google-auth refreshes these itself, the lease only paces our re-login
        expiry = getattr(credentials, "expiry", None)
        ttl = 0
        if expiry is not None:
            ttl = max(int((expiry.replace(tzinfo=timezone.utc) - utcnow()).total_seconds()), 0)
        lease = Lease(lease_id="", ttl_seconds=ttl, renewable=False)
        return AuthToken(value="", lease=lease, extra=credentials)

    def _client(self, token):
        # a client per thread, rebuilt whenever a new login hands us new credentials
        if getattr(self.ns, "credentials", None) is not token.extra:
            self.ns.client = self._client_factory(credentials=token.extra)
            self.ns.credentials = token.extra
        return self.ns.client

    def _latest_enabled(self, client, secret_name, max_version):
        request = secretmanager_v1.ListSecretVersionsRequest(
            parent=secret_name,
            filter="state=ENABLED"
        )
        page_result = client.list_secret_versions(request=request)
        latest = None
        for response in sorted(page_result, key=lambda d: d.create_time):
            if max_version:
                version_num = int(re.search(VERSION_NUMBER_RE, response.name).group(1))
                if version_num == int(max_version):
                    latest = response
                    break
                if version_num > int(max_version):
                    continue
            if latest is None or latest.create_time < response.create_time:
                latest = response
        return latest

    def fetch_secret(self, path, token):
        secret_name, max_version = split_secret_path(path)
        client = self._client(token)
        try:
            latest = self._latest_enabled(client, secret_name, max_version)
            if not latest:
                raise NoActiveSecretVersion(secret_name)

            request = secretmanager_v1.AccessSecretVersionRequest(
                name=latest.name
            )
            payload = client.access_secret_version(request).payload.data
        except exceptions.NotFound as e:
            raise SecretNotFound(path, e.message, status=404) from e
        except exceptions.PermissionDenied as e:
            raise SecretPermissionDenied(path, e.message, status=403) from e
        except SECRET_TRANSIENT_EXCEPTIONS as e:
            raise TransientFetchError(path, e.message, status=e.code) from e
        except exceptions.GoogleAPICallError as e:
            raise TransientFetchError(path, e.message) from e

        lease = Lease(lease_id=latest.name,
                      ttl_seconds=self._static_refresh_seconds,
                      renewable=False,
                      issued_at=utcnow())
        logging.getLogger(__name__).debug(f"Read {latest.name}")
        return Credential(data=self._fields(payload), lease=lease)

    @staticmethod
    def _fields(payload):
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError:
            # binary secrets (keystores, keytabs) are published base64 encoded
            return {"value": base64.b64encode(payload).decode("ascii"), "encoding": "base64"}
        try:
            document = json.loads(text)
        except json.decoder.JSONDecodeError:
            return {"value": text}
        if isinstance(document, dict):
            return document
        return {"value": text}
