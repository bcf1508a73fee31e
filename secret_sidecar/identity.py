# -*- coding: utf-8 -*-
"""Workload identity sources presented to the store at login."""

from abc import ABC, abstractmethod
from dataclasses import dataclass

import google.auth.exceptions
import google.auth.transport.requests
import google.oauth2.id_token

from .config import DEFAULT_IDENTITY_TOKEN_PATH


class IdentitySource(ABC):

    @abstractmethod
    def token(self):
        """Return the current identity token as a string.

        Raises OSError or ValueError when no identity is available.
        """


class FileIdentity(IdentitySource):
    """A token mounted into the pod, e.g. a projected service account token.

    The kubelet rotates the file, so it is read again on every login.
    """

    def __init__(self, path=DEFAULT_IDENTITY_TOKEN_PATH):
        self._path = path

    @property
    def path(self):
        return self._path

    def token(self):
        with open(self._path, "r", encoding="utf-8") as fh:
            value = fh.read().strip()
        if not value:
            raise ValueError(f"identity token file {self._path} is empty")
        return value


class GoogleIdentity(IdentitySource):
    """A Google signed ID token for ``audience``, from the metadata server or ADC."""

    def __init__(self, audience, _request_callback=None):
        self._audience = audience
        self._request_callback = _request_callback

    def token(self):
        request = self._request_callback() if self._request_callback is not None \
            else google.auth.transport.requests.Request()
        try:
            return google.oauth2.id_token.fetch_id_token(request, self._audience)
        except google.auth.exceptions.GoogleAuthError as e:
            raise ValueError(f"could not obtain google identity token: {e}") from e


@dataclass(frozen=True)
class RoleConfig:
    """Who the sidecar logs in as."""

    role: str
    identity: IdentitySource


def identity_from_config(config):
    if config.identity_source == "google":
        return GoogleIdentity(config.identity_audience)
    return FileIdentity(config.identity_token_path)
