# -*- coding: utf-8 -*-
"""Clients that speak to the secret store.

``CredentialStoreClient`` is the interface the scheduler drives. The HTTP
implementation below talks to a Vault style API:

    POST /auth/login              {"role": ..., "jwt": ...}   -> {"auth": {...}}
    GET  /secret/<path>           bearer token                -> {"data": {...}, "lease_id": ...}
    POST /auth/token/renew-self   bearer token                -> {"auth": {...}}
    PUT  /sys/leases/renew        {"lease_id": ...}           -> {"lease_id": ..., "lease_duration": ...}

None of the methods touch the published file, and none of them log secret
data or token values.
"""

import logging
import threading
from abc import ABC, abstractmethod

import requests

from .exceptions import AuthError, SecretNotFound, SecretPermissionDenied, TransientFetchError
from .models import AuthToken, Credential, Lease, utcnow


def _lease(lease_id, body):
    """Lease from a store response, ValueError/TypeError on a bad lease_duration."""
    return Lease(lease_id=lease_id,
                 ttl_seconds=int(body.get("lease_duration") or 0),
                 renewable=bool(body.get("renewable", False)),
                 issued_at=utcnow())


class CredentialStoreClient(ABC):
    """Abstract Base Class for a secret store backend.

    The scheduler owns the AuthToken returned by ``login`` but treats it as
    opaque; it is only ever handed back to the same client.
    """

    @abstractmethod
    def login(self, role_config):
        """Exchange the workload identity for a store session.

        Args:
            role_config (identity.RoleConfig): role name and identity source.

        Returns:
            models.AuthToken

        Raises:
            AuthError: network failure, invalid role, or store unavailable.
        """

    @abstractmethod
    def fetch_secret(self, path, token):
        """Read the secret at ``path``.

        Returns:
            models.Credential, whose ``lease`` is the lease the store granted.

        Raises:
            FetchError: one of SecretNotFound, SecretPermissionDenied or
                TransientFetchError.
        """

    def renew_token(self, token):
        """Extend the session. Backends without renewal make the caller log in again."""
        raise AuthError("<session>", "token renewal not supported")

    def renew_lease(self, credential, token):
        """Extend the lease on ``credential`` and return the Credential superseding it.

        The default always fails so the caller falls back to a full fetch.
        """
        raise TransientFetchError(credential.lease_id, "lease renewal not supported")

    def close(self):
        pass


class HTTPStoreClient(CredentialStoreClient):
    """Credential store client over HTTPS using requests.

    One ``requests.Session`` per thread, created lazily, in the same way the
    store clients are held per thread elsewhere in this package.
    """

    def __init__(self,
                 store_addr,
                 timeout=10.0,
                 verify=True,
                 login_path="auth/login",
                 secret_prefix="secret",
                 _session_factory=None):
        self._store_addr = store_addr.rstrip("/")
        self._timeout = timeout
        self._verify = verify
        self._login_path = login_path.strip("/")
        self._secret_prefix = secret_prefix.strip("/")
        self._session_factory = _session_factory or requests.Session
        self._sessions = []
        self._sessions_lock = threading.Lock()
        self.ns = threading.local()

    @property
    def store_addr(self):
        return self._store_addr

    def _session(self):
        if not hasattr(self.ns, "session"):
            session = self._session_factory()
            session.verify = self._verify
            session.headers.update({"Accept": "application/json"})
            self.ns.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return self.ns.session

    def _url(self, *parts):
        return "/".join([self._store_addr] + [p.strip("/") for p in parts if p])

    @staticmethod
    def _auth_headers(token):
        return {"Authorization": f"Bearer {token.value}", "X-Vault-Token": token.value}

    def _request(self, method, url, **kwargs):
        return self._session().request(method, url, timeout=self._timeout, **kwargs)

    @staticmethod
    def _errors(response):
        try:
            body = response.json()
        except ValueError:
            return response.reason or ""
        errors = body.get("errors") if isinstance(body, dict) else None
        if isinstance(errors, list) and errors:
            return "; ".join(str(e) for e in errors)
        return response.reason or ""

    @staticmethod
    def _auth_token(body, role):
        auth = body.get("auth") if isinstance(body, dict) else None
        if not isinstance(auth, dict) or not auth.get("client_token"):
            raise AuthError(role, "login response carried no client token")
        try:
            lease = _lease(auth.get("accessor", ""), auth)
        except (TypeError, ValueError):
            raise AuthError(role, "login response carried an invalid lease_duration") from None
        return AuthToken(value=auth["client_token"], lease=lease, accessor=auth.get("accessor", ""))

    def login(self, role_config):
        try:
            jwt = role_config.identity.token()
        except (OSError, ValueError) as e:
            raise AuthError(role_config.role, f"no workload identity: {e}") from e

        try:
            response = self._request("POST", self._url(self._login_path),
                                     json={"role": role_config.role, "jwt": jwt})
        except requests.RequestException as e:
            raise AuthError(role_config.role, f"store unreachable: {e.__class__.__name__}") from e

        if response.status_code != 200:
            raise AuthError(role_config.role,
                            f"HTTP {response.status_code} {self._errors(response)}".strip())
        try:
            body = response.json()
        except ValueError:
            raise AuthError(role_config.role, "login response is not JSON") from None

        token = self._auth_token(body, role_config.role)
        logging.getLogger(__name__).info(
            f"Logged in as role {role_config.role}, session ttl {token.lease.ttl_seconds}s")
        return token

    def renew_token(self, token):
        try:
            response = self._request("POST", self._url("auth/token/renew-self"),
                                     headers=self._auth_headers(token), json={})
        except requests.RequestException as e:
            raise AuthError("<session>", f"store unreachable: {e.__class__.__name__}") from e
        if response.status_code != 200:
            raise AuthError("<session>",
                            f"renew HTTP {response.status_code} {self._errors(response)}".strip())
        try:
            return self._auth_token(response.json(), "<session>")
        except ValueError:
            raise AuthError("<session>", "renew response is not JSON") from None

    def _fetch_error(self, path, response):
        reason = f"HTTP {response.status_code} {self._errors(response)}".strip()
        if response.status_code == 404:
            return SecretNotFound(path, reason, status=response.status_code)
        if response.status_code in (401, 403):
            return SecretPermissionDenied(path, reason, status=response.status_code)
        # 429, 5xx and anything unexpected are retried quietly
        return TransientFetchError(path, reason, status=response.status_code)

    @staticmethod
    def _secret_fields(body):
        data = body.get("data")
        if not isinstance(data, dict):
            return None
        # versioned key/value engines nest the fields one level down
        if isinstance(data.get("data"), dict) and isinstance(data.get("metadata"), dict):
            data = data["data"]
        return data

    def fetch_secret(self, path, token):
        try:
            response = self._request("GET", self._url(self._secret_prefix, path),
                                     headers=self._auth_headers(token))
        except requests.RequestException as e:
            raise TransientFetchError(path, f"store unreachable: {e.__class__.__name__}") from e

        if response.status_code != 200:
            raise self._fetch_error(path, response)
        try:
            body = response.json()
        except ValueError:
            raise TransientFetchError(path, "secret response is not JSON") from None

        fields = self._secret_fields(body) if isinstance(body, dict) else None
        if fields is None:
            raise TransientFetchError(path, "secret response carried no data object")

        try:
            lease = _lease(body.get("lease_id") or "", body)
        except (TypeError, ValueError):
            raise TransientFetchError(path, "response carried an invalid lease_duration") from None
        logging.getLogger(__name__).debug(
            f"Fetched {path} lease {lease.lease_id or '<none>'} ttl {lease.ttl_seconds}s")
        return Credential(data=fields, lease=lease)

    def renew_lease(self, credential, token):
        lease_id = credential.lease_id
        if not lease_id:
            raise TransientFetchError("<no lease>", "credential has no lease to renew")
        try:
            response = self._request("PUT", self._url("sys/leases/renew"),
                                     headers=self._auth_headers(token),
                                     json={"lease_id": lease_id,
                                           "increment": credential.lease.ttl_seconds})
        except requests.RequestException as e:
            raise TransientFetchError(lease_id, f"store unreachable: {e.__class__.__name__}") from e
        if response.status_code != 200:
            raise self._fetch_error(lease_id, response)
        try:
            body = response.json()
        except ValueError:
            raise TransientFetchError(lease_id, "renew response is not JSON") from None

        if not isinstance(body, dict):
            raise TransientFetchError(lease_id, "renew response is not a JSON object")
        try:
            lease = _lease(body.get("lease_id") or lease_id, body)
        except (TypeError, ValueError):
            raise TransientFetchError(lease_id, "response carried an invalid lease_duration") from None
        return credential.renewed(lease)

    def close(self):
        with self._sessions_lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()
        self.ns = threading.local()
