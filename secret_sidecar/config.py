# -*- coding: utf-8 -*-
"""
Startup configuration for the sidecar.

Options come from a JSON file (``--config``) and/or ``SIDECAR_*`` environment
variables; the environment wins when both set an option. Keys in the file use
the camelCase option names below.

    storeAddr              SIDECAR_STORE_ADDR               https URL of the store
    role                   SIDECAR_ROLE                     auth role to log in as
    secretPath             SIDECAR_SECRET_PATH              path of the secret to read
    outputPath             SIDECAR_OUTPUT_PATH              file the credential is published to
    safetyMarginSeconds    SIDECAR_SAFETY_MARGIN_SECONDS    act at least this long before expiry
    maxBackoffSeconds      SIDECAR_MAX_BACKOFF_SECONDS      cap on the retry delay

Everything else has a default, see ``SidecarConfig``.
"""

import json
import os
from dataclasses import dataclass, fields
from urllib.parse import urlparse

from .exceptions import ConfigError

BACKENDS = ("http", "gcp")
IDENTITY_SOURCES = ("file", "google")
DEFAULT_IDENTITY_TOKEN_PATH = "/var/run/secrets/kubernetes.io/serviceaccount/token"

ENV_PREFIX = "SIDECAR_"
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


@dataclass(frozen=True)
class SidecarConfig:
    store_addr: str = ""
    role: str = ""
    secret_path: str = ""
    output_path: str = ""
    safety_margin_seconds: int = 60
    max_backoff_seconds: float = 300.0

    base_backoff_seconds: float = 1.0
    max_retries: int = 8
    renew_fraction: float = 2.0 / 3.0
    static_refresh_seconds: int = 300
    min_sleep_seconds: float = 1.0
    request_timeout_seconds: float = 10.0
    shutdown_grace_seconds: float = 10.0

    backend: str = "http"
    identity_source: str = "file"
    identity_token_path: str = DEFAULT_IDENTITY_TOKEN_PATH
    identity_audience: str = ""
    ca_cert: str = ""
    tls_verify: bool = True
    allow_insecure_http: bool = False

    file_mode: int = 0o600
    remove_on_exit: bool = False
    log_level: str = "INFO"

    def validate(self):
        """Fail fast on anything that would make the sidecar useless.

        Returns self so it chains after the loaders.
        """
        if self.backend not in BACKENDS:
            raise ConfigError("backend", f"must be one of {', '.join(BACKENDS)}")
        if self.backend == "http":
            for option in ("store_addr", "role"):
                if not getattr(self, option):
                    raise ConfigError(_camel(option), "is required")
            url = urlparse(self.store_addr)
            if url.scheme not in ("https", "http") or not url.netloc:
                raise ConfigError("storeAddr", "must be an absolute https URL")
            if url.scheme == "http" and not self.allow_insecure_http:
                raise ConfigError("storeAddr", "must use https unless allowInsecureHttp is set")
            if self.identity_source not in IDENTITY_SOURCES:
                raise ConfigError("identitySource",
                                  f"must be one of {', '.join(IDENTITY_SOURCES)}")
            if self.identity_source == "google" and not self.identity_audience:
                raise ConfigError("identityAudience", "is required for google identity")
        for option in ("secret_path", "output_path"):
            if not getattr(self, option):
                raise ConfigError(_camel(option), "is required")
        output_dir = os.path.dirname(os.path.abspath(self.output_path))
        if not os.path.isdir(output_dir):
            raise ConfigError("outputPath", f"directory {output_dir} does not exist")
        if self.safety_margin_seconds < 1:
            raise ConfigError("safetyMarginSeconds", "must be >= 1")
        if self.base_backoff_seconds <= 0 or self.max_backoff_seconds < self.base_backoff_seconds:
            raise ConfigError("maxBackoffSeconds", "must be >= baseBackoffSeconds > 0")
        if self.max_retries < 1:
            raise ConfigError("maxRetries", "must be >= 1")
        if not 0.0 < self.renew_fraction <= 1.0:
            raise ConfigError("renewFraction", "must be in (0, 1]")
        if self.static_refresh_seconds <= 0:
            raise ConfigError("staticRefreshSeconds", "must be > 0")
        if self.request_timeout_seconds <= 0:
            raise ConfigError("requestTimeoutSeconds", "must be > 0")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError("logLevel", f"must be one of {', '.join(LOG_LEVELS)}")
        if self.ca_cert and not os.path.isfile(self.ca_cert):
            raise ConfigError("caCert", f"{self.ca_cert} is not a file")
        return self

    @property
    def tls(self):
        """The ``verify`` argument for requests."""
        if not self.tls_verify:
            return False
        return self.ca_cert or True


def _camel(name):
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _coerce(option, raw, target_type):
    try:
        if target_type is bool:
            if isinstance(raw, bool):
                return raw
            value = str(raw).strip().lower()
            if value in ("1", "true", "yes", "on"):
                return True
            if value in ("0", "false", "no", "off", ""):
                return False
            raise ValueError(raw)
        if target_type is int and isinstance(raw, str):
            # file modes are written in octal
            return int(raw, 8) if option == "file_mode" else int(raw)
        return target_type(raw)
    except (TypeError, ValueError):
        raise ConfigError(_camel(option), f"cannot interpret {raw!r} as {target_type.__name__}") from None


def _field_types():
    defaults = SidecarConfig()
    return {f.name: type(getattr(defaults, f.name)) for f in fields(SidecarConfig)}


def load_file(path):
    """Read options from a JSON file, keyed by camelCase option name."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            document = json.load(fh)
    except OSError as e:
        raise ConfigError("config", f"cannot read {path}: {e.strerror}") from None
    except json.JSONDecodeError as e:
        raise ConfigError("config", f"{path} is not valid JSON: {e.msg}") from None
    if not isinstance(document, dict):
        raise ConfigError("config", f"{path} must hold a JSON object")

    types = _field_types()
    by_camel = {_camel(name): name for name in types}
    options = {}
    for key, raw in document.items():
        name = by_camel.get(key)
        if name is None:
            raise ConfigError(key, "unknown option")
        options[name] = _coerce(name, raw, types[name])
    return options


def load_env(environ=None):
    environ = os.environ if environ is None else environ
    options = {}
    for name, target_type in _field_types().items():
        raw = environ.get(ENV_PREFIX + name.upper())
        if raw is not None:
            options[name] = _coerce(name, raw, target_type)
    return options


def load_config(path=None, environ=None, **overrides):
    """
    Build and validate the configuration.

    :param path: optional JSON config file
    :param environ: mapping to read ``SIDECAR_*`` variables from, defaults to os.environ
    :param overrides: option values that win over both, e.g. from the command line
    :return: SidecarConfig
    :raises ConfigError: on any missing or invalid option
    """
    options = {}
    if path:
        options.update(load_file(path))
    options.update(load_env(environ))
    options.update({k: v for k, v in overrides.items() if v is not None})
    return SidecarConfig(**options).validate()
