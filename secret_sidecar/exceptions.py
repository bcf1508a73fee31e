# -*- coding: utf-8 -*-


class SidecarError(Exception):
    """Base Error class."""


class ConfigError(SidecarError):
    CUSTOM_ERROR_MESSAGE = "Invalid sidecar configuration for {}: {}"

    def __init__(self, option, reason):
        super(ConfigError, self).__init__(self.CUSTOM_ERROR_MESSAGE.format(option, reason))
        self._option = option
        self._reason = reason

    @property
    def option(self):
        return self._option

    @property
    def reason(self):
        return self._reason


class AuthError(SidecarError):
    CUSTOM_ERROR_MESSAGE = "Login as role {} failed: {}"

    def __init__(self, role, reason):
        super(AuthError, self).__init__(self.CUSTOM_ERROR_MESSAGE.format(role, reason))
        self._role = role
        self._reason = reason

    @property
    def role(self):
        return self._role

    @property
    def reason(self):
        return self._reason


class FetchError(SidecarError):
    """Reading a secret failed. ``kind`` says whether retrying can help on its own."""

    NOT_FOUND = "NotFound"
    PERMISSION_DENIED = "PermissionDenied"
    TRANSIENT = "Transient"

    kind = TRANSIENT
    CUSTOM_ERROR_MESSAGE = "Fetching secret {} failed ({}): {}"

    def __init__(self, path, reason, status=None):
        super(FetchError, self).__init__(self.CUSTOM_ERROR_MESSAGE.format(path,
                                                                          self.kind,
                                                                          reason))
        self._path = path
        self._reason = reason
        self._status = status

    @property
    def path(self):
        return self._path

    @property
    def reason(self):
        return self._reason

    @property
    def status(self):
        return self._status

    @property
    def misconfiguration(self):
        return self.kind in (self.NOT_FOUND, self.PERMISSION_DENIED)


class SecretNotFound(FetchError):
    kind = FetchError.NOT_FOUND


class SecretPermissionDenied(FetchError):
    kind = FetchError.PERMISSION_DENIED


class TransientFetchError(FetchError):
    kind = FetchError.TRANSIENT


class NoActiveSecretVersion(SecretNotFound):
    CUSTOM_ERROR_MESSAGE = "Secret {} has no active enabled versions ({}): {}"

    def __init__(self, secret):
        super(NoActiveSecretVersion, self).__init__(secret, "no enabled version")


class PublishError(SidecarError):
    CUSTOM_ERROR_MESSAGE = "Publishing credential to {} failed: {}"

    def __init__(self, output_path, error):
        super(PublishError, self).__init__(self.CUSTOM_ERROR_MESSAGE.format(output_path,
                                                                            str(error)))
        self._output_path = output_path
        self._error = error

    @property
    def output_path(self):
        return self._output_path

    @property
    def error(self):
        return self._error
