"""Helpers for the application side of the published file.

The sidecar replaces the file by rename whenever the credential changes, so a
handle opened earlier keeps showing the old content. Everything here opens the
path again on every use.
"""
import functools
import json

from .models import Credential


def read_credential(path):
    """
    Read the published credential.

    :type path: str
    :param path: The file the sidecar publishes to

    :return models.Credential
    :raises FileNotFoundError: if nothing has been published yet
    :raises ValueError: if the file does not hold a credential document
    """
    with open(path, "r", encoding="utf-8") as fh:
        document = json.load(fh)
    return Credential.from_document(document)


class InjectPublishedSecret:
    """Decorator injecting fields of the published credential as keyword arguments"""

    def __init__(self, path, **kwargs):
        """
        Construct a decorator that maps keyword arguments of the wrapped function to
        fields of the published credential.

        :type path: str
        :param path: The file the sidecar publishes to

        :type kwargs: dict
        :param kwargs: dictionary mapping keyword argument of wrapped function to credential field
        """
        self.path = path
        self.kwarg_map = kwargs

    def __call__(self, func):
        """
        Return a function that reads the credential on every call.

        :type func: object
        :param func: function for injecting keyword arguments.
        :return The wrapped function
        """

        @functools.wraps(func)
        def _wrapped_func(*args, **kwargs):
            """
            Internal function to execute wrapped function
            """
            try:
                credential = read_credential(self.path)
            except json.decoder.JSONDecodeError:
                raise RuntimeError('Published credential is not valid JSON') from None

            resolved_kwargs = dict()
            for orig_kwarg, field_name in self.kwarg_map.items():
                try:
                    resolved_kwargs[orig_kwarg] = credential.data[field_name]
                except KeyError:
                    raise RuntimeError('Published credential does not contain field {0}'.format(field_name)) from None
            return func(*args, **resolved_kwargs, **kwargs)

        return _wrapped_func
