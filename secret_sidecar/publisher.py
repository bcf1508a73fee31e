# -*- coding: utf-8 -*-
"""Writes the credential document where the application can read it.

Readers must open the path fresh for every read. The file is only ever
replaced by rename so an open handle keeps pointing at the old content.
"""

import json
import logging
import os
import tempfile

from .exceptions import PublishError

DEFAULT_FILE_MODE = 0o600


def serialize(credential):
    return (json.dumps(credential.to_document(), sort_keys=True, indent=2) + "\n").encode("utf-8")


class AtomicPublisher:

    def __init__(self, output_path, file_mode=DEFAULT_FILE_MODE, owner_uid=None, owner_gid=None):
        self._output_path = os.path.abspath(output_path)
        self._file_mode = file_mode
        self._owner_uid = owner_uid
        self._owner_gid = owner_gid

    @property
    def output_path(self):
        return self._output_path

    def publish(self, credential):
        """
        Atomically replace the published file with ``credential``.

        Any reader sees either the previous complete document or the new one.
        If anything fails the temp file is removed and the previous document
        stays where it was.
        :param credential: models.Credential
        :return: True if the file was rewritten, False if it already held this content
        """
        payload = serialize(credential)
        if self._current_bytes() == payload:
            logging.getLogger(__name__).debug(
                f"Published file {self._output_path} already current, skipping write")
            return False

        directory = os.path.dirname(self._output_path)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=directory,
                                            prefix=f".{os.path.basename(self._output_path)}.",
                                            suffix=".tmp")
            with os.fdopen(fd, "wb") as fh:
                os.fchmod(fh.fileno(), self._file_mode)
                if self._owner_uid is not None or self._owner_gid is not None:
                    os.fchown(fh.fileno(),
                              -1 if self._owner_uid is None else self._owner_uid,
                              -1 if self._owner_gid is None else self._owner_gid)
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self._output_path)
            tmp_path = None
            self._sync_directory(directory)
        except OSError as e:
            raise PublishError(self._output_path, e) from e
        finally:
            if tmp_path is not None:
                self._discard(tmp_path)

        logging.getLogger(__name__).info(
            f"Published lease {credential.lease_id or '<none>'} to {self._output_path}")
        return True

    def read(self):
        """The currently published document, or None if nothing is published yet."""
        try:
            with open(self._output_path, "rb") as fh:
                return json.loads(fh.read().decode("utf-8"))
        except FileNotFoundError:
            return None

    def remove(self):
        try:
            os.unlink(self._output_path)
        except FileNotFoundError:
            return False
        logging.getLogger(__name__).info(f"Removed published file {self._output_path}")
        return True

    def _current_bytes(self):
        try:
            with open(self._output_path, "rb") as fh:
                return fh.read()
        except OSError:
            return None

    @staticmethod
    def _sync_directory(directory):
        # the rename is only durable once the directory entry is on disk
        dir_fd = os.open(directory, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)

    @staticmethod
    def _discard(tmp_path):
        try:
            os.unlink(tmp_path)
        except OSError:
            logging.getLogger(__name__).warning(f"Could not remove temp file {tmp_path}")
