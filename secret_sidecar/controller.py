# -*- coding: utf-8 -*-
"""Builds the sidecar from its configuration and owns its lifecycle."""

import logging
import signal
import threading
import weakref

from .gcp_store import GCPSecretManagerClient
from .identity import RoleConfig, identity_from_config
from .lease import LeaseTracker
from .publisher import AtomicPublisher
from .scheduler import Backoff, RenewalScheduler
from .store_client import HTTPStoreClient


def build_client(config):
    if config.backend == "gcp":
        return GCPSecretManagerClient(static_refresh_seconds=config.static_refresh_seconds)
    return HTTPStoreClient(config.store_addr,
                           timeout=config.request_timeout_seconds,
                           verify=config.tls)


# the loop thread only holds a weak reference so a dropped controller
# does not stay alive because its thread is still running

def _run_scheduler(controller_weak_ref):
    controller = controller_weak_ref()
    if controller is None:
        return
    scheduler = controller.scheduler
    del controller
    try:
        scheduler.run()
    except Exception:
        logging.getLogger(__name__).exception("Renewal loop crashed")


class SidecarController:
    """
    Runs one RenewalScheduler and cleans up after it.

    Components can be passed in, anything left out is built from ``config``.
    """

    def __init__(self, config, client=None, publisher=None, tracker=None, scheduler=None):
        self._config = config
        self._client = client or build_client(config)
        self._publisher = publisher or AtomicPublisher(config.output_path, file_mode=config.file_mode)
        self._tracker = tracker or LeaseTracker(config.safety_margin_seconds,
                                                renew_fraction=config.renew_fraction,
                                                static_refresh_seconds=config.static_refresh_seconds)
        self._scheduler = scheduler or RenewalScheduler(
            self._client,
            self._publisher,
            self._tracker,
            RoleConfig(role=config.role, identity=identity_from_config(config)),
            config.secret_path,
            backoff=Backoff(base=config.base_backoff_seconds, maximum=config.max_backoff_seconds),
            max_retries=config.max_retries,
            min_sleep_seconds=config.min_sleep_seconds)
        self._thread = None
        self._closed = False

    @property
    def config(self):
        return self._config

    @property
    def scheduler(self):
        return self._scheduler

    @property
    def publisher(self):
        return self._publisher

    @property
    def current_credential(self):
        return self._scheduler.current_credential

    def start(self):
        """Run the loop on a daemon thread and return straight away."""
        if self._thread is not None:
            return self._thread
        t = threading.Thread(target=_run_scheduler,
                             name=f"secret_sidecar_{self._config.secret_path}",
                             args=[weakref.ref(self)])
        t.daemon = True
        t.start()
        self._thread = t
        return t

    def stop(self, grace_seconds=None):
        """
        Cancel the loop, wait up to the grace period for it, then clean up.

        :return: True if the loop thread finished within the grace period
        """
        grace = self._config.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        self._scheduler.cancel()
        finished = True
        if self._thread is not None:
            self._thread.join(grace)
            finished = not self._thread.is_alive()
            if not finished:
                logging.getLogger(__name__).warning(
                    f"Renewal loop still busy after {grace}s, exiting anyway")
        self.close(remove_file=finished)
        return finished

    def close(self, remove_file=True):
        """Best effort teardown, never raises.

        ``remove_file=False`` keeps the published file even with ``remove_on_exit``,
        used when the loop may still be publishing.
        """
        if self._closed:
            return
        self._closed = True
        if self._config.remove_on_exit and not remove_file:
            logging.getLogger(__name__).warning(
                f"Loop still running, leaving {self._publisher.output_path} in place")
        elif self._config.remove_on_exit:
            try:
                self._publisher.remove()
            except OSError as e:
                logging.getLogger(__name__).warning(
                    f"Could not remove {self._publisher.output_path}: {e.strerror}")
        try:
            self._client.close()
        except Exception:
            logging.getLogger(__name__).exception("Closing store client failed")

    def _install_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            return {}

        def _handler(signum, frame):
            logging.getLogger(__name__).info(f"Received {signal.Signals(signum).name}, shutting down")
            self._scheduler.cancel()

        previous = {}
        for signum in (signal.SIGTERM, signal.SIGINT):
            previous[signum] = signal.signal(signum, _handler)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous):
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    def run(self):
        """Run in the foreground until SIGTERM/SIGINT or ``scheduler.cancel()``."""
        previous = self._install_signal_handlers()
        try:
            logging.getLogger(__name__).info(
                f"Keeping {self._config.secret_path} published at {self._publisher.output_path}")
            self._scheduler.run()
        finally:
            self._restore_signal_handlers(previous)
            self.close()

    def run_once(self):
        """Publish once and return, for use as an init container.

        Returns True once something was published, False if cancelled first.
        The published file is kept even when ``remove_on_exit`` is set.
        """
        previous = self._install_signal_handlers()
        try:
            return self._scheduler.run_until_published()
        finally:
            self._restore_signal_handlers(previous)
            self._closed = True
            try:
                self._client.close()
            except Exception:
                logging.getLogger(__name__).exception("Closing store client failed")
