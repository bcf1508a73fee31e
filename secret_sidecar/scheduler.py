# -*- coding: utf-8 -*-
"""The fetch / publish / sleep loop.

One ``RenewalScheduler`` drives one secret. ``step`` advances the state
machine by exactly one transition, ``run`` keeps stepping until cancelled:

    IDLE -> AUTHENTICATING -> FETCHING -> PUBLISHING -> SLEEPING -> FETCHING ...
                 |               |            |
                 +---------------+------------+--> FAILED -> (backoff) -> retry

Every runtime error ends up in FAILED and is retried; nothing here ever gives
up while the process runs. The only blocking points are the store calls
(bounded by the client's timeout) and the waits in SLEEPING and FAILED, which
return as soon as ``cancel`` is called.
"""

import enum
import logging
import random
import threading

from .exceptions import AuthError, FetchError, PublishError, SidecarError
from .lease import RENEW
from .models import utcnow


class State(enum.Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    FETCHING = "fetching"
    PUBLISHING = "publishing"
    SLEEPING = "sleeping"
    FAILED = "failed"


RETRYABLE_STATES = (State.AUTHENTICATING, State.FETCHING, State.PUBLISHING)


class Backoff:
    """Exponential delay, ``base * factor**n`` capped at ``maximum``, with jitter.

    The jitter keeps each delay within the upper half of the nominal value so
    a fleet of sidecars restarted together spreads its retries out.
    """

    def __init__(self, base=1.0, maximum=300.0, factor=2.0, _random=random.random):
        self._base = base
        self._maximum = maximum
        self._factor = factor
        self._random = _random
        self._attempts = 0

    @property
    def attempts(self):
        return self._attempts

    def nominal(self):
        return min(self._base * (self._factor ** self._attempts), self._maximum)

    def next(self):
        delay = self.nominal()
        if delay < self._maximum:
            self._attempts += 1
        return delay / 2.0 + self._random() * delay / 2.0

    def reset(self):
        self._attempts = 0


class RenewalScheduler:
    """Keeps one secret fetched, published and renewed.

    Args:
        client (store_client.CredentialStoreClient): the store backend.
        publisher (publisher.AtomicPublisher): where credentials are written.
        tracker (lease.LeaseTracker): decides wake up times.
        role_config (identity.RoleConfig): passed to ``client.login``.
        secret_path (str): the secret to keep published.
        backoff (Backoff, optional): retry delays, defaults to 1s doubling to 300s.
        max_retries (int): consecutive failures tolerated in one wake cycle
            before the session is dropped and the cycle restarts from login.
        min_sleep_seconds (float): floor on any sleep, so leases that are
            already due cannot spin the loop.
        clock (callable): returns the current timezone aware datetime.
    """

    def __init__(self,
                 client,
                 publisher,
                 tracker,
                 role_config,
                 secret_path,
                 backoff=None,
                 max_retries=8,
                 min_sleep_seconds=1.0,
                 clock=utcnow):
        self._client = client
        self._publisher = publisher
        self._tracker = tracker
        self._role_config = role_config
        self._secret_path = secret_path
        self._backoff = backoff or Backoff()
        self._max_retries = max_retries
        self._min_sleep = min_sleep_seconds
        self._clock = clock

        self._state = State.IDLE
        self._token = None
        self._credential = None
        self._pending = None
        self._retry_state = None
        self._cycle_failures = 0
        self._last_error = None
        self._publish_count = 0
        self._listeners = []
        self._lock = threading.Lock()
        self._stop = threading.Event()

    @property
    def state(self):
        return self._state

    @property
    def last_error(self):
        return self._last_error

    @property
    def publish_count(self):
        return self._publish_count

    @property
    def current_credential(self):
        """The Credential most recently published, or None."""
        with self._lock:
            return self._credential

    @property
    def cancelled(self):
        return self._stop.is_set()

    def cancel(self):
        self._stop.set()

    def add_listener(self, callback):
        """Call ``callback(credential)`` after every successful publish."""
        self._listeners.append(callback)

    def step(self):
        handler = {
            State.IDLE: self._start,
            State.AUTHENTICATING: self._authenticate,
            State.FETCHING: self._fetch,
            State.PUBLISHING: self._publish,
            State.SLEEPING: self._sleep,
            State.FAILED: self._recover,
        }[self._state]
        try:
            next_state = handler()
        except Exception as e:
            # anything the client or publisher did not map is retried like the rest
            retry_state = self._state if self._state in RETRYABLE_STATES else State.FETCHING
            next_state = self._fail(e, retry_state)
        if next_state is not None and next_state != self._state:
            logging.getLogger(__name__).debug(
                f"{self._secret_path}: {self._state.value} -> {next_state.value}")
        if next_state is not None:
            self._state = next_state
        return self._state

    def run(self):
        """Step until ``cancel`` is called."""
        while not self._stop.is_set():
            self.step()
        logging.getLogger(__name__).info(f"Renewal loop for {self._secret_path} stopped")

    def run_until_published(self):
        """Step until the first successful publish. Returns False if cancelled first."""
        start_count = self._publish_count
        while not self._stop.is_set() and self._publish_count == start_count:
            self.step()
        return self._publish_count > start_count

    # state handlers, each returns the next state or None to stay put

    def _start(self):
        return State.AUTHENTICATING

    def _authenticate(self):
        try:
            self._token = self._client.login(self._role_config)
        except AuthError as e:
            self._token = None
            return self._fail(e, State.AUTHENTICATING)
        return State.FETCHING

    def _token_due(self, now):
        token = self._token
        if token is None or token.lease.static:
            return False
        return self._tracker.due(token.lease, now)

    def _credential_due(self, now):
        credential = self.current_credential
        return credential is None or self._tracker.due(credential.lease, now)

    def _refresh_token(self):
        """Renew the session if it can be renewed, otherwise signal a fresh login."""
        if not self._token.renewable or self._tracker.is_expired(self._token.lease, self._clock()):
            self._token = None
            return False
        try:
            self._token = self._client.renew_token(self._token)
        except AuthError as e:
            logging.getLogger(__name__).info(f"Session renewal failed, logging in again: {e}")
            self._token = None
            return False
        return True

    def _renew_current(self, credential):
        try:
            renewed = self._client.renew_lease(credential, self._token)
        except FetchError as e:
            logging.getLogger(__name__).info(
                f"Lease renewal for {self._secret_path} failed, refetching: {e}")
            return None
        if renewed.lease.ttl_seconds <= self._tracker.safety_margin_seconds:
            # renewal hit the maximum ttl, only a new secret gets a full lease
            logging.getLogger(__name__).info(
                f"Lease for {self._secret_path} reached its maximum ttl, refetching")
            return None
        return renewed

    def _fetch(self):
        now = self._clock()
        if self._token is None:
            return State.AUTHENTICATING
        if self._token_due(now) and not self._refresh_token():
            return State.AUTHENTICATING

        if self._pending is None and not self._credential_due(now):
            # woken for the session only
            self._cycle_done()
            return State.SLEEPING

        credential = self.current_credential
        if credential is not None and self._tracker.action(credential.lease) == RENEW \
                and not self._tracker.is_expired(credential.lease, now):
            renewed = self._renew_current(credential)
            if renewed is not None:
                self._pending = renewed
                return State.PUBLISHING

        try:
            self._pending = self._client.fetch_secret(self._secret_path, self._token)
        except FetchError as e:
            return self._fail(e, State.FETCHING)
        return State.PUBLISHING

    def _publish(self):
        pending = self._pending
        if pending is None:
            return State.FETCHING
        try:
            self._publisher.publish(pending)
        except PublishError as e:
            return self._fail(e, State.PUBLISHING)

        with self._lock:
            self._credential = pending
        self._pending = None
        self._publish_count += 1
        self._cycle_done()
        for listener in list(self._listeners):
            try:
                listener(pending)
            except Exception:
                logging.getLogger(__name__).exception("Publish listener failed")
        return State.SLEEPING

    def _cycle_done(self):
        self._backoff.reset()
        self._cycle_failures = 0
        self._retry_state = None
        self._last_error = None

    def next_wake_at(self):
        """When the current sleep ends: the earlier of credential and session renewal."""
        candidates = []
        credential = self.current_credential
        if credential is not None:
            candidates.append(self._tracker.renewal_at(credential.lease))
        if self._token is not None and not self._token.lease.static:
            candidates.append(self._tracker.renewal_at(self._token.lease))
        return min(candidates) if candidates else self._clock()

    def sleep_seconds(self):
        delay = (self.next_wake_at() - self._clock()).total_seconds()
        return max(delay, self._min_sleep)

    def _sleep(self):
        delay = self.sleep_seconds()
        logging.getLogger(__name__).debug(f"{self._secret_path}: sleeping {delay:.1f}s")
        if self._stop.wait(delay):
            return None
        return State.FETCHING

    def _fail(self, error, retry_state):
        self._last_error = error
        self._retry_state = retry_state
        self._cycle_failures += 1
        log = logging.getLogger(__name__)
        attempt = f"{self._cycle_failures}/{self._max_retries}"
        if isinstance(error, FetchError):
            if error.misconfiguration:
                log.error(f"{error} (attempt {attempt}); check the role policy and secret path")
            else:
                log.debug(f"{error} (attempt {attempt})")
        elif isinstance(error, PublishError):
            log.warning(f"{error} (attempt {attempt}); previous file left in place")
        elif not isinstance(error, SidecarError):
            log.exception(
                f"{self._secret_path}: unexpected error in {retry_state.value} (attempt {attempt})")
        else:
            log.warning(f"{error} (attempt {attempt})")
        return State.FAILED

    def _recover(self):
        delay = self._backoff.next()
        if self._stop.wait(delay):
            return None

        if self._cycle_failures >= self._max_retries:
            logging.getLogger(__name__).warning(
                f"{self._secret_path}: {self._cycle_failures} failures in a row, "
                f"starting over from login")
            self._cycle_failures = 0
            self._token = None
            return State.AUTHENTICATING

        if self._token is None or self._tracker.is_expired(self._token.lease, self._clock()):
            self._token = None
            return State.AUTHENTICATING

        if self._retry_state == State.PUBLISHING and self._pending is not None and \
                self._tracker.is_expired(self._pending.lease, self._clock()):
            self._pending = None
            return State.FETCHING

        return self._retry_state or State.FETCHING
