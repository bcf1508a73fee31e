# -*- coding: utf-8 -*-
"""State machine of the renewal scheduler, driven one step at a time."""

import logging
import os
import shutil
import tempfile
import threading
import time
import unittest
from unittest import mock

from secret_sidecar import AtomicPublisher, AuthError, Backoff, LeaseTracker, PublishError, \
    RenewalScheduler, SecretNotFound, SecretPermissionDenied, State, TransientFetchError
from secret_sidecar.tests.fakes import FakeClock, FakeStoreClient, role_config

SECRET_PATH = "database/creds/app"


def setup_module():
    logging.basicConfig(level=logging.DEBUG)


class TestBackoff(unittest.TestCase):
    def test_doubles_up_to_cap(self):
        backoff = Backoff(base=1.0, maximum=10.0, _random=lambda: 1.0)
        self.assertEqual([backoff.next() for _ in range(6)], [1.0, 2.0, 4.0, 8.0, 10.0, 10.0])
        backoff.reset()
        self.assertEqual(backoff.next(), 1.0)

    def test_jitter_stays_in_upper_half(self):
        backoff = Backoff(base=4.0, maximum=100.0, _random=lambda: 0.0)
        self.assertEqual(backoff.next(), 2.0)
        self.assertEqual(backoff.next(), 4.0)

    def test_many_failures_do_not_overflow(self):
        backoff = Backoff(base=0.5, maximum=300.0)
        for _ in range(5000):
            delay = backoff.next()
        self.assertLessEqual(delay, 300.0)
        self.assertGreaterEqual(delay, 150.0)


class SchedulerTestCase(unittest.TestCase):
    ttl = 3600
    renewable = False

    def setUp(self):
        self.directory = tempfile.mkdtemp()
        self.output_path = os.path.join(self.directory, "creds.json")
        self.clock = FakeClock()
        self.client = FakeStoreClient(self.clock, ttl=self.ttl, renewable=self.renewable)
        self.publisher = AtomicPublisher(self.output_path)
        self.tracker = LeaseTracker(safety_margin_seconds=60)
        self.scheduler = self.make_scheduler()

    def make_scheduler(self, **kwargs):
        options = dict(backoff=Backoff(base=0.001, maximum=0.004),
                       max_retries=3,
                       min_sleep_seconds=0.001,
                       clock=self.clock)
        options.update(kwargs)
        return RenewalScheduler(self.client, self.publisher, self.tracker, role_config(),
                                SECRET_PATH, **options)

    def tearDown(self):
        self.scheduler.cancel()
        shutil.rmtree(self.directory, ignore_errors=True)

    def steps(self, *expected):
        for state in expected:
            self.assertEqual(self.scheduler.step(), state)

    def published(self):
        with open(self.output_path, "rb") as fh:
            return fh.read()

    def run_first_cycle(self):
        self.steps(State.AUTHENTICATING, State.FETCHING, State.PUBLISHING, State.SLEEPING)


class TestHappyPath(SchedulerTestCase):
    def test_first_cycle(self):
        self.assertEqual(self.scheduler.state, State.IDLE)
        self.run_first_cycle()
        self.assertEqual(self.client.calls, ["login", "fetch"])
        self.assertEqual(self.publisher.read()["lease_id"], f"{SECRET_PATH}/2")
        self.assertEqual(self.scheduler.current_credential.lease_id, f"{SECRET_PATH}/2")
        self.assertEqual(self.scheduler.publish_count, 1)

    def test_sleep_until_margin_for_non_renewable(self):
        self.run_first_cycle()
        self.assertEqual(self.scheduler.sleep_seconds(), 3540.0)

    def test_wakes_and_refetches(self):
        self.run_first_cycle()
        self.clock.advance(3540)
        self.steps(State.FETCHING, State.PUBLISHING, State.SLEEPING)
        self.assertEqual(self.client.calls, ["login", "fetch", "fetch"])
        self.assertEqual(self.publisher.read()["lease_id"], f"{SECRET_PATH}/3")
        self.assertEqual(self.scheduler.publish_count, 2)

    def test_listener_receives_new_credential(self):
        seen = []
        self.scheduler.add_listener(seen.append)
        self.run_first_cycle()
        self.assertEqual([c.lease_id for c in seen], [f"{SECRET_PATH}/2"])

    def test_failing_listener_does_not_break_loop(self):
        self.scheduler.add_listener(mock.Mock(side_effect=RuntimeError("boom")))
        self.run_first_cycle()
        self.assertEqual(self.scheduler.state, State.SLEEPING)

    def test_short_lease_does_not_spin(self):
        self.client.ttl = 30
        scheduler = self.make_scheduler(min_sleep_seconds=5.0)
        for _ in range(4):
            scheduler.step()
        self.assertEqual(scheduler.state, State.SLEEPING)
        self.assertEqual(scheduler.sleep_seconds(), 5.0)

    def test_run_until_published(self):
        self.client.fetch_errors = [TransientFetchError(SECRET_PATH, "503")]
        self.assertTrue(self.scheduler.run_until_published())
        self.assertEqual(self.scheduler.publish_count, 1)
        self.assertEqual(self.scheduler.state, State.SLEEPING)


class TestRenewableLease(SchedulerTestCase):
    renewable = True

    def test_sleep_two_thirds(self):
        self.run_first_cycle()
        self.assertEqual(self.scheduler.sleep_seconds(), 2400.0)

    def test_renews_instead_of_refetching(self):
        self.run_first_cycle()
        before = self.scheduler.current_credential
        self.clock.advance(2400)
        self.steps(State.FETCHING, State.PUBLISHING, State.SLEEPING)
        self.assertEqual(self.client.calls, ["login", "fetch", "renew_lease"])
        after = self.scheduler.current_credential
        self.assertEqual(after.lease_id, before.lease_id)
        self.assertEqual(after.data, before.data)
        self.assertEqual(after.issued_at, self.clock())
        self.assertLess(before.issued_at, after.issued_at)

    def test_failed_renewal_falls_back_to_fetch(self):
        self.run_first_cycle()
        self.client.renew_errors = [TransientFetchError(SECRET_PATH, "lease expired")]
        self.clock.advance(2400)
        self.steps(State.FETCHING, State.PUBLISHING, State.SLEEPING)
        self.assertEqual(self.client.calls, ["login", "fetch", "renew_lease", "fetch"])
        self.assertEqual(self.publisher.read()["lease_id"], f"{SECRET_PATH}/3")

    def test_renewal_capped_by_max_ttl_refetches(self):
        self.run_first_cycle()
        self.client.renew_ttl = 45
        self.clock.advance(2400)
        self.steps(State.FETCHING, State.PUBLISHING)
        self.assertEqual(self.client.calls, ["login", "fetch", "renew_lease", "fetch"])


class TestSessionRenewal(SchedulerTestCase):
    def setUp(self):
        super(TestSessionRenewal, self).setUp()
        self.client.token_ttl = 600
        self.client.token_renewable = True

    def test_wakes_for_session_only(self):
        self.run_first_cycle()
        self.assertEqual(self.scheduler.sleep_seconds(), 400.0)
        self.clock.advance(400)
        self.steps(State.FETCHING, State.SLEEPING)
        self.assertEqual(self.client.calls, ["login", "fetch", "renew_token"])

    def test_unrenewable_session_logs_in_again(self):
        self.client.token_renewable = False
        self.run_first_cycle()
        self.clock.advance(540)
        self.steps(State.FETCHING, State.AUTHENTICATING, State.FETCHING, State.SLEEPING)
        self.assertEqual(self.client.calls, ["login", "fetch", "login"])


class TestFailures(SchedulerTestCase):
    def test_permission_denied_keeps_stale_file(self):
        self.run_first_cycle()
        stale = self.published()
        self.client.fetch_errors = [SecretPermissionDenied(SECRET_PATH, "HTTP 403", status=403)]
        self.clock.advance(3540)

        with self.assertLogs("secret_sidecar.scheduler", level="ERROR"):
            self.steps(State.FETCHING, State.FAILED)
        self.assertIsInstance(self.scheduler.last_error, SecretPermissionDenied)
        self.assertEqual(self.published(), stale)
        self.assertEqual(self.publisher.read()["lease_id"], f"{SECRET_PATH}/2")

        self.steps(State.FETCHING)
        self.assertEqual(self.published(), stale)
        self.steps(State.PUBLISHING, State.SLEEPING)
        self.assertNotEqual(self.published(), stale)
        self.assertIsNone(self.scheduler.last_error)

    def test_not_found_is_logged_loudly(self):
        self.client.fetch_errors = [SecretNotFound(SECRET_PATH, "HTTP 404", status=404)]
        with self.assertLogs("secret_sidecar.scheduler", level="ERROR") as logs:
            self.steps(State.AUTHENTICATING, State.FETCHING, State.FAILED)
        self.assertIn("NotFound", logs.output[0])

    def test_transient_is_quiet(self):
        self.client.fetch_errors = [TransientFetchError(SECRET_PATH, "HTTP 503", status=503)]
        with self.assertLogs("secret_sidecar.scheduler", level="DEBUG") as logs:
            self.steps(State.AUTHENTICATING, State.FETCHING, State.FAILED)
        self.assertFalse(any(line.startswith(("WARNING", "ERROR")) for line in logs.output))

    def test_unexpected_fetch_error_is_retried(self):
        self.client.fetch_errors = [RuntimeError("boom"), KeyError("data")]
        with self.assertLogs("secret_sidecar.scheduler", level="ERROR") as logs:
            self.steps(State.AUTHENTICATING, State.FETCHING, State.FAILED,
                       State.FETCHING, State.FAILED)
        self.assertIn("unexpected error in fetching", logs.output[0])
        self.assertIsInstance(self.scheduler.last_error, KeyError)
        self.steps(State.FETCHING, State.PUBLISHING, State.SLEEPING)
        self.assertTrue(os.path.exists(self.output_path))

    def test_unexpected_login_error_is_retried(self):
        self.client.login_errors = [RuntimeError("boom")]
        with self.assertLogs("secret_sidecar.scheduler", level="ERROR"):
            self.steps(State.AUTHENTICATING, State.FAILED)
        self.steps(State.AUTHENTICATING, State.FETCHING, State.PUBLISHING, State.SLEEPING)
        self.assertEqual(self.client.calls, ["login", "login", "fetch"])

    def test_run_survives_unexpected_errors(self):
        self.client.fetch_errors = [RuntimeError("boom")] * 5
        self.scheduler.add_listener(lambda credential: self.scheduler.cancel())
        thread = threading.Thread(target=self.scheduler.run, daemon=True)
        thread.start()
        thread.join(5.0)
        self.assertFalse(thread.is_alive())
        self.assertEqual(self.scheduler.publish_count, 1)
        self.assertEqual(self.client.calls.count("fetch"), 6)

    def test_auth_failure_retries_login(self):
        self.client.login_errors = [AuthError("app", "HTTP 503"), AuthError("app", "HTTP 503")]
        self.steps(State.AUTHENTICATING, State.FAILED, State.AUTHENTICATING, State.FAILED,
                   State.AUTHENTICATING, State.FETCHING, State.PUBLISHING, State.SLEEPING)
        self.assertEqual(self.client.calls, ["login", "login", "login", "fetch"])

    def test_publish_failure_retries_publish(self):
        self.steps(State.AUTHENTICATING, State.FETCHING, State.PUBLISHING)
        with mock.patch.object(self.publisher, "publish",
                               side_effect=PublishError(self.output_path, OSError(28, "full"))):
            self.steps(State.FAILED)
        self.assertIsNone(self.scheduler.current_credential)
        self.steps(State.PUBLISHING, State.SLEEPING)
        self.assertEqual(self.client.calls, ["login", "fetch"])
        self.assertEqual(self.publisher.read()["lease_id"], f"{SECRET_PATH}/2")

    def test_publish_failure_keeps_previous_credential(self):
        self.run_first_cycle()
        previous = self.scheduler.current_credential
        self.clock.advance(3540)
        self.steps(State.FETCHING)
        with mock.patch.object(self.publisher, "publish",
                               side_effect=PublishError(self.output_path, OSError(13, "denied"))):
            self.steps(State.PUBLISHING, State.FAILED)
        self.assertIs(self.scheduler.current_credential, previous)

    def test_retry_budget_exhausted_starts_over_from_login(self):
        self.client.fetch_errors = [TransientFetchError(SECRET_PATH, "503")] * 3
        self.steps(State.AUTHENTICATING, State.FETCHING,
                   State.FAILED, State.FETCHING,
                   State.FAILED, State.FETCHING,
                   State.FAILED, State.AUTHENTICATING,
                   State.FETCHING, State.PUBLISHING, State.SLEEPING)
        self.assertEqual(self.client.calls, ["login", "fetch", "fetch", "fetch", "login", "fetch"])

    def test_never_gives_up(self):
        self.client.fetch_errors = [TransientFetchError(SECRET_PATH, "503")] * 40
        self.scheduler.step()
        for _ in range(60):
            self.assertIn(self.scheduler.step(), (State.AUTHENTICATING, State.FETCHING, State.FAILED))
        self.assertTrue(self.scheduler.run_until_published())

    def test_backoff_between_retries(self):
        backoff = mock.Mock(wraps=Backoff(base=0.001, maximum=0.002))
        scheduler = self.make_scheduler(backoff=backoff)
        self.client.fetch_errors = [TransientFetchError(SECRET_PATH, "503")] * 2
        for _ in range(8):
            scheduler.step()
        self.assertEqual(backoff.next.call_count, 2)
        self.assertEqual(scheduler.state, State.SLEEPING)
        backoff.reset.assert_called_with()


class TestCancellation(SchedulerTestCase):
    def test_cancel_interrupts_sleep(self):
        scheduler = self.make_scheduler(min_sleep_seconds=0.001)
        thread = threading.Thread(target=scheduler.run)
        thread.start()
        deadline = time.monotonic() + 5.0
        while scheduler.state != State.SLEEPING and time.monotonic() < deadline:
            time.sleep(0.01)
        self.assertEqual(scheduler.state, State.SLEEPING)
        published = self.published()

        started = time.monotonic()
        scheduler.cancel()
        thread.join(2.0)
        self.assertFalse(thread.is_alive())
        self.assertLess(time.monotonic() - started, 2.0)
        self.assertEqual(self.published(), published)

    def test_cancel_interrupts_backoff(self):
        scheduler = self.make_scheduler(backoff=Backoff(base=3600.0, maximum=3600.0))
        self.client.login_errors = [AuthError("app", "down")]
        scheduler.step()
        scheduler.step()
        self.assertEqual(scheduler.state, State.FAILED)
        thread = threading.Thread(target=scheduler.step)
        thread.start()
        scheduler.cancel()
        thread.join(2.0)
        self.assertFalse(thread.is_alive())
        self.assertEqual(scheduler.state, State.FAILED)

    def test_run_until_published_returns_false_when_cancelled(self):
        self.scheduler.cancel()
        self.assertFalse(self.scheduler.run_until_published())


if __name__ == '__main__':
    unittest.main()
