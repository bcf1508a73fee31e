# -*- coding: utf-8 -*-
"""Decides when a lease has to be acted on.

Nothing in here does I/O or reads the clock unless asked to, so the rules can
be checked with fixed timestamps.
"""

from datetime import timedelta

from .models import utcnow

RENEW = "renew"
REFETCH = "refetch"

DEFAULT_RENEW_FRACTION = 2.0 / 3.0
DEFAULT_STATIC_REFRESH_SECONDS = 300


class LeaseTracker:

    def __init__(self,
                 safety_margin_seconds,
                 renew_fraction=DEFAULT_RENEW_FRACTION,
                 static_refresh_seconds=DEFAULT_STATIC_REFRESH_SECONDS):
        assert safety_margin_seconds > 0, "safety margin must be positive"
        assert 0.0 < renew_fraction <= 1.0, "renew fraction must be in (0, 1]"
        assert static_refresh_seconds > 0, "static refresh interval must be positive"
        self._safety_margin = timedelta(seconds=safety_margin_seconds)
        self._renew_fraction = renew_fraction
        self._static_refresh = timedelta(seconds=static_refresh_seconds)

    @property
    def safety_margin_seconds(self):
        return self._safety_margin.total_seconds()

    @property
    def renew_fraction(self):
        return self._renew_fraction

    def renewal_at(self, lease):
        """
        Instant at which the lease should be renewed or refetched.

        Renewable leases renew at ``renew_fraction`` of their ttl or at
        ``expiry - safety margin``, whichever comes first. Leases that cannot be
        renewed are refetched at ``expiry - safety margin``. A positive ttl at
        or under the margin means "now", which is ``issued_at``.

        A ttl of 0 is not an expired lease: the store granted no lease at all
        (a static secret), so it is refetched every ``static_refresh_seconds``.
        :param lease: models.Lease
        :return: timezone aware datetime
        """
        if lease.static:
            return lease.issued_at + self._static_refresh

        ttl = timedelta(seconds=lease.ttl_seconds)
        if ttl <= self._safety_margin:
            return lease.issued_at

        margin_deadline = lease.expires_at - self._safety_margin
        if not lease.renewable:
            return margin_deadline

        fraction_deadline = lease.issued_at + ttl * self._renew_fraction
        return min(fraction_deadline, margin_deadline)

    def action(self, lease):
        if lease.renewable and not lease.static and \
                timedelta(seconds=lease.ttl_seconds) > self._safety_margin:
            return RENEW
        return REFETCH

    def seconds_until_renewal(self, lease, now=None):
        now = now or utcnow()
        return max((self.renewal_at(lease) - now).total_seconds(), 0.0)

    def due(self, lease, now=None):
        return self.seconds_until_renewal(lease, now) <= 0.0

    def is_expired(self, lease, now=None):
        if lease.static:
            return False
        now = now or utcnow()
        return now >= lease.expires_at
