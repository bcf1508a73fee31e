# -*- coding: utf-8 -*-
"""Value types shared by the store clients, the scheduler and the publisher.

Everything here is immutable. A renewal never edits a Credential in place, it
builds a new one that carries the new Lease, so any thread still holding the
old object keeps a consistent view of it.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from types import MappingProxyType


def utcnow():
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Lease:
    lease_id: str
    ttl_seconds: int
    renewable: bool = False
    issued_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if self.ttl_seconds < 0:
            raise ValueError(f"Lease ttl must be >= 0 got {self.ttl_seconds}")

    @property
    def expires_at(self):
        """The hard expiry, ``issued_at + ttl_seconds``."""
        return self.issued_at + timedelta(seconds=self.ttl_seconds)

    @property
    def static(self):
        """The store reported no lease duration, the value does not expire on its own."""
        return self.ttl_seconds == 0


@dataclass(frozen=True)
class Credential:
    data: MappingProxyType
    lease: Lease

    def __post_init__(self):
        # freeze a private copy so callers cannot mutate through their dict
        if not isinstance(self.data, MappingProxyType):
            object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    @property
    def lease_id(self):
        return self.lease.lease_id

    @property
    def issued_at(self):
        return self.lease.issued_at

    def renewed(self, lease):
        """Return the Credential that supersedes this one under ``lease``."""
        return replace(self, lease=lease)

    def to_document(self):
        """The JSON document written to the published file."""
        return {
            "data": dict(self.data),
            "lease_id": self.lease.lease_id,
            "lease_duration": int(self.lease.ttl_seconds),
        }

    @classmethod
    def from_document(cls, document, issued_at=None):
        if not isinstance(document, dict) or not isinstance(document.get("data"), dict):
            raise ValueError("Published credential must be an object with a data object")
        lease = Lease(lease_id=str(document.get("lease_id", "")),
                      ttl_seconds=int(document.get("lease_duration", 0)),
                      issued_at=issued_at or utcnow())
        return cls(data=document["data"], lease=lease)

    def __repr__(self):
        # field names only, values stay out of logs and tracebacks
        return (f"Credential(fields={sorted(self.data)}, lease_id={self.lease.lease_id!r}, "
                f"ttl_seconds={self.lease.ttl_seconds})")


@dataclass(frozen=True)
class AuthToken:
    """The sidecar's own session with the store.

    ``value`` is opaque to everything but the client that issued it. ``extra``
    holds whatever that client needs to keep using the session (for example
    Google credentials for the GCP backend).
    """

    value: str = field(repr=False)
    lease: Lease
    accessor: str = ""
    extra: object = field(default=None, repr=False, compare=False)

    @property
    def renewable(self):
        return self.lease.renewable
