#!/usr/bin/env python3
"""
Staleness filter.

An informer replays every existing Event on startup. Dispatching those would
spam the sink with history, so events created before the controller started
are considered stale and dropped. The reference instant is captured once and
never re-sampled per event.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def capture_reference(clock: Callable[[], datetime] = utc_now) -> datetime:
    """
    Sample the reference instant.

    Kubernetes timestamps have one-second resolution, so the instant is
    truncated to the whole second; otherwise an event created in the same
    second the controller started would compare as older.
    """
    now = clock()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.replace(microsecond=0)


class StalenessFilter:
    """Pure predicate: stale iff created < reference - grace."""

    def __init__(self, reference: datetime, grace: timedelta = timedelta(0)):
        if reference.tzinfo is None:
            reference = reference.replace(tzinfo=timezone.utc)
        if grace < timedelta(0):
            raise ValueError(f"grace cannot be negative: {grace}")
        self.reference = reference
        self.grace = grace

    @property
    def cutoff(self) -> datetime:
        return self.reference - self.grace

    def is_stale(self, created: Optional[datetime]) -> bool:
        # Without a creation time we cannot tell; let it through
        if created is None:
            return False
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return created < self.cutoff

    def __repr__(self):
        return f"StalenessFilter(reference={self.reference.isoformat()}, grace={self.grace})"
