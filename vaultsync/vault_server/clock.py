"""
Server-authoritative clock for VaultSync.

All timestamps stored by the server (updated_at, created_at) and all sync
cursors (synced_at) come from a Clock. Client clocks are never used for
ordering.

Timestamps are integer microseconds since the Unix epoch. The value 0
(EPOCH_US) is the "beginning of history" cursor used for a full sync.

Invariants:
    - now_us() is strictly increasing within a process, even if the wall
      clock steps backwards or two calls land in the same microsecond
    - Conversion to and from datetime is lossless at microsecond precision

How to change safely:
    - Never lower the resolution; cursors compare with strict ">" and a
      coarser clock makes same-tick writes invisible to the next sync
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

EPOCH_US = 0

_UTC_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@runtime_checkable
class Clock(Protocol):
    """Source of server timestamps."""

    def now_us(self) -> int:
        """Return the current time in microseconds since the Unix epoch."""
        ...


class SystemClock:
    """Wall clock with a strictly increasing guard.

    Safe to call from executor threads.

    Example:
        >>> clock = SystemClock()
        >>> a = clock.now_us()
        >>> b = clock.now_us()
        >>> b > a
        True
    """

    def __init__(self) -> None:
        self._last = EPOCH_US
        self._lock = threading.Lock()

    def now_us(self) -> int:
        wall = time.time_ns() // 1000
        with self._lock:
            self._last = max(wall, self._last + 1)
            return self._last


class ManualClock:
    """Deterministic clock for tests and tools.

    Each call to now_us() advances by `step_us` so consecutive writes get
    distinct timestamps.

    Attributes:
        current_us: Value returned by the next call
        step_us: Increment applied after each call
    """

    def __init__(self, start_us: int = 1_700_000_000_000_000, step_us: int = 1) -> None:
        self.current_us = start_us
        self.step_us = step_us
        self._lock = threading.Lock()

    def now_us(self) -> int:
        with self._lock:
            value = self.current_us
            self.current_us += self.step_us
            return value

    def advance(self, delta_us: int) -> None:
        """Move the clock forward by delta_us."""
        if delta_us < 0:
            raise ValueError("ManualClock cannot move backwards")
        with self._lock:
            self.current_us += delta_us


def to_datetime(ts_us: int) -> datetime:
    """Convert a microsecond timestamp to an aware UTC datetime."""
    seconds, micros = divmod(ts_us, 1_000_000)
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(microsecond=micros)


def from_datetime(value: datetime) -> int:
    """Convert a datetime to microseconds since the epoch.

    Naive datetimes are interpreted as UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    delta = value - _UTC_EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds
