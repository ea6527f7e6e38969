"""Clocks for the trigger scheduler.

``now()`` is UTC wall time, used to evaluate cron expressions.
``monotonic()`` is for measuring tick durations.  Tests drive the
scheduler with :class:`ManualClock`.
"""

from __future__ import annotations

import threading
import time
from datetime import UTC, datetime, timedelta
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    def now(self) -> datetime: ...

    def monotonic(self) -> float: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()


class ManualClock:
    """A clock that only moves when told to.

    Example:
        >>> clock = ManualClock(datetime(2025, 1, 1, 9, 0, tzinfo=UTC))
        >>> clock.advance(minutes=5)
        >>> clock.now().minute
        5
    """

    def __init__(self, start: datetime | None = None):
        start = start or datetime(2025, 1, 1, tzinfo=UTC)
        if start.tzinfo is None:
            start = start.replace(tzinfo=UTC)
        self._now = start
        self._mono = 0.0
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def monotonic(self) -> float:
        with self._lock:
            return self._mono

    def advance(self, seconds: float = 0.0, *, minutes: float = 0.0, hours: float = 0.0) -> None:
        delta = timedelta(seconds=seconds, minutes=minutes, hours=hours)
        with self._lock:
            self._now += delta
            self._mono += delta.total_seconds()

    def set(self, moment: datetime) -> None:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        with self._lock:
            self._mono += max(0.0, (moment - self._now).total_seconds())
            self._now = moment


__all__ = ["Clock", "ManualClock", "SystemClock"]
