"""Scheduler backend protocol.

Backends decide WHEN ticks happen; :class:`TriggerScheduler` decides WHAT
happens on each tick (beat-as-poller).  This keeps trigger evaluation
testable with direct ``tick()`` calls and a manual clock.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

TickCallback = Callable[[], Any]


@runtime_checkable
class SchedulerBackend(Protocol):
    """Protocol for pluggable scheduler timing backends.

    A backend is responsible ONLY for timing: calling the tick callback
    at the given interval.
    """

    name: str

    def start(self, tick_callback: TickCallback, interval_seconds: float = 10.0) -> None:
        """Start calling *tick_callback* every *interval_seconds*."""
        ...

    def stop(self) -> None:
        """Stop the loop, waiting for the current tick to complete."""
        ...

    def health(self) -> dict[str, Any]:
        """At least ``healthy``, ``backend``, ``tick_count``, ``last_tick``."""
        ...


@dataclass
class BackendHealth:
    """Structured backend health response."""

    healthy: bool
    backend: str
    tick_count: int = 0
    last_tick: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "backend": self.backend,
            "tick_count": self.tick_count,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            **self.extra,
        }


__all__ = ["BackendHealth", "SchedulerBackend", "TickCallback"]
