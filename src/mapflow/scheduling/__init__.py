"""
Scheduling - schedule and file-arrival triggers for flows.
"""

from .clock import Clock, ManualClock, SystemClock
from .protocol import BackendHealth, SchedulerBackend, TickCallback
from .service import FlowTriggerState, SchedulerStats, TriggerScheduler, TriggerState
from .thread_backend import ThreadSchedulerBackend
from .triggers import (
    ARRIVAL_PREFIX,
    SCHEDULE_PREFIX,
    Detection,
    detect_arrivals,
    detect_schedule,
    latest_due_instant,
    schedule_fire_key,
)

__all__ = [
    "ARRIVAL_PREFIX",
    "SCHEDULE_PREFIX",
    "BackendHealth",
    "Clock",
    "Detection",
    "FlowTriggerState",
    "ManualClock",
    "SchedulerBackend",
    "SchedulerStats",
    "SystemClock",
    "ThreadSchedulerBackend",
    "TickCallback",
    "TriggerScheduler",
    "TriggerState",
    "detect_arrivals",
    "detect_schedule",
    "latest_due_instant",
    "schedule_fire_key",
]
