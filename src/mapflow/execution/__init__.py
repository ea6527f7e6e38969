"""
Execution - run ledger, retry policy and the flow execution engine.
"""

from .engine import ExecutionEngine
from .ledger import ORPHANED, RunLedger
from .models import (
    EventType,
    Execution,
    ExecutionEvent,
    ExecutionStatus,
    InvalidTransitionError,
    StepOutcome,
    StepStatus,
    TriggerFiring,
    TriggerSource,
)
from .retry import ExponentialBackoff, NoRetry, RetryContext, RetryStrategy
from .step_runner import ConnectorPool, StepFailure, StepResult, StepRunner

__all__ = [
    "ORPHANED",
    "ConnectorPool",
    "EventType",
    "Execution",
    "ExecutionEngine",
    "ExecutionEvent",
    "ExecutionStatus",
    "ExponentialBackoff",
    "InvalidTransitionError",
    "NoRetry",
    "RetryContext",
    "RetryStrategy",
    "RunLedger",
    "StepFailure",
    "StepOutcome",
    "StepResult",
    "StepRunner",
    "StepStatus",
    "TriggerFiring",
    "TriggerSource",
]
