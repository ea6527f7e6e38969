"""Ambient infrastructure: errors, logging, settings, ledger database."""

from mapflow.core.errors import (
    AlreadyRunningError,
    ConflictingRuleError,
    CyclicFlowError,
    DefinitionError,
    MapflowError,
    TerminalError,
    TransientError,
    error_kind,
    is_retryable,
)
from mapflow.core.logging import LogContext, configure_logging, get_logger

__all__ = [
    "AlreadyRunningError",
    "ConflictingRuleError",
    "CyclicFlowError",
    "DefinitionError",
    "LogContext",
    "MapflowError",
    "TerminalError",
    "TransientError",
    "configure_logging",
    "error_kind",
    "get_logger",
    "is_retryable",
]
