"""Tests for execution status machines and model serialization."""

import pytest

from mapflow.execution.models import (
    EXECUTION_VALID_TRANSITIONS,
    EventType,
    Execution,
    ExecutionEvent,
    ExecutionStatus,
    InvalidTransitionError,
    StepOutcome,
    StepStatus,
    TriggerSource,
    validate_execution_transition,
    validate_step_transition,
)


class TestExecutionStatus:
    @pytest.mark.parametrize(
        "current, target",
        [
            (ExecutionStatus.PENDING, ExecutionStatus.RUNNING),
            (ExecutionStatus.PENDING, ExecutionStatus.CANCELLED),
            (ExecutionStatus.PENDING, ExecutionStatus.FAILED),
            (ExecutionStatus.RUNNING, ExecutionStatus.SUCCEEDED),
            (ExecutionStatus.RUNNING, ExecutionStatus.FAILED),
            (ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED),
        ],
    )
    def test_allowed(self, current, target):
        validate_execution_transition(current, target)

    @pytest.mark.parametrize("terminal", [s for s in ExecutionStatus if s.is_terminal])
    def test_terminal_states_never_move(self, terminal):
        assert EXECUTION_VALID_TRANSITIONS[terminal] == frozenset()
        with pytest.raises(InvalidTransitionError, match=f"{terminal.value} → running"):
            validate_execution_transition(terminal, ExecutionStatus.RUNNING)

    def test_active(self):
        assert {s for s in ExecutionStatus if s.is_active} == {ExecutionStatus.PENDING, ExecutionStatus.RUNNING}

    def test_invalid_transition_is_a_value_error(self):
        assert issubclass(InvalidTransitionError, ValueError)


class TestStepStatus:
    def test_pending_cannot_fail_without_running(self):
        with pytest.raises(InvalidTransitionError, match="StepStatus"):
            validate_step_transition(StepStatus.PENDING, StepStatus.FAILED)

    def test_running_cannot_be_cancelled(self):
        with pytest.raises(InvalidTransitionError):
            validate_step_transition(StepStatus.RUNNING, StepStatus.CANCELLED)

    def test_pending_can_be_cancelled(self):
        validate_step_transition(StepStatus.PENDING, StepStatus.CANCELLED)


class TestModels:
    def test_execution_create(self):
        execution = Execution.create("orders", {"day": "x"}, TriggerSource.SCHEDULE, "schedule:k")
        assert execution.status == ExecutionStatus.PENDING
        assert execution.created_at.tzinfo is not None
        assert execution.to_dict()["trigger_source"] == "schedule"
        assert execution.to_dict()["steps"] == []

    def test_outcome_lookup(self):
        execution = Execution.create("orders")
        execution.outcomes = [StepOutcome(execution.id, "a", 0), StepOutcome(execution.id, "b", 1)]
        assert execution.outcome("b").position == 1
        assert execution.outcome("c") is None

    def test_event_accepts_string_type(self):
        event = ExecutionEvent.create("e1", "step_retried", {"attempt": 2}, step_id="load")
        assert event.event_type is EventType.STEP_RETRIED
        assert event.to_dict()["step_id"] == "load"
