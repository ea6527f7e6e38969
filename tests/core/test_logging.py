"""
Tests for the logging module.

Tests verify:
- Bound context is visible to structlog's contextvars
- LogContext unbinds only its own keys
- ECS field renaming for JSON output
"""

import logging

import structlog

from mapflow.core.logging import (
    LogContext,
    _add_service_metadata,
    _elasticsearch_compatible,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)


def _bound():
    return structlog.contextvars.get_contextvars()


class TestContextManagement:
    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_bind_and_unbind(self):
        bind_context(flow_id="nightly", execution_id="abc-123")
        assert _bound() == {"flow_id": "nightly", "execution_id": "abc-123"}

        unbind_context("execution_id")
        assert _bound() == {"flow_id": "nightly"}

    def test_log_context_restores_outer_keys(self):
        bind_context(flow_id="nightly")
        with LogContext(step_id="load"):
            assert _bound() == {"flow_id": "nightly", "step_id": "load"}
        assert _bound() == {"flow_id": "nightly"}

    def test_clear(self):
        bind_context(flow_id="nightly")
        clear_context()
        assert _bound() == {}


class TestProcessors:
    def test_service_name_added(self):
        event = _add_service_metadata(None, "info", {"event": "x"})
        assert event["service.name"] == "mapflow"

    def test_ecs_field_names(self):
        event = _elasticsearch_compatible(None, "info", {"timestamp": "t", "level": "info", "event": "x"})
        assert event == {"@timestamp": "t", "log.level": "info", "event": "x"}


class TestConfigure:
    def test_debug_suppressed_at_info(self, caplog):
        caplog.set_level(logging.DEBUG)
        configure_logging(level="INFO", json_format=True)
        logger = get_logger("tests.logging")
        logger.debug("hidden.event")
        logger.info("shown.event", flow_id="nightly")

        assert "hidden.event" not in caplog.text
        assert "shown.event" in caplog.text
        assert '"flow_id": "nightly"' in caplog.text
