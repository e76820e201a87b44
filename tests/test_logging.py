import pytest
import structlog
from structlog.testing import capture_logs

from conversation_engine.infrastructure.observability.logging import (
    EngineLogger,
    MetricsCollector,
    add_service_context,
    setup_logging,
)


@pytest.fixture
def restore_structlog():
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


class TestSetupLogging:

    def test_json_renderer_selected(self, restore_structlog):
        setup_logging(log_level="DEBUG", log_format="json", service_name="engine-test")

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        assert structlog.contextvars.get_contextvars()["service"] == "engine-test"

    def test_console_renderer_selected(self, restore_structlog):
        setup_logging(log_format="console")

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)

    def test_service_context_copies_bound_session(self, restore_structlog):
        structlog.contextvars.bind_contextvars(session_id="s1")

        event = add_service_context(None, "info", {"event": "turn_event"})

        assert event["session_id"] == "s1"
        assert "timestamp" in event


class TestEngineLogger:

    def test_handoff_failure_logged_as_warning(self):
        engine_log = EngineLogger("engine-test")

        with capture_logs() as logs:
            engine_log.log_handoff("s1", "conversation_history", False, 3, error="timed out")

        assert logs == [{
            "event": "memory_handoff",
            "log_level": "warning",
            "session_id": "s1",
            "block": "conversation_history",
            "success": False,
            "attempts": 3,
            "error": "timed out",
        }]

    def test_context_selection_rounds_confidence(self):
        engine_log = EngineLogger("engine-test")

        with capture_logs() as logs:
            engine_log.log_context_selection("s1", 3, "MULTI_STRATEGY", 0.123456, 2)

        assert logs[0]["confidence"] == 0.123
        assert logs[0]["selected"] == 2


class TestMetricsCollector:

    def test_summary_aggregates_latency(self):
        collector = MetricsCollector()
        collector.record_latency("context.select", 10.0)
        collector.record_latency("context.select", 30.0)
        collector.increment_counter("handoff.sent")
        collector.increment_counter("handoff.sent", value=2)
        collector.set_gauge("sessions.active", 4)

        summary = collector.get_metrics_summary()

        assert summary["latency.context.select"] == {"count": 2, "avg": 20.0, "min": 10.0, "max": 30.0}
        assert summary["handoff.sent"] == 3
        assert summary["sessions.active"] == 4

    def test_reset_clears_metrics(self):
        collector = MetricsCollector()
        collector.increment_counter("reply.fallback")
        collector.reset()

        assert collector.get_metrics_summary() == {}
