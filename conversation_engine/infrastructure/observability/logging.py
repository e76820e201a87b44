import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "conversation-engine"
) -> None:
    """Setup structured logging configuration"""

    # Configure Python logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add trace and session identifiers bound for the current task"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.utcnow().isoformat()

    bound = structlog.contextvars.get_contextvars()
    for key in ("trace_id", "session_id"):
        if bound.get(key) and key not in event_dict:
            event_dict[key] = bound[key]

    return event_dict


class EngineLogger:
    """Typed log events for the memory engine"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_turn_event(
        self,
        session_id: str,
        turn_number: int,
        role: str,
        **kwargs
    ):
        self.logger.info(
            "turn_event",
            session_id=session_id,
            turn_number=turn_number,
            role=role,
            **kwargs
        )

    def log_context_selection(
        self,
        session_id: str,
        turn_number: int,
        strategy: str,
        confidence: float,
        selected: int,
        duration_ms: Optional[float] = None
    ):
        """Log the outcome of one context selection"""

        self.logger.info(
            "context_selection",
            session_id=session_id,
            turn_number=turn_number,
            strategy=strategy,
            confidence=round(confidence, 3),
            selected=selected,
            duration_ms=duration_ms
        )

    def log_session_transition(
        self,
        session_id: str,
        from_status: Optional[str],
        to_status: str,
        reason: str,
        trigger_source: str
    ):
        self.logger.info(
            "session_transition",
            session_id=session_id,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            trigger_source=trigger_source
        )

    def log_rotation(
        self,
        session_id: str,
        archived_now: int,
        archived_total: int,
        total_turns: int
    ):
        self.logger.info(
            "rotation",
            session_id=session_id,
            archived_now=archived_now,
            archived_total=archived_total,
            total_turns=total_turns
        )

    def log_handoff(
        self,
        session_id: str,
        block: str,
        success: bool,
        attempts: int,
        error: Optional[str] = None
    ):
        """Log one external memory block update"""

        log = self.logger.info if success else self.logger.warning
        log(
            "memory_handoff",
            session_id=session_id,
            block=block,
            success=success,
            attempts=attempts,
            error=error
        )


# Global logger instance
engine_logger = EngineLogger("conversation_engine")


class MetricsCollector:
    """In-process counters, gauges and latency aggregates.

    Tags are only logged; values are aggregated per metric name.
    """

    def __init__(self):
        self.latencies: Dict[str, Dict[str, float]] = {}
        self.counters: Dict[str, int] = {}
        self.gauges: Dict[str, float] = {}

    def record_latency(self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        stats = self.latencies.setdefault(
            operation, {"count": 0, "sum": 0.0, "min": float("inf"), "max": 0.0}
        )
        stats["count"] += 1
        stats["sum"] += duration_ms
        stats["min"] = min(stats["min"], duration_ms)
        stats["max"] = max(stats["max"], duration_ms)
        self._emit("latency", operation, duration_ms, tags)

    def increment_counter(self, name: str, value: int = 1, tags: Optional[Dict[str, str]] = None):
        self.counters[name] = self.counters.get(name, 0) + value
        self._emit("counter", name, value, tags)

    def set_gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        self.gauges[name] = value
        self._emit("gauge", name, value, tags)

    def _emit(self, metric_type: str, name: str, value: float, tags: Optional[Dict[str, str]]):
        engine_logger.logger.debug("metric", metric_type=metric_type, name=name, value=value, tags=tags or {})

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Flat view: latencies under ``latency.<operation>``, then counters and gauges"""

        summary: Dict[str, Any] = {}
        for operation, stats in self.latencies.items():
            count = stats["count"]
            summary[f"latency.{operation}"] = {
                "count": count,
                "avg": stats["sum"] / count if count else 0.0,
                "min": stats["min"] if count else 0.0,
                "max": stats["max"],
            }
        summary.update(self.counters)
        summary.update(self.gauges)
        return summary

    def reset(self):
        self.latencies.clear()
        self.counters.clear()
        self.gauges.clear()


# Global metrics collector
metrics = MetricsCollector()
