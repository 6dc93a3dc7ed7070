"""Structured JSON logging with run trace context."""
import logging
import sys
from typing import Any

from pythonjsonlogger import jsonlogger

from agent_graph.config import get_settings

TRACE_FIELDS = ("trace_id", "run_id", "flow", "node_id", "attempt")


class TraceContextFilter(logging.Filter):
    """Add trace context to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add default trace context fields if not present."""
        for name in TRACE_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, None)
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with standardized field names."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        """Add custom fields to the log record."""
        super().add_fields(log_record, record, message_dict)

        if "timestamp" not in log_record:
            log_record["timestamp"] = self.formatTime(record, self.datefmt)

        log_record["level"] = record.levelname
        log_record["logger"] = record.name

        for name in TRACE_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_record[name] = value


def setup_logging() -> None:
    """Configure structured JSON logging for the application."""
    settings = get_settings()

    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    handler.setFormatter(formatter)
    handler.addFilter(TraceContextFilter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(settings.log_level)

    # Reduce noise from third-party libraries
    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


class TraceLoggerAdapter(logging.LoggerAdapter):
    """LoggerAdapter that keeps per-call extra, layered over the adapter's own."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def get_logger(name: str) -> TraceLoggerAdapter:
    """
    Get a logger with trace context support.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Adapter that passes trace context given in extra through to records
    """
    logger = logging.getLogger(name)
    return TraceLoggerAdapter(logger, extra={})


def with_trace_context(
    logger: logging.LoggerAdapter,
    trace_id: str | None = None,
    run_id: str | None = None,
    flow: str | None = None,
    node_id: str | None = None,
    attempt: int | None = None,
    **kwargs: Any,
) -> dict[str, Any]:
    """
    Create an extra dict with trace context for logging.

    Args:
        logger: Logger adapter
        trace_id: Trace ID of the inbound request
        run_id: Run ID
        flow: Flow name
        node_id: Node being executed
        attempt: Attempt number for the node
        **kwargs: Additional context fields

    Returns:
        Dict to pass as extra parameter to logger methods
    """
    extra = kwargs.copy()
    if trace_id:
        extra["trace_id"] = trace_id
    if run_id:
        extra["run_id"] = run_id
    if flow:
        extra["flow"] = flow
    if node_id:
        extra["node_id"] = node_id
    if attempt is not None:
        extra["attempt"] = attempt
    return extra
