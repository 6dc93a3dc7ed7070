"""Observability package."""
from agent_graph.observability.logging import (
    TraceLoggerAdapter,
    get_logger,
    setup_logging,
    with_trace_context,
)

__all__ = ["get_logger", "setup_logging", "TraceLoggerAdapter", "with_trace_context"]
