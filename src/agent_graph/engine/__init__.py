"""
Engine - runs execution plans.

This package provides:
- ExecutionEngine: concurrent scheduler with timeout, retry and error routing
- RunResult / NodeExecutionRecord: run outcome and per-node trace
- compile_flow() / execute(): validate, build and run in one call
"""

from .executor import BackoffPolicy, EdgeState, ExecutionEngine, NodeOutcome, fixed_backoff
from .results import NodeExecutionRecord, NodeStatus, RunResult, RunStatus
from .runner import compile_flow, execute, execute_async

__all__ = [
    "BackoffPolicy",
    "EdgeState",
    "ExecutionEngine",
    "NodeOutcome",
    "fixed_backoff",
    "NodeExecutionRecord",
    "NodeStatus",
    "RunResult",
    "RunStatus",
    "compile_flow",
    "execute",
    "execute_async",
]
