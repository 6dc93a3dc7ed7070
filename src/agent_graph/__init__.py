"""
Agent Graph - compile agent-workflow IR documents into execution plans and run them.

Usage:
    from agent_graph import OperationRegistry, compile_flow, execute

    registry = OperationRegistry()
    registry.register("upper", lambda args, inputs, ctx: inputs["text"].upper())
    plan = compile_flow(document)
    result = execute(plan, {"inputs": {"text": "hi"}, "session_id": "s1"})
"""

from agent_graph.dispatch import OperationDispatcher, OperationRegistry, get_operation_registry
from agent_graph.engine import (
    ExecutionEngine,
    NodeStatus,
    RunResult,
    RunStatus,
    compile_flow,
    execute,
    execute_async,
)
from agent_graph.errors import (
    AgentGraphError,
    FlowValidationError,
    NodeError,
    StructuredError,
    ValidationError,
)
from agent_graph.graph import ExecutionPlan, build
from agent_graph.ir import Flow, load_flow, validate
from agent_graph.state import Context, InMemoryStateBackend, RedisStateBackend, new_context

__version__ = "0.1.0"

__all__ = [
    "AgentGraphError",
    "build",
    "compile_flow",
    "Context",
    "execute",
    "execute_async",
    "ExecutionEngine",
    "ExecutionPlan",
    "Flow",
    "FlowValidationError",
    "get_operation_registry",
    "InMemoryStateBackend",
    "load_flow",
    "new_context",
    "NodeError",
    "NodeStatus",
    "OperationDispatcher",
    "OperationRegistry",
    "RedisStateBackend",
    "RunResult",
    "RunStatus",
    "StructuredError",
    "validate",
    "ValidationError",
]
