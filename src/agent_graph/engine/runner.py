"""Entry points: compile an IR document and execute it for one request."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping, Optional, Union

from agent_graph.errors import FlowValidationError
from agent_graph.graph.builder import ExecutionPlan, build
from agent_graph.ir.models import Flow, IRDocument
from agent_graph.ir.validator import validate
from agent_graph.state.context import new_context

from .executor import ExecutionEngine
from .results import RunResult

FlowLike = Union[ExecutionPlan, Flow, IRDocument, Mapping[str, Any]]


def compile_flow(document: Union[Flow, IRDocument, Mapping[str, Any]]) -> ExecutionPlan:
    """
    Validate a document and build its execution plan.

    Raises:
        FlowValidationError: Carrying every validation error
    """
    if isinstance(document, Flow):
        flow = document
    else:
        result = validate(document)
        if isinstance(result, list):
            raise FlowValidationError(result)
        flow = result
    return build(flow)


async def execute_async(
    flow: FlowLike,
    request: Optional[Mapping[str, Any]] = None,
    *,
    engine: Optional[ExecutionEngine] = None,
    deadline: Optional[float] = None,
    abort_event: Optional[asyncio.Event] = None,
) -> RunResult:
    """
    Run a flow for one inbound request.

    Args:
        flow: Plan, Flow or IR document
        request: Context fields plus 'inputs' for the '_input' ports
        engine: Engine to run on (a default one is created when omitted)
        deadline: Run deadline in seconds
        abort_event: Setting this event aborts the run

    Returns:
        RunResult
    """
    plan = flow if isinstance(flow, ExecutionPlan) else compile_flow(flow)
    request = dict(request or {})
    context = new_context(request)
    engine = engine or ExecutionEngine()
    return await engine.run(
        plan,
        context,
        request.get("inputs") or {},
        deadline=deadline,
        abort_event=abort_event,
    )


def execute(
    flow: FlowLike,
    request: Optional[Mapping[str, Any]] = None,
    **kwargs: Any,
) -> RunResult:
    """Synchronous wrapper around execute_async()."""
    return asyncio.run(execute_async(flow, request, **kwargs))


__all__ = ["compile_flow", "execute", "execute_async"]
