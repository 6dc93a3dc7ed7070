"""Dispatch package: operation registry and capability dispatch."""
from agent_graph.dispatch.dispatcher import (
    Capability,
    OperationDispatcher,
    call_maybe_async,
    compile_code,
)
from agent_graph.dispatch.prompt import ModelCapability, PromptRunner, render_prompt
from agent_graph.dispatch.registry import (
    get_operation_registry,
    OperationRegistry,
    reset_operation_registry,
)

__all__ = [
    "call_maybe_async",
    "Capability",
    "compile_code",
    "get_operation_registry",
    "ModelCapability",
    "OperationDispatcher",
    "OperationRegistry",
    "PromptRunner",
    "render_prompt",
    "reset_operation_registry",
]
