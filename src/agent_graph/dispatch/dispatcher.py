"""
Operation Dispatcher - maps node transforms to executable capabilities.

Three capability kinds:
- declarative: a named handler from the OperationRegistry, called as
  handler(args, inputs, context)
- code: a user function called as fn(inputs, context, state), either
  registered by name or given as Python source
- prompt: a templated call to a model capability (see prompt.py)

The dispatcher does not implement any operation itself. Coroutine
functions are awaited; plain callables run in a worker thread so the
engine's timeouts and cancellation stay responsive.
"""
import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from agent_graph.config import get_settings
from agent_graph.dispatch.prompt import ModelCapability, PromptRunner
from agent_graph.dispatch.registry import OperationRegistry, get_operation_registry
from agent_graph.errors import NodeError, NodeInvocationError
from agent_graph.ir.models import CodeTransform, DeclarativeTransform, PromptTransform
from agent_graph.observability import get_logger
from agent_graph.state.context import Context
from agent_graph.state.manager import ScopedState

logger = get_logger(__name__)

CodeFunction = Callable[[Mapping[str, Any], Context, ScopedState], Any]


async def call_maybe_async(fn: Callable[..., Any], *args: Any) -> Any:
    """Call fn with args, awaiting coroutines and threading sync callables."""
    if inspect.iscoroutinefunction(fn):
        return await fn(*args)
    result = await asyncio.to_thread(fn, *args)
    if inspect.isawaitable(result):
        return await result
    return result


@dataclass(frozen=True)
class Capability:
    """Resolved executable form of a transform."""

    kind: str
    name: str
    transform: Any
    target: Any = None


def compile_code(body: str, label: str = "<code>") -> CodeFunction:
    """
    Compile Python source into a code function.

    A single expression is evaluated with 'inputs', 'context' and 'state'
    in scope. Otherwise the source must define run(inputs, context, state).

    SECURITY: This executes arbitrary code - only load trusted flows.

    Raises:
        NodeInvocationError: If the source does not compile or lacks run()
    """
    try:
        expression = compile(body, label, "eval")
    except SyntaxError:
        expression = None

    if expression is not None:
        def evaluate(inputs, context, state):
            namespace = {
                "__builtins__": __builtins__,
                "inputs": inputs,
                "context": context,
                "state": state,
            }
            return eval(expression, namespace)
        return evaluate

    try:
        module = compile(body, label, "exec")
    except SyntaxError as e:
        raise NodeInvocationError(f"Code transform does not compile: {e.msg} (line {e.lineno})") from e

    namespace: dict[str, Any] = {"__builtins__": __builtins__}
    try:
        exec(module, namespace)
    except Exception as e:
        raise NodeInvocationError(f"Code transform failed to load: {e}") from e

    run = namespace.get("run")
    if not callable(run):
        raise NodeInvocationError("Code transform must define run(inputs, context, state)")
    return run


class OperationDispatcher:
    """
    Resolves and invokes node transforms.

    Usage:
        dispatcher = OperationDispatcher(registry=registry, models={"default": llm})
        capability = dispatcher.resolve(node.transform)
        output = await dispatcher.invoke(capability, inputs, context, state)
    """

    def __init__(
        self,
        registry: OperationRegistry | None = None,
        code_functions: Mapping[str, CodeFunction] | None = None,
        models: Mapping[str, ModelCapability] | None = None,
        default_model: str | None = None,
        allow_code_source: bool | None = None,
    ):
        """
        Initialize dispatcher.

        Args:
            registry: Declarative operations (defaults to the global registry)
            code_functions: Host functions addressable by code transform body
            models: Model capabilities for prompt transforms
            default_model: Model used when a prompt names none
            allow_code_source: Allow Python source bodies (defaults to settings)
        """
        self._registry = registry if registry is not None else get_operation_registry()
        self._code_functions = dict(code_functions or {})
        self._prompts = PromptRunner(models, default_model)
        if allow_code_source is None:
            allow_code_source = get_settings().allow_code_source
        self._allow_code_source = allow_code_source
        self._compiled: dict[str, CodeFunction] = {}

    @property
    def registry(self) -> OperationRegistry:
        return self._registry

    def register_code(self, name: str, fn: CodeFunction) -> None:
        """Register a host function for code transforms."""
        self._code_functions[name] = fn

    def register_model(self, name: str, model: ModelCapability) -> None:
        """Register a model capability for prompt transforms."""
        self._prompts.register_model(name, model)

    def resolve(self, transform: DeclarativeTransform | CodeTransform | PromptTransform) -> Capability:
        """
        Map a transform to a capability.

        Raises:
            NodeInvocationError: If the operation, function or model is unknown
        """
        if isinstance(transform, DeclarativeTransform):
            handler = self._registry.get(transform.op_name)
            if handler is None:
                raise NodeInvocationError(f"Unknown operation: {transform.op_name}")
            return Capability("declarative", transform.op_name, transform, handler)

        if isinstance(transform, CodeTransform):
            fn = self._code_functions.get(transform.body)
            if fn is not None:
                return Capability("code", transform.body, transform, fn)
            if not self._allow_code_source:
                raise NodeInvocationError(
                    f"Code function {transform.body[:40]!r} is not registered "
                    "and inline source is disabled"
                )
            fn = self._compiled.get(transform.body)
            if fn is None:
                fn = compile_code(transform.body)
                self._compiled[transform.body] = fn
            return Capability("code", "<source>", transform, fn)

        if isinstance(transform, PromptTransform):
            model = self._prompts.model(transform.model_ref)
            return Capability("prompt", transform.model_ref or "<default>", transform, model)

        raise NodeInvocationError(f"Unsupported transform: {type(transform).__name__}")

    async def invoke(
        self,
        capability: Capability,
        inputs: Mapping[str, Any],
        context: Context,
        state: ScopedState,
    ) -> Any:
        """
        Invoke a capability.

        Raises:
            NodeError: NodeInvocationError for capability errors,
                OutputSchemaError for prompt schema failures
        """
        try:
            if capability.kind == "declarative":
                return await call_maybe_async(
                    capability.target, dict(capability.transform.args), dict(inputs), context
                )
            if capability.kind == "code":
                return await call_maybe_async(capability.target, dict(inputs), context, state)
            return await self._prompts.run(capability.transform, inputs, context, call_maybe_async)
        except NodeError:
            raise
        except Exception as e:
            raise NodeInvocationError(
                f"{capability.kind} capability '{capability.name}' raised {type(e).__name__}: {e}"
            ) from e
