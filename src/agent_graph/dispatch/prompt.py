"""Prompt layer: template rendering, model invocation and fallback policy."""
import json
from string import Template
from typing import Any, Awaitable, Callable, Mapping, Protocol

import jsonschema

from agent_graph.errors import NodeInvocationError, OutputSchemaError
from agent_graph.ir.models import PromptTransform
from agent_graph.observability import get_logger
from agent_graph.state.context import Context

logger = get_logger(__name__)


class ModelCapability(Protocol):
    """Model invocation capability supplied by the host."""

    def generate(
        self,
        system: str | None,
        user_prompt: str,
        schema: dict[str, Any] | None = None,
    ) -> Any:
        """Return text or structured output; may be a coroutine function."""
        ...


def _template_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str, sort_keys=True)


def render_prompt(template: str, inputs: Mapping[str, Any], context: Context) -> str:
    """
    Render a '$name' template over context fields and node inputs.

    Inputs take precedence over context fields of the same name.

    Raises:
        NodeInvocationError: If the template references an unknown name
    """
    values = {k: _template_value(v) for k, v in context.template_values().items() if v is not None}
    values.update({k: _template_value(v) for k, v in inputs.items()})
    try:
        return Template(template).substitute(values)
    except KeyError as e:
        raise NodeInvocationError(f"Prompt template references unknown variable {e}") from e
    except ValueError as e:
        raise NodeInvocationError(f"Malformed prompt template: {e}") from e


def check_response(response: Any, schema: dict[str, Any] | None) -> Any:
    """
    Decode and validate a model response against the output schema.

    Raises:
        OutputSchemaError: If the response does not satisfy the schema
    """
    if schema is None:
        return response
    if isinstance(response, str):
        try:
            response = json.loads(response)
        except json.JSONDecodeError as e:
            raise OutputSchemaError(f"Model response is not valid JSON: {e.msg}") from e
    try:
        jsonschema.validate(instance=response, schema=schema)
    except jsonschema.ValidationError as e:
        raise OutputSchemaError(f"Model response failed output schema: {e.message}") from e
    return response


class PromptRunner:
    """Runs prompt transforms against registered model capabilities."""

    def __init__(
        self,
        models: Mapping[str, ModelCapability] | None = None,
        default_model: str | None = None,
    ):
        """
        Initialize the runner.

        Args:
            models: Model capabilities by name
            default_model: Model used when a transform names none (defaults
                to the first model given)
        """
        self._models = dict(models or {})
        self._default_model = default_model or next(iter(self._models), None)

    def register_model(self, name: str, model: ModelCapability) -> None:
        """Register a model capability."""
        self._models[name] = model
        if self._default_model is None:
            self._default_model = name

    def model(self, model_ref: str | None) -> ModelCapability:
        """
        Resolve a model capability by name.

        Raises:
            NodeInvocationError: If no such model is registered
        """
        name = model_ref or self._default_model
        if name is None or name not in self._models:
            raise NodeInvocationError(f"Unknown model: {model_ref or '<default>'}")
        return self._models[name]

    async def run(
        self,
        transform: PromptTransform,
        inputs: Mapping[str, Any],
        context: Context,
        call: Callable[..., Awaitable[Any]],
    ) -> Any:
        """
        Render, invoke and validate; apply the declared fallback on schema failure.

        Args:
            transform: Prompt transform of the node
            inputs: Node input values
            context: Run context
            call: Helper that awaits sync or async callables

        Returns:
            Validated model output
        """
        user_prompt = render_prompt(transform.template, inputs, context)
        schema = transform.output_schema
        model = self.model(transform.model_ref)

        response = await call(model.generate, transform.system, user_prompt, schema)
        try:
            return check_response(response, schema)
        except OutputSchemaError:
            fallback = transform.fallback
            logger.warning(
                f"Prompt output failed schema, applying fallback '{fallback.policy}'",
                extra={"trace_id": context.trace_id},
            )
            if fallback.policy == "static":
                return fallback.response
            if fallback.policy == "switch_model":
                backup = self.model(fallback.model_ref)
                response = await call(backup.generate, transform.system, user_prompt, schema)
                return check_response(response, schema)
            raise
