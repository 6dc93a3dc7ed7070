"""Scoped key-value state for node executions."""
import string
from typing import Any, Mapping

from agent_graph.errors import StateError
from agent_graph.ir.models import Node, StateConfig, StateScope
from agent_graph.observability import get_logger
from agent_graph.state.backends import InMemoryStateBackend, StateBackend
from agent_graph.state.context import Context

logger = get_logger(__name__)

_formatter = string.Formatter()


class ScopedState:
    """Handle on one state key in one scope."""

    def __init__(self, manager: "StateManager", scope: StateScope, key: str,
                 ttl: float | None = None, backend: StateBackend | None = None):
        self._manager = manager
        self.scope = scope
        self.key = key
        self.ttl = ttl
        self._backend = backend

    def get(self, default: Any = None) -> Any:
        """Read the value, or default when unset."""
        if self.scope == StateScope.SESSION:
            return self._backend.get(self.key, default)
        return self._manager._request_get(self.key, default)

    def set(self, value: Any) -> None:
        """Write the value; last write wins."""
        if self.scope == StateScope.SESSION:
            self._backend.set(self.key, value, self.ttl)
        else:
            self._manager._request_set(self.key, value)

    def delete(self) -> None:
        if self.scope == StateScope.SESSION:
            self._backend.delete(self.key)
        else:
            self._manager._request_delete(self.key)

    def __repr__(self) -> str:
        return f"ScopedState(scope={self.scope.value!r}, key={self.key!r})"


class StateManager:
    """
    State for a single run.

    Request-scope values live in a dict owned by the run and are dropped by
    close(), which the engine calls when the run ends, error or not.
    Session-scope values go through an injected backend; the manager only
    derives keys and enforces scope lifetimes.
    """

    def __init__(
        self,
        context: Context,
        backend: StateBackend | None = None,
        backends: Mapping[str, StateBackend] | None = None,
        default_ttl: float | None = None,
    ):
        """
        Initialize the manager.

        Args:
            context: Run context used to render key templates
            backend: Default session backend
            backends: Named backends selectable through state.backend
            default_ttl: TTL for session keys whose config declares none
        """
        self.context = context
        self._backend = backend or InMemoryStateBackend()
        self._backends = dict(backends or {})
        self._default_ttl = default_ttl
        self._request: dict[str, Any] = {}
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise StateError("Request state accessed after the run ended")

    def _request_get(self, key: str, default: Any) -> Any:
        self._check_open()
        return self._request.get(key, default)

    def _request_set(self, key: str, value: Any) -> None:
        self._check_open()
        self._request[key] = value

    def _request_delete(self, key: str) -> None:
        self._check_open()
        self._request.pop(key, None)

    def backend_for(self, backend_ref: str | None) -> StateBackend:
        """Resolve a named backend, or the default one."""
        if backend_ref is None:
            return self._backend
        try:
            return self._backends[backend_ref]
        except KeyError:
            raise StateError(f"Unknown state backend: {backend_ref}") from None

    def state(
        self,
        scope: StateScope | str,
        key: str,
        ttl: float | None = None,
        backend_ref: str | None = None,
    ) -> ScopedState:
        """Get a handle on a key in the given scope."""
        scope = StateScope(scope)
        if scope == StateScope.SESSION:
            return ScopedState(
                self,
                scope,
                key,
                ttl=ttl if ttl is not None else self._default_ttl,
                backend=self.backend_for(backend_ref),
            )
        self._check_open()
        return ScopedState(self, scope, key)

    def render_key(self, template: str, node_id: str, inputs: Mapping[str, Any]) -> str:
        """
        Render a key template.

        Variables resolve against context fields, node inputs and 'node_id';
        context fields win over inputs of the same name. A referenced
        variable that is missing or None is an error.

        Raises:
            StateError: If the template cannot be rendered
        """
        values: dict[str, Any] = {}
        values.update({k: v for k, v in inputs.items() if isinstance(k, str)})
        values.update(self.context.template_values())
        values["node_id"] = node_id

        for _, field_name, _, _ in _formatter.parse(template):
            if field_name is None:
                continue
            root = field_name.split(".", 1)[0].split("[", 1)[0]
            if values.get(root) is None:
                raise StateError(
                    f"State key template {template!r} references {root!r}, "
                    "which is missing from the context and inputs"
                )
        try:
            return _formatter.vformat(template, (), values)
        except (KeyError, IndexError, AttributeError, ValueError) as e:
            raise StateError(f"Cannot render state key template {template!r}: {e}") from e

    def state_for(self, node: Node, inputs: Mapping[str, Any]) -> ScopedState:
        """Get the state handle configured for a node."""
        config = node.state_config or StateConfig()
        key = self.render_key(config.key_template, node.id, inputs)
        return self.state(config.scope, key, ttl=config.ttl, backend_ref=config.backend_ref)

    def request_snapshot(self) -> dict[str, Any]:
        """Copy of request-scope state (for debugging and tests)."""
        self._check_open()
        return dict(self._request)

    def close(self) -> None:
        """Discard request-scope state. Safe to call more than once."""
        if not self._closed:
            logger.debug(
                "Discarding request state",
                extra={"trace_id": self.context.trace_id, "keys": len(self._request)},
            )
        self._request.clear()
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed
