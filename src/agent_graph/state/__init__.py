"""State package: run context and scoped state."""
from agent_graph.state.backends import (
    InMemoryStateBackend,
    RedisStateBackend,
    StateBackend,
    get_state_backend,
    reset_state_backend,
)
from agent_graph.state.context import Context, new_context
from agent_graph.state.manager import ScopedState, StateManager

__all__ = [
    "Context",
    "InMemoryStateBackend",
    "new_context",
    "RedisStateBackend",
    "ScopedState",
    "StateBackend",
    "StateManager",
    "get_state_backend",
    "reset_state_backend",
]
