"""Pytest configuration and fixtures."""
import os

import pytest

# Set test environment variables
os.environ["AGENT_GRAPH_ENV"] = "test"
os.environ["AGENT_GRAPH_REDIS_URL"] = "redis://localhost:6379/1"  # Test DB
os.environ["AGENT_GRAPH_DEFAULT_RETRY_BACKOFF_S"] = "0"


@pytest.fixture(autouse=True)
def fresh_globals():
    """Drop cached settings, the operation registry and session state between tests."""
    from agent_graph.config import reset_settings
    from agent_graph.dispatch import reset_operation_registry
    from agent_graph.state import reset_state_backend

    reset_settings()
    reset_operation_registry()
    reset_state_backend()
    yield
    reset_settings()
    reset_operation_registry()
    reset_state_backend()


@pytest.fixture
def context():
    """Create a test run context."""
    from agent_graph.state import new_context

    return new_context({
        "user_id": "user-1",
        "session_id": "s1",
        "trace_id": "test-trace-123",
        "tenant": "acme",
    })


@pytest.fixture
def registry():
    """Create an empty operation registry."""
    from agent_graph.dispatch import OperationRegistry

    return OperationRegistry()


@pytest.fixture
def engine_factory(registry):
    """Build engines over the test registry with zero retry backoff."""
    from agent_graph.config import Settings
    from agent_graph.dispatch import OperationDispatcher
    from agent_graph.engine import ExecutionEngine

    def factory(**kwargs):
        dispatcher = kwargs.pop("dispatcher", None) or OperationDispatcher(
            registry=registry,
            allow_code_source=True,
        )
        settings = kwargs.pop("settings", None) or Settings(default_retry_backoff_s=0)
        return ExecutionEngine(dispatcher=dispatcher, settings=settings, **kwargs)

    return factory


@pytest.fixture
def linear_document():
    """Two-node flow: _input.text -> upper -> exclaim -> _output.text."""
    return {
        "version": "1.0",
        "metadata": {"name": "linear"},
        "nodes": [
            {
                "id": "upper",
                "inputs": [{"name": "text", "type": "string"}],
                "outputs": [{"name": "text", "type": "string"}],
                "transform": {"kind": "declarative", "op": "upper"},
            },
            {
                "id": "exclaim",
                "inputs": [{"name": "text", "type": "string"}],
                "outputs": [{"name": "text", "type": "string"}],
                "transform": {"kind": "code", "body": "inputs['text'] + '!'"},
            },
        ],
        "edges": [
            {"from": "_input.text", "to": "upper.text"},
            {"from": "upper.text", "to": "exclaim.text"},
            {"from": "exclaim.text", "to": "_output.text"},
        ],
    }
