"""Registry of declarative operations supplied by the host embedding."""
from typing import Any, Callable

from agent_graph.observability import get_logger

logger = get_logger(__name__)

# handler(args, inputs, context) -> output; may be sync or async
OperationHandler = Callable[..., Any]


class OperationRegistry:
    """Registry mapping operation names to handlers."""

    def __init__(self):
        """Initialize operation registry."""
        self._operations: dict[str, OperationHandler] = {}

    def register(self, op_name: str, handler: OperationHandler) -> None:
        """
        Register an operation.

        Args:
            op_name: Name used by declarative transforms
            handler: Callable of (args, inputs, context)

        Raises:
            ValueError: If the name is empty or the handler is not callable
        """
        if not op_name:
            raise ValueError("Operation name must not be empty")
        if not callable(handler):
            raise ValueError(f"Handler for {op_name} is not callable")
        if op_name in self._operations:
            logger.warning(f"Operation re-registered: {op_name}")
        self._operations[op_name] = handler
        logger.info(f"Operation registered: {op_name}")

    def operation(self, op_name: str) -> Callable[[OperationHandler], OperationHandler]:
        """Decorator form of register()."""
        def decorator(handler: OperationHandler) -> OperationHandler:
            self.register(op_name, handler)
            return handler
        return decorator

    def get(self, op_name: str) -> OperationHandler | None:
        """
        Get an operation handler by name.

        Returns:
            Handler or None if not found
        """
        return self._operations.get(op_name)

    def __contains__(self, op_name: str) -> bool:
        return op_name in self._operations

    def list_operations(self) -> list[str]:
        """List all registered operation names."""
        return sorted(self._operations.keys())


# Global registry
_operation_registry: OperationRegistry | None = None


def get_operation_registry() -> OperationRegistry:
    """Get or create the global operation registry."""
    global _operation_registry
    if _operation_registry is None:
        _operation_registry = OperationRegistry()
    return _operation_registry


def reset_operation_registry() -> None:
    """Reset the global registry (useful for testing)."""
    global _operation_registry
    _operation_registry = None
