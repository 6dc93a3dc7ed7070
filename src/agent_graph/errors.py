"""Error taxonomy for validation, node execution and runs."""
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ValidationError(BaseModel):
    """A single problem found while validating an IR document."""

    model_config = ConfigDict(frozen=True)

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable description")
    node_ids: tuple[str, ...] = Field(
        default=(),
        description="Nodes involved in the problem",
    )
    edge: str | None = Field(default=None, description="Edge as 'from -> to'")
    severity: str = Field(default="error", description="error or warning")

    def __str__(self) -> str:
        """String representation."""
        where = ""
        if self.node_ids:
            where = f" [{', '.join(self.node_ids)}]"
        elif self.edge:
            where = f" [{self.edge}]"
        return f"{self.code}{where}: {self.message}"


class StructuredError(BaseModel):
    """Error record reported on a run result or delivered on an error port."""

    model_config = ConfigDict(frozen=True)

    error_type: str = Field(..., description="Exception class name")
    message: str = Field(..., description="Underlying error description")
    node_id: str | None = Field(default=None, description="Originating node")
    attempts: int = Field(default=0, description="Attempts made by the node")
    details: dict[str, Any] = Field(default_factory=dict)


class AgentGraphError(Exception):
    """Base exception for agent graph errors."""

    pass


class FlowValidationError(AgentGraphError):
    """Raised when an IR document fails validation."""

    def __init__(self, errors: list[ValidationError]):
        self.errors = list(errors)
        summary = "; ".join(str(e) for e in self.errors[:5])
        more = len(self.errors) - 5
        if more > 0:
            summary += f"; ... {more} more"
        super().__init__(f"Flow validation failed ({len(self.errors)} errors): {summary}")


class StateError(AgentGraphError):
    """Raised when a state key cannot be rendered or its backend is unknown."""

    pass


class NodeError(AgentGraphError):
    """Base exception for failures of a single node."""

    retryable = True

    def __init__(self, message: str, node_id: str | None = None, attempt: int = 0):
        super().__init__(message)
        self.node_id = node_id
        self.attempt = attempt


class NodeTimeoutError(NodeError):
    """Raised when a node attempt exceeds its timeout."""

    pass


class NodeInvocationError(NodeError):
    """Raised when a node capability raises."""

    pass


class OutputSchemaError(NodeError):
    """Raised when a produced value fails its declared port schema."""

    pass


class NodeCancelledError(NodeError):
    """Marks a node aborted by run-level cancellation."""

    retryable = False


class RoutedError(StructuredError):
    """Error value delivered on a node's error port."""

    pass


class RunFailedError(AgentGraphError):
    """Raised by callers that want a failed run as an exception."""

    def __init__(self, error: StructuredError):
        super().__init__(f"Run failed at node {error.node_id}: {error.message}")
        self.error = error


def to_structured(error: BaseException, node_id: str | None = None, attempts: int = 0) -> StructuredError:
    """Convert an exception into a StructuredError record."""
    if isinstance(error, NodeError) and node_id is None:
        node_id = error.node_id
    cause = error.__cause__
    details: dict[str, Any] = {}
    if cause is not None:
        details["cause"] = f"{type(cause).__name__}: {cause}"
    return StructuredError(
        error_type=type(error).__name__,
        message=str(error),
        node_id=node_id,
        attempts=attempts,
        details=details,
    )
