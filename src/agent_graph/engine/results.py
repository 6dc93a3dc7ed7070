"""
Run results - status enums and per-node execution records.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from agent_graph.errors import RunFailedError, StructuredError


class RunStatus(str, Enum):
    """State of a run. Only the last three are terminal."""
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"


class NodeStatus(str, Enum):
    """Status of a node within one run."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROUTED = "routed"  # failed, error delivered on its error port
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (NodeStatus.PENDING, NodeStatus.RUNNING)


@dataclass
class NodeExecutionRecord:
    """
    Trace entry for one node.
    """
    node_id: str
    status: NodeStatus
    attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_ms: float = 0
    error: Optional[StructuredError] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": round(self.duration_ms, 3),
            "error": self.error.model_dump() if self.error else None,
        }


@dataclass
class RunResult:
    """
    Result of one run of a flow.
    """
    run_id: str
    flow_name: str
    status: RunStatus
    outputs: Dict[str, Any] = field(default_factory=dict)
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[StructuredError] = None
    trace: List[NodeExecutionRecord] = field(default_factory=list)
    node_status: Dict[str, NodeStatus] = field(default_factory=dict)
    duration_ms: float = 0

    @property
    def is_success(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    @property
    def is_error(self) -> bool:
        return self.status in (RunStatus.FAILED, RunStatus.ABORTED)

    def record(self, node_id: str) -> Optional[NodeExecutionRecord]:
        """Get the trace entry for a node."""
        for entry in self.trace:
            if entry.node_id == node_id:
                return entry
        return None

    def raise_for_error(self) -> None:
        """
        Raise if the run did not succeed.

        Raises:
            RunFailedError: With the run's structured error
        """
        if self.is_error:
            raise RunFailedError(self.error or StructuredError(
                error_type="RunFailed", message=f"Run ended {self.status.value}",
            ))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "flow": self.flow_name,
            "status": self.status.value,
            "output": self.output,
            "outputs": self.outputs,
            "error": self.error.model_dump() if self.error else None,
            "trace": [entry.to_dict() for entry in self.trace],
            "node_status": {k: v.value for k, v in self.node_status.items()},
            "duration_ms": round(self.duration_ms, 3),
        }


__all__ = [
    "RunStatus",
    "NodeStatus",
    "NodeExecutionRecord",
    "RunResult",
]
