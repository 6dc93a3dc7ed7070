"""
IR Models - pydantic structures for agent flow documents.

An IR document is the editable, versioned description of one agent flow.
A Flow is the immutable value produced once the document validates.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .types import PortType, parse_duration

INPUT_BOUNDARY = "_input"
OUTPUT_BOUNDARY = "_output"
BOUNDARIES = (INPUT_BOUNDARY, OUTPUT_BOUNDARY)


def split_endpoint(endpoint: str) -> Optional[Tuple[str, str]]:
    """Split 'node.port' into (node, port); None if malformed."""
    node, sep, port = endpoint.partition(".")
    if not sep or not node or not port or "." in port:
        return None
    return node, port


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)


class Port(_Frozen):
    """
    A named, typed data slot on a node.

    Example: {"name": "query", "type": "string", "optional": false}
    """
    name: str = Field(..., description="Port name (unique within its node)")
    type: PortType = Field(..., description="Value type carried by the port")
    optional: bool = Field(False, description="Node may run without a value")
    validation_schema: Optional[Dict[str, Any]] = Field(
        None, alias="schema", description="JSON Schema for produced values"
    )


class Edge(_Frozen):
    """
    Directed, optionally conditional link between two ports.

    Example: {"from": "scorer.score", "to": "reply.score", "condition": "score > 0.7"}
    """
    source: str = Field(..., alias="from", description="Source endpoint 'node.port'")
    target: str = Field(..., alias="to", description="Target endpoint 'node.port'")
    condition: Optional[str] = Field(None, description="Boolean expression over the value")
    inline_transform: Optional[str] = Field(
        None, alias="transform", description="Expression applied to the value in transit"
    )

    @property
    def label(self) -> str:
        return f"{self.source} -> {self.target}"

    @property
    def source_node(self) -> str:
        return self.source.partition(".")[0]

    @property
    def source_port(self) -> str:
        return self.source.partition(".")[2]

    @property
    def target_node(self) -> str:
        return self.target.partition(".")[0]

    @property
    def target_port(self) -> str:
        return self.target.partition(".")[2]


class DeclarativeTransform(_Frozen):
    """Registry-resolved named operation."""
    kind: Literal["declarative"] = "declarative"
    op_name: str = Field(..., alias="op", description="Registered operation name")
    args: Dict[str, Any] = Field(default_factory=dict)


class CodeTransform(_Frozen):
    """User-supplied function of (inputs, context, state)."""
    kind: Literal["code"] = "code"
    body: str = Field(..., description="Registered function name or Python source")


class PromptFallback(_Frozen):
    """Declared policy when a model response fails its output schema."""
    policy: Literal["raise", "switch_model", "static"] = "raise"
    model_ref: Optional[str] = Field(None, alias="model")
    response: Any = None

    @model_validator(mode="after")
    def _check_policy(self) -> "PromptFallback":
        if self.policy == "switch_model" and not self.model_ref:
            raise ValueError("switch_model fallback requires 'model'")
        return self


class PromptTransform(_Frozen):
    """Templated model invocation with schema-validated output."""
    kind: Literal["prompt"] = "prompt"
    template: str = Field(..., description="User prompt template ($name placeholders)")
    system: Optional[str] = Field(None, description="System message")
    model_ref: Optional[str] = Field(None, alias="model", description="Model capability name")
    output_schema: Optional[Dict[str, Any]] = None
    fallback: PromptFallback = Field(default_factory=PromptFallback)


Transform = Annotated[
    Union[DeclarativeTransform, CodeTransform, PromptTransform],
    Field(discriminator="kind"),
]


class RuntimeConfig(_Frozen):
    """
    Per-node execution policy.

    Unset values fall back to the runtime settings when the node runs.
    """
    timeout: Optional[float] = Field(None, description="Seconds per attempt")
    retries: Optional[int] = Field(None, ge=1, description="Total attempts")
    retry_backoff: Optional[float] = Field(None, description="Seconds between attempts")
    max_concurrency: Optional[int] = Field(None, ge=1)
    required_context_fields: Tuple[str, ...] = ()

    @field_validator("timeout", "retry_backoff", mode="before")
    @classmethod
    def _parse_duration(cls, v: Any) -> Any:
        if v is None:
            return None
        return parse_duration(v)


class StateScope(str, Enum):
    """Lifetime class of node state."""
    REQUEST = "request"
    SESSION = "session"


class StateConfig(_Frozen):
    """Where a node's state lives and how its key is derived."""
    scope: StateScope = StateScope.REQUEST
    key_template: str = "{node_id}"
    ttl: Optional[float] = Field(None, description="Seconds; session scope only")
    backend_ref: Optional[str] = Field(None, alias="backend")

    @field_validator("ttl", mode="before")
    @classmethod
    def _parse_ttl(cls, v: Any) -> Any:
        if v is None:
            return None
        return parse_duration(v)


class Node(_Frozen):
    """A typed transformation step."""
    id: str = Field(..., description="Node id, [a-z][a-z0-9_]*")
    input_ports: Tuple[Port, ...] = Field((), alias="inputs")
    output_ports: Tuple[Port, ...] = Field((), alias="outputs")
    error_port: Optional[Port] = None
    transform: Transform
    runtime_policy: RuntimeConfig = Field(default_factory=RuntimeConfig, alias="runtime")
    state_config: Optional[StateConfig] = Field(None, alias="state")
    description: Optional[str] = None

    def input_port(self, name: str) -> Optional[Port]:
        for port in self.input_ports:
            if port.name == name:
                return port
        return None

    def output_port(self, name: str) -> Optional[Port]:
        """Get an output port, including the error port, by name."""
        for port in self.output_ports:
            if port.name == name:
                return port
        if self.error_port is not None and self.error_port.name == name:
            return self.error_port
        return None

    def is_error_port(self, name: str) -> bool:
        return self.error_port is not None and self.error_port.name == name


class ContextRequirements(_Frozen):
    """Context fields the flow needs from every inbound request."""
    requires: Tuple[str, ...] = ()
    optional: Tuple[str, ...] = ()


class IRDocument(_Frozen):
    """
    Complete IR document as authored by an editor.

    Nodes may be given as a list of bodies with ids or as an id -> body map.
    """
    version: str = Field("1.0", description="IR format version")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    context: ContextRequirements = Field(default_factory=ContextRequirements)
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
    deployment: Optional[Dict[str, Any]] = Field(None, description="Passed through untouched")

    @field_validator("nodes", mode="before")
    @classmethod
    def _nodes_from_mapping(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return [
                {**body, "id": node_id} if isinstance(body, dict) else body
                for node_id, body in v.items()
            ]
        return v


class Flow(_Frozen):
    """
    Validated, immutable flow.

    Built by the validator from an IRDocument; never mutated afterwards.
    A changed document produces a new Flow.
    """
    version: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    context_requirements: ContextRequirements = Field(default_factory=ContextRequirements)
    nodes: Dict[str, Node] = Field(default_factory=dict)
    edges: Tuple[Edge, ...] = ()
    deployment: Optional[Dict[str, Any]] = None

    @property
    def name(self) -> str:
        return str(self.metadata.get("name") or "unnamed")

    def get_node(self, node_id: str) -> Optional[Node]:
        return self.nodes.get(node_id)

    def to_document(self) -> Dict[str, Any]:
        """Serialize back into IR document form."""
        return {
            "version": self.version,
            "metadata": dict(self.metadata),
            "context": self.context_requirements.model_dump(mode="json"),
            "nodes": [n.model_dump(mode="json", by_alias=True, exclude_none=True) for n in self.nodes.values()],
            "edges": [e.model_dump(mode="json", by_alias=True, exclude_none=True) for e in self.edges],
            "deployment": self.deployment,
        }


__all__ = [
    "INPUT_BOUNDARY",
    "OUTPUT_BOUNDARY",
    "Port",
    "Edge",
    "DeclarativeTransform",
    "CodeTransform",
    "PromptTransform",
    "PromptFallback",
    "Transform",
    "RuntimeConfig",
    "StateScope",
    "StateConfig",
    "Node",
    "ContextRequirements",
    "IRDocument",
    "Flow",
    "split_endpoint",
]
