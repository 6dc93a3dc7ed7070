"""
Graph Builder - turns a validated Flow into an execution plan.

The plan holds the dependency structure of the flow and its topological
layers. Layer 0 holds nodes that depend on nothing but '_input'; layer k
holds nodes whose every dependency lies in an earlier layer. Nodes inside
a layer are independent and may run in any order or concurrently.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Tuple

from agent_graph.errors import FlowValidationError, ValidationError
from agent_graph.ir.models import INPUT_BOUNDARY, OUTPUT_BOUNDARY, Edge, Flow, Node
from agent_graph.ir.validator import find_cycles
from agent_graph.observability import get_logger

logger = get_logger(__name__)


class ExecutionPlan:
    """
    Compiled flow ready for execution.

    Contains:
    - Nodes with their incoming and outgoing edges
    - Topological layers
    - Methods for traversing the graph

    The plan is read-only; runs keep their own bookkeeping.
    """

    def __init__(
        self,
        flow: Flow,
        layers: Tuple[Tuple[str, ...], ...],
        incoming: Mapping[str, Tuple[Edge, ...]],
        outgoing: Mapping[str, Tuple[Edge, ...]],
    ):
        self._flow = flow
        self._layers = layers
        self._layer_of = {
            node_id: depth for depth, layer in enumerate(layers) for node_id in layer
        }
        self._incoming = dict(incoming)
        self._outgoing = dict(outgoing)
        self._upstream = {
            node_id: tuple(sorted({
                e.source_node for e in edges if e.source_node != INPUT_BOUNDARY
            }))
            for node_id, edges in self._incoming.items()
        }
        self._downstream = {
            node_id: tuple(sorted({
                e.target_node for e in edges if e.target_node != OUTPUT_BOUNDARY
            }))
            for node_id, edges in self._outgoing.items()
        }

    @property
    def flow(self) -> Flow:
        return self._flow

    @property
    def name(self) -> str:
        return self._flow.name

    @property
    def layers(self) -> Tuple[Tuple[str, ...], ...]:
        return self._layers

    @property
    def topological_order(self) -> List[str]:
        """Nodes in execution order (layer by layer)."""
        return [node_id for layer in self._layers for node_id in layer]

    @property
    def node_ids(self) -> List[str]:
        return list(self._flow.nodes.keys())

    @property
    def input_edges(self) -> Tuple[Edge, ...]:
        """Edges fed by the '_input' boundary."""
        return tuple(e for e in self._flow.edges if e.source_node == INPUT_BOUNDARY)

    @property
    def output_edges(self) -> Tuple[Edge, ...]:
        """Edges delivering to the '_output' boundary."""
        return tuple(e for e in self._flow.edges if e.target_node == OUTPUT_BOUNDARY)

    def get_node(self, node_id: str) -> Optional[Node]:
        return self._flow.nodes.get(node_id)

    def layer_of(self, node_id: str) -> int:
        return self._layer_of[node_id]

    def incoming(self, node_id: str) -> Tuple[Edge, ...]:
        """Edges targeting a node, in document order."""
        return self._incoming.get(node_id, ())

    def outgoing(self, node_id: str) -> Tuple[Edge, ...]:
        """Edges leaving a node, in document order."""
        return self._outgoing.get(node_id, ())

    def upstream(self, node_id: str) -> Tuple[str, ...]:
        """Nodes this node depends on."""
        return self._upstream.get(node_id, ())

    def downstream(self, node_id: str) -> Tuple[str, ...]:
        """Nodes that depend on this node."""
        return self._downstream.get(node_id, ())

    def error_port_wired(self, node_id: str) -> bool:
        """True if the node declares an error port and some edge reads it."""
        node = self.get_node(node_id)
        if node is None or node.error_port is None:
            return False
        return any(e.source_port == node.error_port.name for e in self.outgoing(node_id))

    def describe(self) -> Dict[str, Any]:
        """Summary of the plan for display."""
        return {
            "flow": self.name,
            "version": self._flow.version,
            "total_nodes": len(self._flow.nodes),
            "total_edges": len(self._flow.edges),
            "layers": [list(layer) for layer in self._layers],
            "nodes": {
                node_id: {
                    "layer": self._layer_of[node_id],
                    "transform": node.transform.kind,
                    "upstream": list(self.upstream(node_id)),
                    "downstream": list(self.downstream(node_id)),
                    "error_port": node.error_port.name if node.error_port else None,
                }
                for node_id, node in self._flow.nodes.items()
            },
        }


def compute_layers(node_ids: List[str], edges: Tuple[Edge, ...]) -> Tuple[Tuple[str, ...], ...]:
    """
    Compute topological layers with Kahn's algorithm.

    Each round removes every node whose in-degree has dropped to zero;
    layers are sorted for deterministic output.

    Raises:
        FlowValidationError: If the edges contain a cycle
    """
    deps: Dict[str, set] = {n: set() for n in node_ids}
    for edge in edges:
        if edge.source_node in deps and edge.target_node in deps:
            deps[edge.target_node].add(edge.source_node)

    in_degree = {n: len(d) for n, d in deps.items()}
    dependents: Dict[str, List[str]] = {n: [] for n in node_ids}
    for node_id, sources in deps.items():
        for source in sources:
            dependents[source].append(node_id)

    layers: List[Tuple[str, ...]] = []
    current = sorted(n for n, degree in in_degree.items() if degree == 0)
    placed = 0
    while current:
        layers.append(tuple(current))
        placed += len(current)
        following = []
        for node_id in current:
            for dependent in dependents[node_id]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    following.append(dependent)
        current = sorted(following)

    if placed != len(node_ids):
        raise FlowValidationError([
            ValidationError(
                code="cycle",
                message=f"Edges form a cycle through {' -> '.join(component)}",
                node_ids=tuple(component),
            )
            for component in find_cycles(node_ids, edges)
        ])
    return tuple(layers)


def build(flow: Flow) -> ExecutionPlan:
    """
    Build the execution plan for a validated flow.

    Args:
        flow: Flow returned by validate()

    Returns:
        ExecutionPlan with adjacency and layers
    """
    incoming: Dict[str, List[Edge]] = {n: [] for n in flow.nodes}
    outgoing: Dict[str, List[Edge]] = {n: [] for n in flow.nodes}
    for edge in flow.edges:
        if edge.target_node in incoming:
            incoming[edge.target_node].append(edge)
        if edge.source_node in outgoing:
            outgoing[edge.source_node].append(edge)

    layers = compute_layers(list(flow.nodes.keys()), flow.edges)
    plan = ExecutionPlan(
        flow=flow,
        layers=layers,
        incoming={k: tuple(v) for k, v in incoming.items()},
        outgoing={k: tuple(v) for k, v in outgoing.items()},
    )
    logger.debug(
        f"Built plan for {flow.name}: {len(flow.nodes)} nodes in {len(layers)} layers"
    )
    return plan


__all__ = ["ExecutionPlan", "build", "compute_layers"]
