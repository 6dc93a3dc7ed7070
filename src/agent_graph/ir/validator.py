"""
IR Validator - static checks over an IR document.

validate() is a pure function of the document: it parses the structure,
then checks identifiers, edge endpoints, port type compatibility, cycles,
context requirements and state configuration. Problems are accumulated
and returned together so an editor can report all of them at once.
"""

from __future__ import annotations

import ast
import re
import string
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

import jsonschema
from pydantic import ValidationError as PydanticValidationError

from agent_graph.errors import ValidationError
from agent_graph.observability import get_logger

from .models import (
    BOUNDARIES,
    INPUT_BOUNDARY,
    OUTPUT_BOUNDARY,
    ContextRequirements,
    Edge,
    Flow,
    IRDocument,
    Node,
    StateScope,
    split_endpoint,
)
from .types import is_compatible

logger = get_logger(__name__)

NODE_ID_PATTERN = re.compile(r"^[a-z][a-z0-9_]*$")

# Context fields that identify a session for session-scoped state keys
SESSION_KEY_FIELDS = frozenset({"session_id"})


def template_fields(template: str) -> Set[str]:
    """
    Return the top-level variable names referenced by a '{name}' template.

    Raises:
        ValueError: If the template is malformed
    """
    names: Set[str] = set()
    for _, field_name, _, _ in string.Formatter().parse(template):
        if field_name is None:
            continue
        if not field_name:
            raise ValueError("positional '{}' fields are not allowed")
        names.add(re.split(r"[.\[]", field_name, maxsplit=1)[0])
    return names


def _structural_errors(exc: PydanticValidationError) -> List[ValidationError]:
    errors = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        errors.append(ValidationError(
            code="schema",
            message=f"{loc or '<document>'}: {err.get('msg')}",
        ))
    return errors


def _check_nodes(document: IRDocument) -> List[ValidationError]:
    errors: List[ValidationError] = []
    seen: Set[str] = set()

    for node in document.nodes:
        if node.id in BOUNDARIES or not NODE_ID_PATTERN.match(node.id):
            errors.append(ValidationError(
                code="invalid_node_id",
                message=f"Node id {node.id!r} must match [a-z][a-z0-9_]*",
                node_ids=(node.id,),
            ))
        if node.id in seen:
            errors.append(ValidationError(
                code="duplicate_node_id",
                message=f"Node id {node.id!r} is declared more than once",
                node_ids=(node.id,),
            ))
        seen.add(node.id)

        inputs = [p.name for p in node.input_ports]
        outputs = [p.name for p in node.output_ports]
        if node.error_port is not None:
            outputs.append(node.error_port.name)
        for direction, names in (("input", inputs), ("output", outputs)):
            dupes = sorted({n for n in names if names.count(n) > 1})
            for name in dupes:
                errors.append(ValidationError(
                    code="duplicate_port",
                    message=f"Duplicate {direction} port {name!r}",
                    node_ids=(node.id,),
                ))

        for port in (*node.input_ports, *node.output_ports):
            if port.validation_schema is None:
                continue
            try:
                jsonschema.Draft202012Validator.check_schema(port.validation_schema)
            except jsonschema.SchemaError as e:
                errors.append(ValidationError(
                    code="invalid_port_schema",
                    message=f"Port {port.name!r} schema is invalid: {e.message}",
                    node_ids=(node.id,),
                ))

        transform = node.transform
        if transform.kind == "prompt" and transform.output_schema is not None:
            try:
                jsonschema.Draft202012Validator.check_schema(transform.output_schema)
            except jsonschema.SchemaError as e:
                errors.append(ValidationError(
                    code="invalid_output_schema",
                    message=f"Prompt output_schema is invalid: {e.message}",
                    node_ids=(node.id,),
                ))

    return errors


def _check_expression(edge: Edge, field: str, source: Optional[str]) -> Optional[ValidationError]:
    if source is None:
        return None
    try:
        ast.parse(source, mode="eval")
    except SyntaxError as e:
        return ValidationError(
            code="invalid_expression",
            message=f"Edge {field} {source!r} is not a valid expression: {e.msg}",
            edge=edge.label,
        )
    return None


def _check_edges(edges: Iterable[Edge], nodes: Mapping[str, Node]) -> List[ValidationError]:
    errors: List[ValidationError] = []

    for edge in edges:
        for field, text in (("condition", edge.condition), ("transform", edge.inline_transform)):
            err = _check_expression(edge, field, text)
            if err is not None:
                errors.append(err)

        source = split_endpoint(edge.source)
        target = split_endpoint(edge.target)
        if source is None or target is None:
            bad = edge.source if source is None else edge.target
            errors.append(ValidationError(
                code="invalid_endpoint",
                message=f"Endpoint {bad!r} must have the form 'node.port'",
                edge=edge.label,
            ))
            continue

        src_node_id, src_port_name = source
        dst_node_id, dst_port_name = target

        if src_node_id == OUTPUT_BOUNDARY:
            errors.append(ValidationError(
                code="invalid_endpoint",
                message="'_output' cannot be an edge source",
                edge=edge.label,
            ))
            continue
        if dst_node_id == INPUT_BOUNDARY:
            errors.append(ValidationError(
                code="invalid_endpoint",
                message="'_input' cannot be an edge target",
                edge=edge.label,
            ))
            continue

        src_port = None
        if src_node_id != INPUT_BOUNDARY:
            src_node = nodes.get(src_node_id)
            if src_node is None:
                errors.append(ValidationError(
                    code="unknown_node",
                    message=f"Edge source node {src_node_id!r} does not exist",
                    edge=edge.label,
                ))
            else:
                src_port = src_node.output_port(src_port_name)
                if src_port is None:
                    hint = " (it is an input port)" if src_node.input_port(src_port_name) else ""
                    errors.append(ValidationError(
                        code="unknown_port",
                        message=f"Node {src_node_id!r} has no output port {src_port_name!r}{hint}",
                        node_ids=(src_node_id,),
                        edge=edge.label,
                    ))

        dst_port = None
        if dst_node_id != OUTPUT_BOUNDARY:
            dst_node = nodes.get(dst_node_id)
            if dst_node is None:
                errors.append(ValidationError(
                    code="unknown_node",
                    message=f"Edge target node {dst_node_id!r} does not exist",
                    edge=edge.label,
                ))
            else:
                dst_port = dst_node.input_port(dst_port_name)
                if dst_port is None:
                    hint = " (it is an output port)" if dst_node.output_port(dst_port_name) else ""
                    errors.append(ValidationError(
                        code="unknown_port",
                        message=f"Node {dst_node_id!r} has no input port {dst_port_name!r}{hint}",
                        node_ids=(dst_node_id,),
                        edge=edge.label,
                    ))

        # Boundary ports are untyped
        if src_port is not None and dst_port is not None:
            if not is_compatible(src_port.type, dst_port.type):
                errors.append(ValidationError(
                    code="incompatible_types",
                    message=(
                        f"Cannot connect {src_port.type.value} output to "
                        f"{dst_port.type.value} input"
                    ),
                    node_ids=(src_node_id, dst_node_id),
                    edge=edge.label,
                ))

    return errors


def _check_wiring(document: IRDocument, nodes: Mapping[str, Node]) -> List[ValidationError]:
    wired: Dict[str, Set[str]] = defaultdict(set)
    for edge in document.edges:
        target = split_endpoint(edge.target)
        if target is not None:
            wired[target[0]].add(target[1])

    errors: List[ValidationError] = []
    for node in nodes.values():
        for port in node.input_ports:
            if not port.optional and port.name not in wired[node.id]:
                errors.append(ValidationError(
                    code="unwired_input",
                    message=f"Required input port {port.name!r} has no incoming edge",
                    node_ids=(node.id,),
                ))
    return errors


def find_cycles(node_ids: Iterable[str], edges: Iterable[Edge]) -> List[List[str]]:
    """
    Find cycles in the node dependency graph.

    Returns one list of node ids per strongly connected component that
    contains a cycle (self-loops included), in a deterministic order.
    """
    ids = sorted(set(node_ids))
    adj: Dict[str, Set[str]] = {n: set() for n in ids}
    for edge in edges:
        if edge.source_node in adj and edge.target_node in adj:
            adj[edge.source_node].add(edge.target_node)

    # Tarjan's algorithm, iterative
    index: Dict[str, int] = {}
    low: Dict[str, int] = {}
    on_stack: Set[str] = set()
    stack: List[str] = []
    components: List[List[str]] = []
    counter = 0

    for root in ids:
        if root in index:
            continue
        work = [(root, iter(sorted(adj[root])))]
        index[root] = low[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        while work:
            node, children = work[-1]
            advanced = False
            for child in children:
                if child not in index:
                    index[child] = low[child] = counter
                    counter += 1
                    stack.append(child)
                    on_stack.add(child)
                    work.append((child, iter(sorted(adj[child]))))
                    advanced = True
                    break
                if child in on_stack:
                    low[node] = min(low[node], index[child])
            if advanced:
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node])
            if low[node] == index[node]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                if len(component) > 1 or node in adj[node]:
                    components.append(sorted(component))

    components.sort()
    return components


def _check_cycles(node_ids: Iterable[str], edges: Iterable[Edge]) -> List[ValidationError]:
    return [
        ValidationError(
            code="cycle",
            message=f"Edges form a cycle through {' -> '.join(component)}",
            node_ids=tuple(component),
        )
        for component in find_cycles(node_ids, edges)
    ]


def _check_context(document: IRDocument, nodes: Mapping[str, Node]) -> List[ValidationError]:
    errors: List[ValidationError] = []
    required = set(document.context.requires)

    for node in nodes.values():
        missing = sorted(set(node.runtime_policy.required_context_fields) - required)
        if missing:
            errors.append(ValidationError(
                code="context_requirement",
                message=(
                    f"Node requires context fields {missing} that the flow "
                    "does not list under context.requires"
                ),
                node_ids=(node.id,),
            ))

        config = node.state_config
        if config is None:
            continue
        try:
            fields = template_fields(config.key_template)
        except ValueError as e:
            errors.append(ValidationError(
                code="invalid_key_template",
                message=f"State key template {config.key_template!r}: {e}",
                node_ids=(node.id,),
            ))
            continue
        if config.scope == StateScope.SESSION:
            if not fields & SESSION_KEY_FIELDS:
                errors.append(ValidationError(
                    code="session_key",
                    message=(
                        f"Session-scoped key template {config.key_template!r} must "
                        "reference a session-identifying context field "
                        f"({', '.join(sorted(SESSION_KEY_FIELDS))})"
                    ),
                    node_ids=(node.id,),
                ))
        elif config.ttl is not None:
            errors.append(ValidationError(
                code="state_ttl",
                message="ttl is only allowed for session-scoped state",
                node_ids=(node.id,),
            ))

    return errors


def _salvage(document: Mapping[str, Any]) -> Tuple[IRDocument, Set[str]]:
    """
    Parse the well-formed parts of a document that failed structural parsing.

    Returns an unvalidated IRDocument holding the nodes, edges and context
    that parse on their own, plus the ids of nodes whose bodies do not.
    """
    raw_nodes = document.get("nodes") or []
    if isinstance(raw_nodes, Mapping):
        raw_nodes = [
            {**body, "id": node_id} if isinstance(body, Mapping) else body
            for node_id, body in raw_nodes.items()
        ]

    nodes: List[Node] = []
    unparsed: Set[str] = set()
    for body in raw_nodes if isinstance(raw_nodes, list) else []:
        try:
            nodes.append(Node.model_validate(body))
        except PydanticValidationError:
            node_id = body.get("id") if isinstance(body, Mapping) else None
            if isinstance(node_id, str):
                unparsed.add(node_id)

    edges: List[Edge] = []
    raw_edges = document.get("edges") or []
    for body in raw_edges if isinstance(raw_edges, list) else []:
        try:
            edges.append(Edge.model_validate(body))
        except PydanticValidationError:
            continue

    try:
        context = ContextRequirements.model_validate(document.get("context") or {})
    except PydanticValidationError:
        context = ContextRequirements()

    partial = IRDocument.model_construct(nodes=nodes, edges=edges, context=context)
    return partial, unparsed


def validate(document: Union[Mapping[str, Any], IRDocument]) -> Union[Flow, List[ValidationError]]:
    """
    Validate an IR document.

    Args:
        document: Parsed IR document (dict) or IRDocument model

    Returns:
        The immutable Flow if the document is valid, else every
        ValidationError found.
    """
    errors: List[ValidationError] = []
    unparsed: Set[str] = set()
    if isinstance(document, IRDocument):
        parsed = document
    else:
        try:
            parsed = IRDocument.model_validate(document)
        except PydanticValidationError as e:
            errors = _structural_errors(e)
            logger.debug("IR document failed structural parsing", extra={"errors": len(errors)})
            if not isinstance(document, Mapping):
                return errors
            parsed, unparsed = _salvage(document)

    errors.extend(_check_nodes(parsed))

    nodes: Dict[str, Node] = {}
    for node in parsed.nodes:
        nodes.setdefault(node.id, node)

    # Endpoints on nodes that failed parsing are already reported as schema errors
    checkable = [
        edge for edge in parsed.edges
        if edge.source_node not in unparsed and edge.target_node not in unparsed
    ]
    errors.extend(_check_edges(checkable, nodes))
    errors.extend(_check_wiring(parsed, nodes))
    errors.extend(_check_cycles([*nodes, *unparsed], parsed.edges))
    errors.extend(_check_context(parsed, nodes))

    blocking = [e for e in errors if e.severity == "error"]
    if blocking:
        logger.debug("IR document failed validation", extra={"errors": len(blocking)})
        return errors

    return Flow(
        version=parsed.version,
        metadata=dict(parsed.metadata),
        context_requirements=parsed.context,
        nodes=nodes,
        edges=tuple(parsed.edges),
        deployment=parsed.deployment,
    )


def is_valid(document: Union[Mapping[str, Any], IRDocument]) -> bool:
    """Return True if the document validates."""
    return isinstance(validate(document), Flow)


__all__ = [
    "validate",
    "is_valid",
    "find_cycles",
    "template_fields",
    "NODE_ID_PATTERN",
    "SESSION_KEY_FIELDS",
]
