"""
Port types, the edge compatibility table and value coercion.

The compatibility table decides which output port types may feed which
input port types. Casting pairs (number->string, boolean->string,
document->string, table->object, ...) are applied to values when they
cross an edge at run time.
"""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any


class PortType(str, Enum):
    """Value types a port can carry."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"
    DOCUMENT = "document"
    TABLE = "table"
    EMBEDDING = "embedding"


# source type -> target types it may feed
COMPATIBILITY: dict[PortType, frozenset[PortType]] = {
    PortType.STRING: frozenset({PortType.STRING, PortType.DOCUMENT}),
    PortType.NUMBER: frozenset({PortType.NUMBER, PortType.STRING}),
    PortType.BOOLEAN: frozenset({PortType.BOOLEAN, PortType.STRING}),
    PortType.OBJECT: frozenset({PortType.OBJECT}),
    PortType.ARRAY: frozenset({PortType.ARRAY}),
    PortType.DOCUMENT: frozenset({PortType.STRING, PortType.DOCUMENT}),
    PortType.TABLE: frozenset({PortType.OBJECT, PortType.ARRAY}),
    PortType.EMBEDDING: frozenset({PortType.ARRAY}),
}


def is_compatible(source: PortType, target: PortType) -> bool:
    """Return True if an edge may connect a source port to a target port."""
    return target in COMPATIBILITY.get(source, frozenset())


def _document_text(value: Any) -> str:
    if isinstance(value, dict):
        for key in ("content", "text"):
            if isinstance(value.get(key), str):
                return value[key]
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def coerce(value: Any, source: PortType | None, target: PortType | None) -> Any:
    """
    Convert a value crossing an edge from one port type to another.

    Boundary ports are untyped (None); values pass through unchanged.
    """
    if source is None or target is None or source == target:
        return value
    if value is None:
        return None

    if target == PortType.STRING:
        if source == PortType.BOOLEAN:
            return "true" if value else "false"
        if source == PortType.NUMBER:
            return str(value)
        if source == PortType.DOCUMENT:
            return _document_text(value)
    if source == PortType.STRING and target == PortType.DOCUMENT:
        return {"content": value, "metadata": {}}
    if source == PortType.TABLE:
        rows = list(value)
        if target == PortType.OBJECT:
            # single-row semantics
            return dict(rows[0]) if rows else {}
        if target == PortType.ARRAY:
            return rows
    if source == PortType.EMBEDDING and target == PortType.ARRAY:
        return list(value)
    return value


def matches_type(value: Any, port_type: PortType) -> bool:
    """Check a runtime value against a declared port type."""
    if port_type == PortType.STRING:
        return isinstance(value, str)
    if port_type == PortType.NUMBER:
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if port_type == PortType.BOOLEAN:
        return isinstance(value, bool)
    if port_type == PortType.OBJECT:
        return isinstance(value, dict)
    if port_type == PortType.ARRAY:
        return isinstance(value, (list, tuple))
    if port_type == PortType.DOCUMENT:
        return isinstance(value, str) or (
            isinstance(value, dict) and isinstance(value.get("content", value.get("text")), str)
        )
    if port_type == PortType.TABLE:
        return isinstance(value, (list, tuple)) and all(isinstance(row, dict) for row in value)
    if port_type == PortType.EMBEDDING:
        return isinstance(value, (list, tuple)) and all(
            isinstance(x, (int, float)) and not isinstance(x, bool) for x in value
        )
    return False


_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


def parse_duration(value: Any) -> float:
    """
    Parse a duration into seconds.

    Accepts numbers (seconds) or strings such as "100ms", "2s", "5m", "1h".

    Raises:
        ValueError: If the value is not a valid non-negative duration
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must not be negative: {value!r}")
        return float(value)
    if isinstance(value, str):
        match = _DURATION_RE.match(value)
        if match:
            return float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
    raise ValueError(f"Invalid duration: {value!r}")


__all__ = [
    "PortType",
    "COMPATIBILITY",
    "is_compatible",
    "coerce",
    "matches_type",
    "parse_duration",
]
