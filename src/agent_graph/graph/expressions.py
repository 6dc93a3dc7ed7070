"""Safe evaluation of edge conditions and inline transforms."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from simpleeval import EvalWithCompoundTypes

from agent_graph.errors import AgentGraphError

SAFE_FUNCTIONS: Dict[str, Any] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "any": any,
    "all": all,
    "sorted": sorted,
}


class ExpressionError(AgentGraphError):
    """Raised when an edge expression cannot be evaluated."""

    def __init__(self, expression: str, error: Exception):
        super().__init__(f"Expression {expression!r} failed: {type(error).__name__}: {error}")
        self.expression = expression


def expression_names(
    value: Any,
    port_name: Optional[str] = None,
    context: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Build the names visible to an edge expression.

    Keys of a mapping value are exposed directly, then the source port
    name and 'value' are bound to the value itself, so both
    "score > 0.7" and "value['score'] > 0.7" work.
    """
    names: Dict[str, Any] = {
        "true": True,
        "false": False,
        "null": None,
        "none": None,
    }
    if isinstance(value, Mapping):
        names.update({k: v for k, v in value.items() if isinstance(k, str) and k.isidentifier()})
    if port_name:
        names[port_name] = value
    names["value"] = value
    names["context"] = dict(context or {})
    return names


def evaluate(expression: str, names: Mapping[str, Any]) -> Any:
    """
    Evaluate an expression with simpleeval.

    Raises:
        ExpressionError: If parsing or evaluation fails
    """
    evaluator = EvalWithCompoundTypes(names=dict(names), functions=SAFE_FUNCTIONS)
    try:
        return evaluator.eval(expression)
    except Exception as e:
        raise ExpressionError(expression, e) from e


def evaluate_condition(
    expression: str,
    value: Any,
    port_name: Optional[str] = None,
    context: Optional[Mapping[str, Any]] = None,
) -> bool:
    """Evaluate an edge condition against the upstream value."""
    return bool(evaluate(expression, expression_names(value, port_name, context)))


def apply_transform(
    expression: str,
    value: Any,
    port_name: Optional[str] = None,
    context: Optional[Mapping[str, Any]] = None,
) -> Any:
    """Apply an inline edge transform to a value in transit."""
    return evaluate(expression, expression_names(value, port_name, context))


__all__ = [
    "ExpressionError",
    "evaluate",
    "evaluate_condition",
    "apply_transform",
    "expression_names",
]
