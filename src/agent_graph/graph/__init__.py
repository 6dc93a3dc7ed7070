"""
Graph - execution plans and edge expressions.

This package provides:
- ExecutionPlan: adjacency and topological layers of a Flow
- build(): compile a validated Flow into a plan
- evaluate_condition() / apply_transform(): run-time edge expressions
"""

from .builder import ExecutionPlan, build, compute_layers
from .expressions import ExpressionError, apply_transform, evaluate_condition

__all__ = [
    "ExecutionPlan",
    "build",
    "compute_layers",
    "ExpressionError",
    "apply_transform",
    "evaluate_condition",
]
