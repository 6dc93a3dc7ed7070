"""
IR - document models, port types and static validation.

This package provides:
- IRDocument / Flow: editable document and its validated, immutable form
- PortType and the edge compatibility table
- validate(): accumulate every problem in one pass
"""

from .models import (
    INPUT_BOUNDARY,
    OUTPUT_BOUNDARY,
    CodeTransform,
    ContextRequirements,
    DeclarativeTransform,
    Edge,
    Flow,
    IRDocument,
    Node,
    Port,
    PromptFallback,
    PromptTransform,
    RuntimeConfig,
    StateConfig,
    StateScope,
)
from .types import PortType, coerce, is_compatible, matches_type, parse_duration
from .validator import find_cycles, is_valid, template_fields, validate
from .loader import load_document, load_flow

__all__ = [
    # Models
    "INPUT_BOUNDARY",
    "OUTPUT_BOUNDARY",
    "CodeTransform",
    "ContextRequirements",
    "DeclarativeTransform",
    "Edge",
    "Flow",
    "IRDocument",
    "Node",
    "Port",
    "PromptFallback",
    "PromptTransform",
    "RuntimeConfig",
    "StateConfig",
    "StateScope",
    # Types
    "PortType",
    "coerce",
    "is_compatible",
    "matches_type",
    "parse_duration",
    # Validation
    "find_cycles",
    "is_valid",
    "template_fields",
    "validate",
    "load_document",
    "load_flow",
]
