"""Load IR documents from JSON or YAML files."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

import yaml

from agent_graph.errors import FlowValidationError, ValidationError

from .models import Flow
from .validator import validate


def load_document(path: Path | str) -> Dict[str, Any]:
    """
    Read an IR document from disk.

    Files ending in .json are parsed as JSON; anything else as YAML.

    Raises:
        FlowValidationError: If the file cannot be parsed into a mapping
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise FlowValidationError([
            ValidationError(code="parse", message=f"{path}: {e.strerror or e}"),
        ]) from e

    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise FlowValidationError([
            ValidationError(code="parse", message=f"{path}: {e}"),
        ]) from e

    if not isinstance(data, dict):
        raise FlowValidationError([
            ValidationError(code="parse", message=f"{path}: document must be a mapping"),
        ])
    return data


def load_flow(path: Path | str) -> Flow:
    """
    Read and validate an IR document.

    Raises:
        FlowValidationError: If the document is unreadable or invalid
    """
    result = validate(load_document(path))
    if not isinstance(result, Flow):
        raise FlowValidationError(result)
    return result


__all__ = ["load_document", "load_flow"]
