"""
loader.py - Load and schema-check flow definition documents.

Flow documents are YAML (JSON is accepted as the YAML subset it is). Each
document is checked against schemas/flow.schema.json before it is turned into
a Flow, so malformed input fails with a path-qualified message instead of a
KeyError deep inside the runner.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

from guideflow.errors import FlowConfigurationError, FlowErrorCode

from .types import Flow, flow_from_dict

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schemas" / "flow.schema.json"
FLOW_FILE_SUFFIXES = (".yaml", ".yml", ".json")


@dataclass
class SchemaIssue:
    """A single schema violation in a flow document."""

    path: str
    message: str
    schema_path: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "message": self.message, "schema_path": self.schema_path}


@lru_cache(maxsize=1)
def load_flow_schema() -> Dict[str, Any]:
    with open(SCHEMA_PATH, "r", encoding="utf-8") as f:
        return json.load(f)


def validate_flow_document(data: Any) -> List[SchemaIssue]:
    """Validate a parsed document against the flow schema.

    Returns:
        Schema issues in document order; empty when the document is valid.
    """
    from jsonschema import Draft7Validator

    validator = Draft7Validator(load_flow_schema())
    issues = []
    for error in sorted(validator.iter_errors(data), key=lambda e: list(map(str, e.absolute_path))):
        path = ".".join(str(p) for p in error.absolute_path) or "root"
        schema_path = ".".join(str(p) for p in error.schema_path)
        issues.append(SchemaIssue(path=path, message=error.message, schema_path=schema_path))
    return issues


def read_flow_document(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a flow document without interpreting it.

    Raises:
        FlowConfigurationError: If the file is missing, empty, or not YAML.
    """
    path = Path(path)
    if not path.exists():
        raise FlowConfigurationError(
            f"Flow file not found: {path}",
            FlowErrorCode.INVALID_CONFIGURATION,
            context={"path": str(path)},
        )

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise FlowConfigurationError(
            f"Invalid YAML in flow file {path}: {e}",
            context={"path": str(path)},
            cause=e,
        )

    if not data:
        raise FlowConfigurationError(f"Empty flow file: {path}", context={"path": str(path)})
    if not isinstance(data, dict):
        raise FlowConfigurationError(
            f"Flow file {path} must contain a mapping, got {type(data).__name__}",
            context={"path": str(path)},
        )
    return data


def parse_flow(data: Dict[str, Any], validate_schema: bool = True, source: str = "<memory>") -> Flow:
    """Turn a parsed document into a Flow.

    Raises:
        FlowConfigurationError: On schema violations or unparseable values.
    """
    if validate_schema:
        issues = validate_flow_document(data)
        if issues:
            details = "; ".join(f"{i.path}: {i.message}" for i in issues)
            raise FlowConfigurationError(
                f"Flow document {source} violates schema: {details}",
                FlowErrorCode.FLOW_VALIDATION_FAILED,
                context={"source": source, "issues": [i.to_dict() for i in issues]},
            )
    try:
        return flow_from_dict(data)
    except (TypeError, ValueError) as e:
        raise FlowConfigurationError(
            f"Cannot parse flow document {source}: {e}",
            context={"source": source},
            cause=e,
        )


def load_flow_file(path: Union[str, Path], validate_schema: bool = True) -> Flow:
    """Load a single flow definition file."""
    data = read_flow_document(path)
    flow = parse_flow(data, validate_schema=validate_schema, source=str(path))
    logger.debug("Loaded flow %s (%d nodes) from %s", flow.id, len(flow.nodes), path)
    return flow


def iter_flow_files(directory: Union[str, Path]) -> List[Path]:
    """Flow files in a directory, sorted by name."""
    directory = Path(directory)
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix in FLOW_FILE_SUFFIXES)


__all__ = [
    "FLOW_FILE_SUFFIXES",
    "SCHEMA_PATH",
    "SchemaIssue",
    "iter_flow_files",
    "load_flow_file",
    "load_flow_schema",
    "parse_flow",
    "read_flow_document",
    "validate_flow_document",
]
