"""
Flow definition model and loading.

Usage:
    from guideflow.spec import load_flow_file, flow_from_dict

    flow = load_flow_file("flows/door_checkpoint.yaml")
"""

from .loader import (
    SchemaIssue,
    iter_flow_files,
    load_flow_file,
    parse_flow,
    read_flow_document,
    validate_flow_document,
)
from .types import (
    Edge,
    EdgeCondition,
    Flow,
    FlowPolicy,
    Node,
    NodeDisplay,
    NodeMeta,
    NodeType,
    ShowOn,
    flow_from_dict,
    flow_to_dict,
)

__all__ = [
    "Edge",
    "EdgeCondition",
    "Flow",
    "FlowPolicy",
    "Node",
    "NodeDisplay",
    "NodeMeta",
    "NodeType",
    "SchemaIssue",
    "ShowOn",
    "flow_from_dict",
    "flow_to_dict",
    "iter_flow_files",
    "load_flow_file",
    "parse_flow",
    "read_flow_document",
    "validate_flow_document",
]
