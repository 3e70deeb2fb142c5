# guideflow/validator/flow_validator.py
"""
Structural validation of flow definitions.

Checks run in order: flow structure, nodes, edges, policies, connectivity,
cycles, display rules, then every embedded subflow recursively. Structure
failures that make the remaining checks meaningless (no nodes) stop
validation of that flow early.

Usage:
    from guideflow.validator.flow_validator import FlowValidator

    result = FlowValidator().validate(flow)
    if not result.can_execute:
        for issue in result.sorted_errors():
            print(issue.format())
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Dict, List, Set

from guideflow.errors import FlowValidationError
from guideflow.runtime.conditions import check_condition_syntax
from guideflow.spec.types import Flow

from .errors import Severity, ValidationResult

logger = logging.getLogger(__name__)

VALID_POLICY_SCOPES = frozenset({"flow", "node", "global"})


def _edge_location(edge) -> str:
    return edge.id or f"{edge.source or '?'}->{edge.target or '?'}"


class FlowValidator:
    """Validates Flow objects.

    Args:
        allow_cycles: Report cycles as warnings instead of errors, for flows
            that loop on purpose (retry screens).
    """

    def __init__(self, allow_cycles: bool = False):
        self.allow_cycles = allow_cycles

    def validate(self, flow: Flow) -> ValidationResult:
        flow_id = flow.id or "<unnamed>"
        result = ValidationResult(flow_id)
        self._validate_flow(flow, flow_id, result)
        logger.debug(
            "Validated flow %s: %d error(s), %d warning(s)", flow_id, len(result.errors), len(result.warnings)
        )
        return result

    def ensure_valid(self, flow: Flow) -> ValidationResult:
        """Validate and raise when any error was found.

        Raises:
            FlowValidationError: Carrying the full ValidationResult.
        """
        result = self.validate(flow)
        if result.has_errors():
            raise FlowValidationError(flow.id or "<unnamed>", result)
        return result

    # -------------------------------------------------------------------------

    def _validate_flow(self, flow: Flow, flow_id: str, result: ValidationResult) -> None:
        if not self._check_structure(flow, flow_id, result):
            return
        self._check_nodes(flow, flow_id, result)
        self._check_edges(flow, flow_id, result)
        self._check_policies(flow, flow_id, result)
        self._check_connectivity(flow, flow_id, result)
        self._check_cycles(flow, flow_id, result)
        self._check_display(flow, flow_id, result)
        self._check_subflow_references(flow, flow_id, result)

        for key, subflow in flow.subflows.items():
            self._validate_flow(subflow, f"{flow_id}/{subflow.id or key}", result)

    def _check_structure(self, flow: Flow, flow_id: str, result: ValidationResult) -> bool:
        if not flow.id:
            result.add_error(
                "FLOW_MISSING_ID", "flow", "has no id", "Add an 'id' to the flow document",
                Severity.CRITICAL, flow_id,
            )
        if not flow.version:
            result.add_warning(
                "FLOW_MISSING_VERSION", "flow", "has no version", "Add a 'version' to track definition changes",
                Severity.LOW, flow_id,
            )
        if not flow.nodes:
            result.add_error(
                "FLOW_NO_NODES", "flow", "defines no nodes", "Add at least one node under 'nodes'",
                Severity.CRITICAL, flow_id,
            )
            return False
        if not flow.start:
            result.add_error(
                "FLOW_NO_START_NODE", "flow", "has no start node", "Set 'start' to a node id",
                Severity.CRITICAL, flow_id,
            )
        elif flow.start not in flow.nodes:
            result.add_error(
                "FLOW_INVALID_START_NODE", "flow", f"start node '{flow.start}' does not exist",
                f"Set 'start' to one of: {', '.join(sorted(flow.nodes))}",
                Severity.CRITICAL, flow_id,
            )
        return True

    def _check_nodes(self, flow: Flow, flow_id: str, result: ValidationResult) -> None:
        for key, node in flow.nodes.items():
            if node.id != key:
                result.add_error(
                    "NODE_ID_MISMATCH", key, f"declares id '{node.id}'",
                    "Make the node id match its key in 'nodes'", Severity.HIGH, flow_id,
                )
            page = node.config.get("page")
            if page is not None and (not isinstance(page, str) or not page):
                result.add_error(
                    "NODE_INVALID_PAGE", key, f"has invalid page reference {page!r}",
                    "Set config.page to a registered component id", Severity.MEDIUM, flow_id,
                )

    def _check_edges(self, flow: Flow, flow_id: str, result: ValidationResult) -> None:
        for edge in flow.edges:
            location = _edge_location(edge)
            if not edge.source:
                result.add_error(
                    "EDGE_MISSING_FROM", location, "has no source", "Set 'source' to a node id",
                    Severity.HIGH, flow_id,
                )
            elif edge.source not in flow.nodes:
                result.add_error(
                    "EDGE_INVALID_FROM_NODE", location, f"source '{edge.source}' does not exist",
                    "Point 'source' at an existing node", Severity.HIGH, flow_id,
                )
            if not edge.target:
                result.add_error(
                    "EDGE_MISSING_TO", location, "has no target", "Set 'target' to a node id",
                    Severity.HIGH, flow_id,
                )
            elif edge.target not in flow.nodes:
                result.add_error(
                    "EDGE_INVALID_TO_NODE", location, f"target '{edge.target}' does not exist",
                    "Point 'target' at an existing node", Severity.HIGH, flow_id,
                )
            if edge.source and edge.source == edge.target:
                result.add_warning(
                    "EDGE_SELF_REFERENCE", location, "loops back to its own source",
                    "Remove the edge or route through another node", Severity.MEDIUM, flow_id,
                )
            syntax_error = check_condition_syntax(edge.condition)
            if syntax_error:
                result.add_error(
                    "EDGE_CONDITION_INVALID", location, f"has an invalid condition: {syntax_error}",
                    "Fix the expression; it would always evaluate to false", Severity.HIGH, flow_id,
                )

    def _check_policies(self, flow: Flow, flow_id: str, result: ValidationResult) -> None:
        for index, policy in enumerate(flow.policies):
            location = policy.id or f"policies[{index}]"
            if not policy.id:
                result.add_error(
                    "POLICY_MISSING_ID", location, "has no id", "Add an 'id' to the policy",
                    Severity.MEDIUM, flow_id,
                )
            if not policy.when:
                result.add_error(
                    "POLICY_MISSING_CONDITION", location, "has no 'when' condition",
                    "Add a 'when' expression", Severity.MEDIUM, flow_id,
                )
            else:
                syntax_error = check_condition_syntax(policy.when)
                if syntax_error:
                    result.add_error(
                        "POLICY_CONDITION_INVALID", location, f"has an invalid condition: {syntax_error}",
                        "Fix the 'when' expression", Severity.MEDIUM, flow_id,
                    )
            if policy.scope not in VALID_POLICY_SCOPES:
                result.add_warning(
                    "POLICY_INVALID_SCOPE", location, f"has unknown scope '{policy.scope}'",
                    f"Use one of: {', '.join(sorted(VALID_POLICY_SCOPES))}", Severity.LOW, flow_id,
                )
            if policy.on_fail_redirect and policy.on_fail_redirect not in flow.nodes:
                result.add_error(
                    "POLICY_INVALID_REDIRECT", location,
                    f"redirects to unknown node '{policy.on_fail_redirect}'",
                    "Point onFail.redirect at an existing node", Severity.MEDIUM, flow_id,
                )

    def _check_connectivity(self, flow: Flow, flow_id: str, result: ValidationResult) -> None:
        if flow.start not in flow.nodes:
            return
        reachable: Set[str] = {flow.start}
        queue = deque([flow.start])
        while queue:
            node_id = queue.popleft()
            for edge in flow.outgoing(node_id):
                if edge.target in flow.nodes and edge.target not in reachable:
                    reachable.add(edge.target)
                    queue.append(edge.target)

        sources = {edge.source for edge in flow.edges}
        for node_id in flow.nodes:
            if node_id not in reachable:
                result.add_warning(
                    "NODE_UNREACHABLE", node_id, f"cannot be reached from start '{flow.start}'",
                    "Add an edge leading to it or remove the node", Severity.MEDIUM, flow_id,
                )
            if node_id != flow.start and node_id not in sources:
                result.add_warning(
                    "NODE_DEAD_END", node_id, "has no outgoing edges",
                    "Ignore if this is a terminal step; otherwise add an edge", Severity.LOW, flow_id,
                )

    def _check_cycles(self, flow: Flow, flow_id: str, result: ValidationResult) -> None:
        for cycle in find_cycles(flow):
            location = cycle[0]
            problem = f"is part of a cycle: {' -> '.join(cycle)}"
            fix = "Break the loop or validate with allow_cycles for intentional retries"
            if self.allow_cycles:
                result.add_warning("FLOW_CIRCULAR_DEPENDENCY", location, problem, fix, Severity.MEDIUM, flow_id)
            else:
                result.add_error("FLOW_CIRCULAR_DEPENDENCY", location, problem, fix, Severity.HIGH, flow_id)

    def _check_display(self, flow: Flow, flow_id: str, result: ValidationResult) -> None:
        for node_id, node in flow.nodes.items():
            display = node.meta.display
            until = display.root_keeps_children_until
            if until and until not in flow.nodes:
                result.add_error(
                    "DISPLAY_INVALID_ANCHOR", node_id, f"rootKeepsChildrenUntil names unknown node '{until}'",
                    "Point rootKeepsChildrenUntil at an existing node", Severity.MEDIUM, flow_id,
                )
            if display.sticky_root_on_mobile and not node.is_checkpoint:
                result.add_warning(
                    "DISPLAY_STICKY_WITHOUT_CHECKPOINT", node_id,
                    "sets stickyRootOnMobile but is not tagged 'checkpoint'",
                    "Add the 'checkpoint' tag or drop stickyRootOnMobile", Severity.LOW, flow_id,
                )

    def _check_subflow_references(self, flow: Flow, flow_id: str, result: ValidationResult) -> None:
        for node_id, node in flow.nodes.items():
            subflow_id = node.meta.subflow_id
            if subflow_id and subflow_id not in flow.subflows:
                result.add_warning(
                    "SUBFLOW_UNKNOWN_REFERENCE", node_id, f"references subflow '{subflow_id}' not embedded in this flow",
                    "Embed the subflow or register it as a main flow", Severity.MEDIUM, flow_id,
                )
        for key, subflow in flow.subflows.items():
            return_to = subflow.declared_return_to
            if return_to and return_to not in flow.nodes:
                result.add_warning(
                    "SUBFLOW_INVALID_RETURN", subflow.id or key,
                    f"returns to '{return_to}', which is not a node of '{flow_id}'",
                    "Point returnTo at a parent node; the parent start is used otherwise",
                    Severity.MEDIUM, flow_id,
                )


def find_cycles(flow: Flow) -> List[List[str]]:
    """Cycles among existing nodes, each as a closed path (first id repeated last).

    Self-loops are not reported here.
    """
    adjacency: Dict[str, List[str]] = {node_id: [] for node_id in flow.nodes}
    for edge in flow.edges:
        if edge.source in adjacency and edge.target in adjacency and edge.source != edge.target:
            adjacency[edge.source].append(edge.target)

    visiting, done = 1, 2
    color: Dict[str, int] = {}
    cycles: List[List[str]] = []
    for root in flow.nodes:
        if root in color:
            continue
        color[root] = visiting
        path = [root]
        stack = [(root, iter(adjacency[root]))]
        while stack:
            node_id, children = stack[-1]
            child = next(children, None)
            if child is None:
                color[node_id] = done
                stack.pop()
                path.pop()
                continue
            state = color.get(child)
            if state == visiting:
                cycles.append(path[path.index(child):] + [child])
            elif state is None:
                color[child] = visiting
                path.append(child)
                stack.append((child, iter(adjacency[child])))
    return cycles


def validate_flow(flow: Flow, allow_cycles: bool = False) -> ValidationResult:
    return FlowValidator(allow_cycles=allow_cycles).validate(flow)


__all__ = ["FlowValidator", "VALID_POLICY_SCOPES", "find_cycles", "validate_flow"]
