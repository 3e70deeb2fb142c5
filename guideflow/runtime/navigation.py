"""
navigation.py - Pure navigation over a flow graph.

The resolver answers three questions for the runner:
- Which outgoing edges of a node hold under the current context?
- Starting from a node, which node should actually be shown? Nodes that are
  not presentable on this device (or have no renderable unit) are skipped by
  following their first valid edge, up to a hop cap.
- Which node does BACK return to? Always the immediate history predecessor.

The resolver never mutates state and never raises for a missing edge or a
failing condition.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Mapping, Optional, Sequence

from guideflow.spec.types import Edge, Flow, Node

from .conditions import ConditionEvaluator

logger = logging.getLogger(__name__)

DEFAULT_MAX_FORWARD_HOPS = 100


class NavigationResolver:
    """Edge selection and forward/backward resolution.

    Args:
        is_presentable: Predicate telling whether a node should be shown on
            the current device. Nodes that fail it are skipped forward.
        max_hops: Safety cap on forward skipping so cyclic graphs terminate.
        evaluator: Condition evaluator; a fresh one by default.
    """

    def __init__(
        self,
        is_presentable: Callable[[Node], bool],
        max_hops: int = DEFAULT_MAX_FORWARD_HOPS,
        evaluator: Optional[ConditionEvaluator] = None,
    ):
        self._is_presentable = is_presentable
        self.max_hops = max(0, int(max_hops))
        self.evaluator = evaluator or ConditionEvaluator()

    def is_edge_valid(self, edge: Edge, context: Mapping) -> bool:
        return self.evaluator.evaluate(edge.condition, context)

    def get_valid_edges(self, node_id: str, flow: Flow, context: Mapping) -> List[Edge]:
        """Outgoing edges of node_id whose condition holds, in declared order."""
        return [edge for edge in flow.outgoing(node_id) if self.is_edge_valid(edge, context)]

    def get_next_node_id(self, node_id: str, flow: Flow, context: Mapping) -> Optional[str]:
        """Target of the first valid outgoing edge, or None."""
        for edge in flow.outgoing(node_id):
            if self.is_edge_valid(edge, context):
                return edge.target
        return None

    def resolve_forward_path(self, node: Node, flow: Flow, context: Mapping) -> List[Node]:
        """Walk from node to the first presentable node.

        Returns:
            The visited chain, starting with node. The last entry is the
            resolved node; it is the last node reached when no presentable
            node exists within the hop cap.
        """
        path = [node]
        current = node
        for _ in range(self.max_hops):
            if self._is_presentable(current):
                return path
            next_id = self.get_next_node_id(current.id, flow, context)
            if not next_id:
                break
            next_node = flow.get_node(next_id)
            if next_node is None:
                logger.warning("Edge from %s targets unknown node %s in flow %s", current.id, next_id, flow.id)
                break
            path.append(next_node)
            current = next_node
        else:
            if not self._is_presentable(current):
                logger.warning(
                    "Forward resolution from %s hit the %d hop cap in flow %s; stopping at %s",
                    node.id,
                    self.max_hops,
                    flow.id,
                    current.id,
                )
        return path

    def resolve_forward(self, node: Node, flow: Flow, context: Mapping) -> Node:
        """First presentable node reachable from node (node itself if presentable)."""
        return self.resolve_forward_path(node, flow, context)[-1]

    def resolve_backward(self, history: Sequence[Node], flow: Optional[Flow] = None) -> Optional[Node]:
        """Immediate predecessor in history, or None at the history floor."""
        if len(history) <= 1:
            return None
        return history[-2]


__all__ = [
    "DEFAULT_MAX_FORWARD_HOPS",
    "NavigationResolver",
]
