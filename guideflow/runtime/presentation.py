"""
presentation.py - Decides which layers to open or close on each transition.

The coordinator sits between the runner and the LayerController. It answers
whether a node should be presented at all (device class and component
availability), resolves the node's renderable unit, and applies the layer
policy for a transition:

- BACK closes the current main layer first, unless a mobile sticky root
  is holding it.
- On mobile, a checkpoint node flagged stickyRootOnMobile stays open as a
  root; later nodes open as nested layers above it until the node named by
  the root's rootKeepsChildrenUntil is reached, which becomes the new root.
- Everywhere else a transition replaces the main layer.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from guideflow.config.runtime_config import get_device_class
from guideflow.errors import ComponentNotFoundError
from guideflow.spec.types import Flow, Node, ShowOn

from .components import ComponentRegistry
from .events import FlowCommand
from .layers import LayerConfig, LayerController, LayerResult, LayerType

logger = logging.getLogger(__name__)


class DeviceClass(str, Enum):
    MOBILE = "mobile"
    TABLET = "tablet"
    DESKTOP = "desktop"


def device_matches(show_on: ShowOn, device: DeviceClass) -> bool:
    """Whether a node's showOn rule admits the device class."""
    if show_on == ShowOn.ALL:
        return True
    if show_on == ShowOn.MOBILE:
        return device == DeviceClass.MOBILE
    if show_on == ShowOn.TABLET_UP:
        return device in (DeviceClass.TABLET, DeviceClass.DESKTOP)
    return False


DeviceProvider = Union[DeviceClass, str, Callable[[], Union[DeviceClass, str]]]


class PresentationCoordinator:
    """Layer policy for node transitions.

    Args:
        components: Registry resolving a node's page or type to a renderable unit.
        layers: Controller that owns the open layers.
        device: A device class, or a callable returning the current one so
            viewport changes are picked up on the next transition. Defaults
            to the configured device class.
    """

    def __init__(
        self,
        components: ComponentRegistry,
        layers: LayerController,
        device: Optional[DeviceProvider] = None,
    ):
        self.components = components
        self.layers = layers
        self._device = device if device is not None else get_device_class()
        self._sticky_root_id: Optional[str] = None

    @property
    def device_class(self) -> DeviceClass:
        value = self._device() if callable(self._device) else self._device
        return DeviceClass(value)

    @property
    def is_mobile(self) -> bool:
        return self.device_class == DeviceClass.MOBILE

    @property
    def sticky_root_id(self) -> Optional[str]:
        return self._sticky_root_id

    def reset(self) -> None:
        """Forget the sticky root; called when a workflow starts or ends."""
        self._sticky_root_id = None

    # -------------------------------------------------------------------------
    # Presentability
    # -------------------------------------------------------------------------

    def component_id_for(self, node: Node) -> Optional[str]:
        """Registered component id for a node: page first, then node type."""
        if node.page and self.components.has(node.page):
            return node.page
        if node.type is not None and self.components.has(node.type.value):
            return node.type.value
        return None

    def has_component(self, node: Node) -> bool:
        return self.component_id_for(node) is not None

    def should_open(self, node: Node) -> bool:
        if not device_matches(node.meta.display.show_on, self.device_class):
            return False
        return self.has_component(node)

    async def resolve_component(self, node: Node) -> Any:
        """Load the node's renderable unit.

        Raises:
            ComponentNotFoundError: No component for the node's page or type.
        """
        component_id = self.component_id_for(node)
        if component_id is None:
            raise ComponentNotFoundError(
                node.page or (node.type.value if node.type else None),
                node_id=node.id,
                fallback_id=getattr(self.components, "fallback_id", None),
                page=node.page,
                node_type=node.type.value if node.type else None,
            )
        return await self.components.get(component_id)

    # -------------------------------------------------------------------------
    # Opening
    # -------------------------------------------------------------------------

    def _layer_data(self, node: Node) -> Dict[str, Any]:
        meta = node.meta
        data: Dict[str, Any] = {"node_id": node.id, "title": meta.title, "subtitle": meta.subtitle}
        if meta.props:
            data["props"] = dict(meta.props)
        return data

    async def open_for_node(
        self,
        node: Node,
        flow_id: str,
        layer_type: LayerType = LayerType.MAIN,
        parent_layer_id: Optional[str] = None,
    ) -> LayerResult:
        """Open a layer for node; a pair that is already open is left alone."""
        if self.layers.find(node.id, flow_id) is not None:
            return LayerResult(dismissed=False)
        component = await self.resolve_component(node)
        return await self.layers.open_layer(
            LayerConfig(
                node_id=node.id,
                flow_id=flow_id,
                component=component,
                layer_type=layer_type,
                parent_layer_id=parent_layer_id,
                data=self._layer_data(node),
            )
        )

    async def _open_if_current(
        self,
        node: Node,
        flow_id: str,
        layer_type: LayerType,
        is_current: Optional[Callable[[], bool]],
        parent_layer_id: Optional[str] = None,
    ) -> Optional[LayerResult]:
        if not self.should_open(node):
            logger.debug("Node %s is not presented on %s", node.id, self.device_class.value)
            return None
        if is_current is not None and not is_current():
            logger.debug("Skipping stale presentation of %s", node.id)
            return None
        return await self.open_for_node(node, flow_id, layer_type, parent_layer_id)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    async def handle_transition(
        self,
        node: Node,
        flow: Flow,
        action: FlowCommand,
        is_current: Optional[Callable[[], bool]] = None,
    ) -> Optional[LayerResult]:
        """Reconcile layers after the runner moved to node.

        Args:
            node: Node the runner now points at.
            flow: Flow the node belongs to.
            action: Command that caused the transition.
            is_current: Returns False when the state moved on while this call
                was suspended; no layer is opened then.
        """
        layer_type = LayerType.MAIN
        if action == FlowCommand.BACK:
            await self.layers.close_main_layer()

        if self.is_mobile and node.is_checkpoint and node.meta.display.sticky_root_on_mobile:
            self._sticky_root_id = node.id
            await self.layers.close_all_layers()
        elif self.is_mobile and self._sticky_root_id:
            root = flow.get_node(self._sticky_root_id)
            until = root.meta.display.root_keeps_children_until if root else None
            if until and node.id == until:
                self._sticky_root_id = node.id
                await self.layers.close_all_layers()
            else:
                await self.layers.close_nested_layer()
                layer_type = LayerType.NESTED
        else:
            await self.layers.close_main_layer()

        return await self._open_if_current(node, flow.id, layer_type, is_current)

    async def jump(
        self, node: Node, flow: Flow, is_current: Optional[Callable[[], bool]] = None
    ) -> Optional[LayerResult]:
        """Replace the main layer with node, bypassing sticky-root rules."""
        await self.layers.close_main_layer()
        return await self._open_if_current(node, flow.id, LayerType.MAIN, is_current)

    async def enter_subflow(
        self, node: Node, flow: Flow, is_current: Optional[Callable[[], bool]] = None
    ) -> Optional[LayerResult]:
        """Open a subflow layer above the current main layer."""
        main = self.layers.current_main()
        return await self._open_if_current(
            node, flow.id, LayerType.SUBFLOW, is_current, parent_layer_id=main.id if main else None
        )

    async def advance_subflow(
        self,
        node: Node,
        flow: Flow,
        action: FlowCommand,
        is_current: Optional[Callable[[], bool]] = None,
    ) -> Optional[LayerResult]:
        """Move within a subflow: NEXT_SUBFLOW clears all subflow layers, BACK_SUBFLOW the top one."""
        if action == FlowCommand.BACK_SUBFLOW:
            await self.layers.close_subflow_layer()
        else:
            await self.layers.close_all_subflow_layers()
        main = self.layers.current_main()
        return await self._open_if_current(
            node, flow.id, LayerType.SUBFLOW, is_current, parent_layer_id=main.id if main else None
        )

    async def leave_subflow(
        self, return_node: Optional[Node], parent: Flow, is_current: Optional[Callable[[], bool]] = None
    ) -> Optional[LayerResult]:
        """Close the subflow layer and present the return node if it is not showing."""
        await self.layers.close_subflow_layer()
        if return_node is None or self.layers.find(return_node.id, parent.id) is not None:
            return None
        if not self.should_open(return_node):
            return None
        return await self.handle_transition(return_node, parent, FlowCommand.NEXT, is_current)

    async def close_all(self) -> int:
        return await self.layers.close_all_layers()


__all__ = [
    "DeviceClass",
    "DeviceProvider",
    "PresentationCoordinator",
    "device_matches",
]
