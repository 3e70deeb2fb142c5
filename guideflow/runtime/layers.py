"""
layers.py - Lifecycle of stacked presentation layers.

A layer is one surface shown by the presentation host for a (node, flow)
pair. Layers stack: each gets a level equal to the number of open layers at
the time it opens. The controller keeps at most one open layer per
(node_id, flow_id); opening a pair that is already open is a no-op.

Closing is asynchronous. A closed layer leaves the registry immediately and
its surface is dismissed after a short exit-transition delay. Dismissals
initiated by the host (backdrop tap, cancel button) are picked up by a
watcher task per layer.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Coroutine, Dict, List, Optional, Protocol, Set, Tuple

from guideflow.config.runtime_config import get_layer_close_delay_seconds
from guideflow.errors import FlowError, FlowErrorCode

from .events import EventStream, utc_now

logger = logging.getLogger(__name__)

# Dismissal roles that mean the user backed out rather than finished.
DISMISS_ROLES = frozenset({"backdrop", "cancel"})


class LayerType(str, Enum):
    MAIN = "main"
    NESTED = "nested"
    SUBFLOW = "subflow"
    GLOBAL = "global"


LAYER_CSS_CLASSES: Dict[LayerType, Tuple[str, ...]] = {
    LayerType.MAIN: ("guideflow-layer", "guideflow-layer--main"),
    LayerType.NESTED: ("guideflow-layer", "guideflow-layer--nested"),
    LayerType.SUBFLOW: ("guideflow-layer", "guideflow-layer--subflow"),
    LayerType.GLOBAL: ("guideflow-layer", "guideflow-layer--global"),
}


# =============================================================================
# Presentation host contract
# =============================================================================


@dataclass(frozen=True)
class SurfaceDismissal:
    data: Any = None
    role: Optional[str] = None


class Surface(Protocol):
    """A host surface (modal, sheet, panel) created for one layer."""

    async def present(self) -> None:
        ...

    async def dismiss(self, data: Any = None, role: Optional[str] = None) -> None:
        ...

    async def on_did_dismiss(self) -> SurfaceDismissal:
        ...


@dataclass(frozen=True)
class PresentationRequest:
    component: Any
    node_id: str
    flow_id: str
    layer_id: str
    level: int
    layer_type: LayerType
    parent_layer_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    css_classes: Tuple[str, ...] = ()


class PresentationHost(Protocol):
    async def create(self, request: PresentationRequest) -> Surface:
        ...


# =============================================================================
# Layer records
# =============================================================================


@dataclass(frozen=True)
class LayerConfig:
    node_id: str
    flow_id: str
    component: Any
    layer_type: LayerType = LayerType.MAIN
    parent_layer_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LayerResult:
    """Outcome of an open request or of a layer's dismissal.

    Attributes:
        dismissed: True when the user backed out (backdrop or cancel).
        opened: True when the request created a new layer.
    """

    dismissed: bool = False
    data: Any = None
    role: Optional[str] = None
    layer_id: Optional[str] = None
    opened: bool = False


@dataclass
class LayerState:
    id: str
    node_id: str
    flow_id: str
    layer_type: LayerType
    level: int
    surface: Any
    parent_layer_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    closing: bool = False
    outcome: Optional["asyncio.Future[LayerResult]"] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.node_id, self.flow_id)


@dataclass(frozen=True)
class LayerEvent:
    type: str  # opened | closed | dismissed | error
    layer_id: Optional[str]
    node_id: str
    flow_id: str
    level: int = 0
    data: Any = None
    error: Optional[str] = None


def _new_layer_id(layer_type: LayerType, node_id: str) -> str:
    return f"{layer_type.value}-layer-{node_id}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


class LayerController:
    """Opens, tracks and closes layers on a PresentationHost.

    Args:
        host: The presentation host.
        close_delay: Seconds to wait before dismissing a closed layer's surface;
            defaults to the configured layer_close_delay_ms.
    """

    def __init__(self, host: PresentationHost, close_delay: Optional[float] = None):
        self._host = host
        if close_delay is None:
            close_delay = get_layer_close_delay_seconds()
        self.close_delay = max(0.0, float(close_delay))
        self._layers: Dict[str, LayerState] = {}
        self._closing: Dict[str, LayerState] = {}
        self._opening: Dict[Tuple[str, str], "asyncio.Future[Optional[str]]"] = {}
        self._close_tasks: Set[asyncio.Task] = set()
        self._watch_tasks: Set[asyncio.Task] = set()
        self.events: EventStream[LayerEvent] = EventStream("layers")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def layers(self) -> List[LayerState]:
        """Open layers, lowest level first."""
        return sorted(self._layers.values(), key=lambda s: s.level)

    @property
    def layer_count(self) -> int:
        return len(self._layers)

    def get_layer(self, layer_id: str) -> Optional[LayerState]:
        return self._layers.get(layer_id)

    def find(self, node_id: str, flow_id: str) -> Optional[LayerState]:
        for state in self._layers.values():
            if state.node_id == node_id and state.flow_id == flow_id:
                return state
        return None

    def has_layer(self, node_id: str, flow_id: Optional[str] = None) -> bool:
        return any(
            s.node_id == node_id and (flow_id is None or s.flow_id == flow_id)
            for s in self._layers.values()
        )

    def layers_by_type(self, layer_type: LayerType) -> List[LayerState]:
        return [s for s in self.layers if s.layer_type == layer_type]

    def layers_by_flow(self, flow_id: str) -> List[LayerState]:
        return [s for s in self.layers if s.flow_id == flow_id]

    def top_layer(self, layer_type: Optional[LayerType] = None) -> Optional[LayerState]:
        candidates = self.layers if layer_type is None else self.layers_by_type(layer_type)
        return candidates[-1] if candidates else None

    def current_main(self) -> Optional[LayerState]:
        return self.top_layer(LayerType.MAIN)

    # -------------------------------------------------------------------------
    # Open
    # -------------------------------------------------------------------------

    async def open_layer(self, config: LayerConfig) -> LayerResult:
        """Present a layer for config's (node, flow) pair.

        Returns:
            LayerResult with opened=True for a new layer; an already open pair
            yields a not-dismissed result with opened=False.

        Raises:
            FlowError: LAYER_OPEN_FAILED when the host cannot present.
        """
        existing = self.find(config.node_id, config.flow_id)
        if existing is not None:
            logger.debug("Layer for %s/%s already open as %s", config.flow_id, config.node_id, existing.id)
            return LayerResult(dismissed=False, layer_id=existing.id, opened=False)

        key = (config.node_id, config.flow_id)
        pending = self._opening.get(key)
        if pending is not None:
            layer_id = await asyncio.shield(pending)
            if layer_id is None:
                raise FlowError(
                    f"Layer for {config.flow_id}/{config.node_id} failed to open",
                    FlowErrorCode.LAYER_OPEN_FAILED,
                    {"node_id": config.node_id, "flow_id": config.flow_id, "layer_type": config.layer_type.value},
                )
            return LayerResult(dismissed=False, layer_id=layer_id, opened=False)

        # Reserve the pair before the first await so overlapping opens share one surface.
        reservation: "asyncio.Future[Optional[str]]" = asyncio.get_running_loop().create_future()
        self._opening[key] = reservation
        try:
            result = await self._create_layer(config)
        except BaseException:
            reservation.set_result(None)
            raise
        finally:
            self._opening.pop(key, None)
        reservation.set_result(result.layer_id)
        return result

    async def _create_layer(self, config: LayerConfig) -> LayerResult:
        level = len(self._layers) + len(self._opening) - 1
        layer_id = _new_layer_id(config.layer_type, config.node_id)
        request = PresentationRequest(
            component=config.component,
            node_id=config.node_id,
            flow_id=config.flow_id,
            layer_id=layer_id,
            level=level,
            layer_type=config.layer_type,
            parent_layer_id=config.parent_layer_id,
            data=dict(config.data),
            css_classes=LAYER_CSS_CLASSES[config.layer_type],
        )
        try:
            surface = await self._host.create(request)
            await surface.present()
        except Exception as e:
            self.events.emit(
                LayerEvent("error", layer_id, config.node_id, config.flow_id, level, error=str(e))
            )
            raise FlowError.from_exception(
                e,
                FlowErrorCode.LAYER_OPEN_FAILED,
                {"node_id": config.node_id, "flow_id": config.flow_id, "layer_type": config.layer_type.value},
            ) from e

        state = LayerState(
            id=layer_id,
            node_id=config.node_id,
            flow_id=config.flow_id,
            layer_type=config.layer_type,
            level=level,
            surface=surface,
            parent_layer_id=config.parent_layer_id,
            data=dict(config.data),
            outcome=asyncio.get_running_loop().create_future(),
        )
        self._layers[layer_id] = state
        self._spawn(self._watch(state), self._watch_tasks)
        logger.debug("Opened %s layer %s at level %d", config.layer_type.value, layer_id, level)
        self.events.emit(LayerEvent("opened", layer_id, state.node_id, state.flow_id, level))
        return LayerResult(dismissed=False, layer_id=layer_id, opened=True)

    # -------------------------------------------------------------------------
    # Close
    # -------------------------------------------------------------------------

    async def close_layer(self, layer_id: str, data: Any = None, role: Optional[str] = None) -> bool:
        """Close a layer; its surface is dismissed after close_delay.

        Returns:
            False when no open layer has that id.
        """
        state = self._layers.pop(layer_id, None)
        if state is None:
            return False
        state.closing = True
        self._closing[layer_id] = state
        self._spawn(self._dismiss_later(state, data, role), self._close_tasks)
        return True

    async def _close_top(self, layer_type: LayerType) -> bool:
        top = self.top_layer(layer_type)
        if top is None:
            return False
        return await self.close_layer(top.id)

    async def _close_each(self, states: List[LayerState]) -> int:
        closed = 0
        for state in sorted(states, key=lambda s: s.level, reverse=True):
            if await self.close_layer(state.id):
                closed += 1
        return closed

    async def close_main_layer(self) -> bool:
        return await self._close_top(LayerType.MAIN)

    async def close_nested_layer(self) -> bool:
        return await self._close_top(LayerType.NESTED)

    async def close_subflow_layer(self) -> bool:
        return await self._close_top(LayerType.SUBFLOW)

    async def close_all_nested_layers(self) -> int:
        return await self._close_each(self.layers_by_type(LayerType.NESTED))

    async def close_all_subflow_layers(self) -> int:
        return await self._close_each(self.layers_by_type(LayerType.SUBFLOW))

    async def close_all_layers(self) -> int:
        return await self._close_each(list(self._layers.values()))

    async def wait_closed(self, layer_id: str) -> Optional[LayerResult]:
        """Wait for a layer's final dismissal result; None for unknown ids."""
        state = self._layers.get(layer_id) or self._closing.get(layer_id)
        if state is None or state.outcome is None:
            return None
        return await asyncio.shield(state.outcome)

    async def drain(self) -> None:
        """Wait for pending close requests to reach the host."""
        while self._close_tasks:
            await asyncio.gather(*list(self._close_tasks), return_exceptions=True)
        # Let watchers observe the dismissals.
        await asyncio.sleep(0)
        await asyncio.sleep(0)

    async def aclose(self) -> None:
        """Cancel background tasks without dismissing surfaces."""
        tasks = list(self._close_tasks | self._watch_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Background tasks
    # -------------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, None], bucket: Set[asyncio.Task]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        bucket.add(task)
        task.add_done_callback(bucket.discard)

    async def _dismiss_later(self, state: LayerState, data: Any, role: Optional[str]) -> None:
        if self.close_delay > 0:
            await asyncio.sleep(self.close_delay)
        try:
            await state.surface.dismiss(data, role)
        except Exception as e:
            logger.warning("Failed to dismiss layer %s: %s", state.id, e)
            self.events.emit(
                LayerEvent("error", state.id, state.node_id, state.flow_id, state.level, error=str(e))
            )
            self._finish(state, SurfaceDismissal(data=data, role=role))

    async def _watch(self, state: LayerState) -> None:
        try:
            dismissal = await state.surface.on_did_dismiss()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Layer %s surface failed while open: %s", state.id, e)
            self.events.emit(
                LayerEvent("error", state.id, state.node_id, state.flow_id, state.level, error=str(e))
            )
            dismissal = SurfaceDismissal()
        self._finish(state, dismissal or SurfaceDismissal())

    def _finish(self, state: LayerState, dismissal: SurfaceDismissal) -> None:
        if state.outcome is not None and state.outcome.done():
            return
        self._layers.pop(state.id, None)
        self._closing.pop(state.id, None)
        result = LayerResult(
            dismissed=dismissal.role in DISMISS_ROLES,
            data=dismissal.data,
            role=dismissal.role,
            layer_id=state.id,
        )
        event_type = "dismissed" if result.dismissed else "closed"
        logger.debug("Layer %s %s (role=%s)", state.id, event_type, dismissal.role)
        self.events.emit(
            LayerEvent(event_type, state.id, state.node_id, state.flow_id, state.level, data=dismissal.data)
        )
        if state.outcome is not None:
            state.outcome.set_result(result)


__all__ = [
    "DISMISS_ROLES",
    "LAYER_CSS_CLASSES",
    "LayerConfig",
    "LayerController",
    "LayerEvent",
    "LayerResult",
    "LayerState",
    "LayerType",
    "PresentationHost",
    "PresentationRequest",
    "Surface",
    "SurfaceDismissal",
]
