"""
runner.py - Command dispatcher for guided workflows.

FlowRunner is the single entry point that mutates workflow state. Callers send
commands with dispatch(); each command runs to completion before the next
starts (see command_queue.py), and dispatch never raises. A command handler:

1. reads state (current node, flow, history),
2. asks the NavigationResolver for the target,
3. writes state,
4. emits telemetry and one domain event,
5. asks the PresentationCoordinator to reconcile layers.

Failures at any step are wrapped in a FlowError and routed to the ERROR
handler, which records the error, stops the running flag and emits a
flow.error telemetry record.

Usage:
    runner = FlowRunner(PresentationCoordinator(components, LayerController(host)))
    runner.events.subscribe(on_event)
    await runner.dispatch(FlowEvent(FlowCommand.START, {"flow": flow}))
    await runner.dispatch(FlowEvent(FlowCommand.NEXT))
"""

from __future__ import annotations

import asyncio
import logging
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    Mapping,
    Optional,
    Tuple,
    Union,
)

from guideflow.config.runtime_config import get_event_source, get_max_forward_hops
from guideflow.errors import FlowConfigurationError, FlowError, FlowErrorCode
from guideflow.spec.types import Edge, EdgeCondition, Flow, Node, flow_from_dict

from .command_queue import CommandQueue
from .events import (
    EventStream,
    FlowCommand,
    FlowEvent,
    TelemetryRecord,
    TelemetryType,
    utc_now,
)
from .navigation import NavigationResolver
from .presentation import PresentationCoordinator
from .state import FlowStateSnapshot, StateManager

if TYPE_CHECKING:
    from guideflow.config.flow_registry import FlowRegistry

logger = logging.getLogger(__name__)

Handler = Callable[[FlowEvent], Awaitable[None]]


def _edge_to_dict(edge: Optional[Edge]) -> Optional[Dict[str, Any]]:
    if edge is None:
        return None
    condition: Any = edge.condition
    if isinstance(condition, EdgeCondition):
        condition = {"field": condition.field, "operator": condition.operator, "value": condition.value}
    return {"id": edge.id, "source": edge.source, "target": edge.target, "condition": condition}


class FlowRunner:
    """Executes workflow commands against a StateManager.

    Args:
        presentation: Layer policy and component resolution.
        state: State manager; a new one by default.
        navigation: Navigation resolver; by default one that skips nodes the
            presentation coordinator would not open.
        flows: Registry used to resolve START_SUBFLOW by subflow_id when the
            active flow does not embed it.
        source: meta.source on emitted events.
        max_forward_hops: Hop cap for the default navigation resolver.
    """

    def __init__(
        self,
        presentation: PresentationCoordinator,
        state: Optional[StateManager] = None,
        navigation: Optional[NavigationResolver] = None,
        flows: Optional["FlowRegistry"] = None,
        source: Optional[str] = None,
        max_forward_hops: Optional[int] = None,
    ):
        self.presentation = presentation
        self.state = state or StateManager()
        if navigation is None:
            hops = max_forward_hops if max_forward_hops is not None else get_max_forward_hops()
            navigation = NavigationResolver(presentation.should_open, max_hops=hops)
        self.navigation = navigation
        self.flows = flows
        self.source = source or get_event_source()

        self.events: EventStream[FlowEvent] = EventStream("flow-events")
        self.telemetry: EventStream[TelemetryRecord] = EventStream("telemetry")

        self._queue: CommandQueue[Any] = CommandQueue(self._execute, name="flow-runner")
        self._handlers: Dict[FlowCommand, Handler] = {
            FlowCommand.START: self._handle_start,
            FlowCommand.NEXT: self._handle_next,
            FlowCommand.BACK: self._handle_back,
            FlowCommand.CLOSE: self._handle_close,
            FlowCommand.START_SUBFLOW: self._handle_start_subflow,
            FlowCommand.NEXT_SUBFLOW: self._handle_next_subflow,
            FlowCommand.BACK_SUBFLOW: self._handle_back_subflow,
            FlowCommand.CLOSE_SUBFLOW: self._handle_close_subflow,
            FlowCommand.RESUME: self._handle_resume,
            FlowCommand.FLOW_SYNC: self._handle_resume,
            FlowCommand.JUMP_TO: self._handle_jump_to,
            FlowCommand.RESET: self._handle_reset,
            FlowCommand.ERROR: self._handle_error,
        }

    # =========================================================================
    # Public API
    # =========================================================================

    async def dispatch(self, event: Union[FlowEvent, Mapping[str, Any]]) -> None:
        """Run a command and wait until it has been fully applied.

        Never raises for command failures; they surface through state.error,
        the ERROR domain event and flow.error telemetry. Must not be awaited
        from inside an event or telemetry listener (the listener runs while
        the queue is busy); use post() there.
        """
        await self._queue.submit(event)

    def post(self, event: Union[FlowEvent, Mapping[str, Any]]) -> "asyncio.Future[None]":
        """Enqueue a command without waiting for it."""
        return self._queue.submit(event)

    async def drain(self) -> None:
        """Wait for every queued command to finish."""
        await self._queue.join()

    async def aclose(self) -> None:
        """Stop the command worker and background layer tasks."""
        await self._queue.aclose()
        await self.presentation.layers.aclose()

    @property
    def current_node(self) -> Optional[Node]:
        return self.state.current

    @property
    def flow(self) -> Optional[Flow]:
        return self.state.flow

    @property
    def is_running(self) -> bool:
        return self.state.is_running

    @property
    def is_in_subflow(self) -> bool:
        return self.state.is_in_subflow

    @property
    def can_go_back(self) -> bool:
        return self.state.can_go_back

    @property
    def can_go_next(self) -> bool:
        current, flow = self.state.current, self.state.flow
        if current is None or flow is None:
            return False
        return bool(self.navigation.get_valid_edges(current.id, flow, self.state.context))

    def snapshot(self) -> FlowStateSnapshot:
        return self.state.snapshot()

    # =========================================================================
    # Execution core
    # =========================================================================

    @staticmethod
    def _command_name(raw: Any) -> str:
        if isinstance(raw, FlowEvent):
            return raw.command_name
        if isinstance(raw, Mapping):
            return FlowEvent(command=raw.get("command", "")).command_name
        return repr(raw)

    async def _execute(self, raw: Union[FlowEvent, Mapping[str, Any]]) -> None:
        command_name = self._command_name(raw)
        self.state.clear_error()
        try:
            # Malformed input is reported through ERROR like any other failure.
            event = FlowEvent.coerce(raw)
            command = FlowCommand.parse(event.command)
            handler = self._handlers.get(command) if command is not None else None
            if handler is None:
                raise FlowError(
                    f"Unknown command: {command_name}",
                    FlowErrorCode.COMMAND_EXECUTION_FAILED,
                    {"command": command_name},
                )
            logger.debug("Dispatching %s", command.value)
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = FlowError.from_exception(
                exc, FlowErrorCode.COMMAND_EXECUTION_FAILED, {"command": command_name}
            )
            logger.error("Command %s failed: [%s] %s", command_name, error.code.value, error.message)
            logger.debug("Command %s failure detail", command_name, exc_info=True)
            self._record_error(error, command_name)
        finally:
            self.state.flush()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _emit(self, command: FlowCommand, payload: Dict[str, Any]) -> None:
        self.events.emit(
            FlowEvent(command=command, payload=payload, meta={"source": self.source, "timestamp": utc_now()})
        )

    def _record(
        self,
        record_type: TelemetryType,
        flow_id: Optional[str],
        node_id: Optional[str] = None,
        previous_node_id: Optional[str] = None,
        edge: Optional[Edge] = None,
        error: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        payload = dict(data or {})
        payload.setdefault("context", self.state.context.to_dict())
        self.telemetry.emit(
            TelemetryRecord(
                type=record_type,
                flow_id=flow_id or "unknown",
                node_id=node_id,
                previous_node_id=previous_node_id,
                edge=_edge_to_dict(edge),
                error=error,
                data=payload,
            )
        )

    @staticmethod
    def _context_updates(payload: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        updates = payload.get("context")
        if updates is None:
            return None
        if not isinstance(updates, Mapping):
            raise FlowError(
                f"Context updates must be a mapping, got {type(updates).__name__}",
                FlowErrorCode.INVALID_CONTEXT_DATA,
            )
        return updates

    @staticmethod
    def _require_node(flow: Flow, node_id: Optional[str], code: FlowErrorCode) -> Node:
        node = flow.get_node(node_id)
        if node is None:
            raise FlowConfigurationError(
                f"Node '{node_id}' not found in flow '{flow.id}'",
                code,
                context={"flow_id": flow.id, "node_id": node_id},
            )
        return node

    @staticmethod
    def _as_flow(value: Any) -> Optional[Flow]:
        if isinstance(value, Flow):
            return value
        if isinstance(value, Mapping):
            return flow_from_dict(value)
        return None

    def _position(self, command: FlowCommand) -> Optional[Tuple[Node, Flow]]:
        current, flow = self.state.current, self.state.flow
        if current is None or flow is None:
            logger.warning("%s ignored: no active node", command.value)
            return None
        return current, flow

    def _is_current(self) -> Callable[[], bool]:
        generation = self.state.generation
        return lambda: self.state.generation == generation

    def _advance(self, current: Node, flow: Flow, target: Node, explicit: bool) -> Node:
        """Move forward from current to target, skipping non-presentable nodes."""
        path = self.navigation.resolve_forward_path(target, flow, self.state.context)
        resolved = path[-1]
        self.state.navigate_to_node(resolved)

        skipped = [node.id for node in path[:-1]]
        self._record(
            TelemetryType.NODE_ENTER,
            flow.id,
            node_id=resolved.id,
            previous_node_id=current.id,
            data={"node_type": resolved.type.value if resolved.type else None, "skipped": skipped},
        )
        hops = [current] + path
        for source, dest in zip(hops, hops[1:]):
            edge = flow.find_edge(source.id, dest.id)
            if edge is None and not explicit:
                continue
            self._record(
                TelemetryType.EDGE_TAKEN,
                flow.id,
                node_id=dest.id,
                previous_node_id=source.id,
                edge=edge,
                data={"explicit": edge is None},
            )
        return resolved

    # =========================================================================
    # Top-level flow
    # =========================================================================

    async def _handle_start(self, event: FlowEvent) -> None:
        payload = event.payload
        flow = self._as_flow(payload.get("flow"))
        if flow is None:
            raise FlowConfigurationError("START requires a flow", FlowErrorCode.FLOW_START_FAILED)
        if not flow.nodes:
            raise FlowConfigurationError(
                f"Flow '{flow.id}' has no nodes", FlowErrorCode.FLOW_START_FAILED, context={"flow_id": flow.id}
            )
        start_id = payload.get("start_node_id") or flow.start
        if not start_id:
            raise FlowConfigurationError(
                f"Flow '{flow.id}' has no start node", FlowErrorCode.FLOW_START_FAILED, context={"flow_id": flow.id}
            )
        start = self._require_node(flow, start_id, FlowErrorCode.FLOW_START_FAILED)
        context = self._context_updates(payload)

        if self.state.flow is not None:
            logger.info("START replaces flow %s with %s", self.state.flow.id, flow.id)
            await self.presentation.close_all()
        self.presentation.reset()
        self.state.initialize(flow, context)
        path = self.navigation.resolve_forward_path(start, flow, self.state.context)
        resolved = path[-1]
        self.state.navigate_to_node(resolved)

        self._record(
            TelemetryType.FLOW_STARTED,
            flow.id,
            node_id=resolved.id,
            data={"start_node_id": start.id, "version": flow.version},
        )
        self._record(
            TelemetryType.NODE_ENTER,
            flow.id,
            node_id=resolved.id,
            data={
                "node_type": resolved.type.value if resolved.type else None,
                "skipped": [node.id for node in path[:-1]],
            },
        )
        self._emit(
            FlowCommand.START,
            {"flow_id": flow.id, "start_node_id": start.id, "target_node_id": resolved.id},
        )
        await self.presentation.handle_transition(resolved, flow, FlowCommand.START, self._is_current())

    async def _handle_next(self, event: FlowEvent) -> None:
        position = self._position(FlowCommand.NEXT)
        if position is None:
            return
        current, flow = position
        self.state.update_context(self._context_updates(event.payload))

        resolved = self._step_forward(current, flow, event.payload)
        if resolved is None:
            return
        self._emit(
            FlowCommand.NEXT,
            {"flow_id": flow.id, "from_node_id": current.id, "target_node_id": resolved.id},
        )
        await self.presentation.handle_transition(resolved, flow, FlowCommand.NEXT, self._is_current())

    def _step_forward(self, current: Node, flow: Flow, payload: Mapping[str, Any]) -> Optional[Node]:
        explicit_id = payload.get("node_id") or payload.get("target_node_id")
        target_id = explicit_id or self.navigation.get_next_node_id(current.id, flow, self.state.context)
        if not target_id:
            logger.warning("No valid outgoing edge from %s in flow %s", current.id, flow.id)
            return None
        target = self._require_node(flow, target_id, FlowErrorCode.NODE_NOT_FOUND)
        return self._advance(current, flow, target, explicit=bool(explicit_id))

    async def _handle_back(self, event: FlowEvent) -> None:
        history, flow = self.state.history, self.state.flow
        if flow is None or len(history) <= 1:
            logger.warning("BACK ignored: history is at its first entry")
            return
        self.state.update_context(self._context_updates(event.payload))

        previous = self.navigation.resolve_backward(history, flow)
        if previous is None:
            await self._handle_close(FlowEvent(FlowCommand.CLOSE, {"reason": "back-from-start"}))
            return
        self._step_back(history[-1], previous, flow)
        self._emit(
            FlowCommand.BACK,
            {"flow_id": flow.id, "from_node_id": history[-1].id, "target_node_id": previous.id},
        )
        await self.presentation.handle_transition(previous, flow, FlowCommand.BACK, self._is_current())

    def _step_back(self, current: Node, previous: Node, flow: Flow) -> None:
        self.state.navigate_back(previous)
        self._record(
            TelemetryType.NODE_ENTER,
            flow.id,
            node_id=previous.id,
            previous_node_id=current.id,
            data={"node_type": previous.type.value if previous.type else None, "direction": "back"},
        )

    async def _handle_close(self, event: FlowEvent) -> None:
        payload = dict(event.payload)
        reason = payload.pop("reason", None) or "user-initiated"
        self.state.update_context(self._context_updates(payload))
        payload.pop("context", None)

        flow, current = self.state.flow, self.state.current
        self.state.stop_workflow()
        final_context = self.state.context.to_dict()
        flow_id = flow.id if flow else None

        self._record(
            TelemetryType.FLOW_CLOSED,
            flow_id,
            node_id=current.id if current else None,
            data={"reason": reason, "context": final_context},
        )
        self._emit(
            FlowCommand.CLOSE,
            {
                **payload,
                "flow_id": flow_id,
                "reason": reason,
                "final_node_id": current.id if current else None,
                "context": final_context,
            },
        )
        self.state.reset()
        self.presentation.reset()
        await self.presentation.close_all()

    async def _handle_jump_to(self, event: FlowEvent) -> None:
        payload = event.payload
        target_id = payload.get("target_node_id") or payload.get("node_id")
        if not target_id:
            raise FlowError("JUMP_TO requires target_node_id", FlowErrorCode.INVALID_NODE_ID)
        position = self._position(FlowCommand.JUMP_TO)
        if position is None:
            return
        current, flow = position
        target = self._require_node(flow, target_id, FlowErrorCode.NODE_NOT_FOUND)
        self.state.update_context(self._context_updates(payload))

        resolved = self._advance(current, flow, target, explicit=True)
        self._emit(
            FlowCommand.JUMP_TO,
            {"flow_id": flow.id, "from_node_id": current.id, "target_node_id": resolved.id},
        )
        await self.presentation.jump(resolved, flow, self._is_current())

    async def _handle_resume(self, event: FlowEvent) -> None:
        command = FlowCommand.parse(event.command) or FlowCommand.RESUME
        flow = self.state.flow
        if flow is None:
            raise FlowError(
                f"{command.value} requires an active flow", FlowErrorCode.FLOW_START_FAILED
            )
        self.state.update_context(self._context_updates(event.payload))
        self.state.start_workflow()

        current = self.state.current
        resumed_at = event.payload.get("node_id") or (current.id if current else None)
        self._record(
            TelemetryType.FLOW_STARTED,
            flow.id,
            node_id=resumed_at,
            data={"resumed": True, "command": command.value},
        )
        self._emit(
            command,
            {"flow_id": flow.id, "resumed_at": resumed_at, "context": self.state.context.to_dict()},
        )

    async def _handle_reset(self, event: FlowEvent) -> None:
        flow = self.state.flow
        self.state.reset()
        self.presentation.reset()
        self._record(TelemetryType.FLOW_CLOSED, flow.id if flow else None, data={"reason": "reset"})
        self._emit(FlowCommand.RESET, {"flow_id": flow.id if flow else None, "reason": "reset"})
        await self.presentation.close_all()

    async def _handle_error(self, event: FlowEvent) -> None:
        raw = event.payload.get("error")
        if isinstance(raw, BaseException):
            error = FlowError.from_exception(raw)
        else:
            error = FlowError(str(raw) if raw else "Unknown error", FlowErrorCode.COMMAND_EXECUTION_FAILED)
        self._record_error(error, event.payload.get("command"))

    def _record_error(self, error: FlowError, command: Optional[str] = None) -> None:
        flow, current = self.state.flow, self.state.current
        self.state.set_error(error)
        self.state.stop_workflow()
        details = error.to_dict()
        self._record(
            TelemetryType.FLOW_ERROR,
            flow.id if flow else None,
            node_id=current.id if current else None,
            error=details,
            data={"code": error.code.value, "command": command, "recoverable": error.recoverable},
        )
        self._emit(
            FlowCommand.ERROR,
            {
                "flow_id": flow.id if flow else None,
                "code": error.code.value,
                "message": error.message,
                "recoverable": error.recoverable,
                "command": command,
            },
        )

    # =========================================================================
    # Subflows
    # =========================================================================

    def _resolve_subflow(self, payload: Mapping[str, Any], parent: Flow) -> Flow:
        subflow = self._as_flow(payload.get("subflow"))
        subflow_id = payload.get("subflow_id")
        if subflow is None and subflow_id:
            subflow = parent.subflows.get(subflow_id)
            if subflow is None and self.flows is not None:
                subflow = self.flows.get_flow(subflow_id)
        if subflow is None:
            raise FlowConfigurationError(
                f"Subflow '{subflow_id}' not found" if subflow_id else "START_SUBFLOW requires a subflow",
                FlowErrorCode.SUBFLOW_NOT_FOUND,
                context={"subflow_id": subflow_id, "parent_flow_id": parent.id},
            )
        return subflow

    async def _handle_start_subflow(self, event: FlowEvent) -> None:
        payload = event.payload
        parent = self.state.flow
        if parent is None:
            raise FlowError("START_SUBFLOW requires an active flow", FlowErrorCode.SUBFLOW_START_FAILED)
        subflow = self._resolve_subflow(payload, parent)
        start_id = payload.get("start_node_id") or subflow.start
        start = self._require_node(subflow, start_id, FlowErrorCode.INVALID_NODE_ID)
        updates = self._context_updates(payload)

        current = self.state.current
        return_to = (
            payload.get("return_to")
            or subflow.declared_return_to
            or (current.id if current else None)
            or parent.start
        )
        parent_context = self.state.context
        self.state.push_subflow(parent, return_to, parent_context)
        self.state.initialize_subflow(subflow, parent_context.merged(updates))
        self.state.navigate_to_node(start)

        self._record(
            TelemetryType.SUBFLOW_STARTED,
            subflow.id,
            node_id=start.id,
            previous_node_id=current.id if current else None,
            data={"parent_flow_id": parent.id, "return_to": return_to, "depth": len(self.state.subflow_stack)},
        )
        self._record(
            TelemetryType.NODE_ENTER,
            subflow.id,
            node_id=start.id,
            previous_node_id=current.id if current else None,
            data={"node_type": start.type.value if start.type else None},
        )
        self._emit(
            FlowCommand.START_SUBFLOW,
            {
                "flow_id": subflow.id,
                "parent_flow_id": parent.id,
                "return_to": return_to,
                "target_node_id": start.id,
            },
        )
        await self.presentation.enter_subflow(start, subflow, self._is_current())

    async def _handle_next_subflow(self, event: FlowEvent) -> None:
        if not self.state.is_in_subflow:
            logger.warning("NEXT_SUBFLOW ignored: not inside a subflow")
            return
        position = self._position(FlowCommand.NEXT_SUBFLOW)
        if position is None:
            return
        current, flow = position
        self.state.update_context(self._context_updates(event.payload))

        resolved = self._step_forward(current, flow, event.payload)
        if resolved is None:
            return
        self._emit(
            FlowCommand.NEXT_SUBFLOW,
            {"flow_id": flow.id, "from_node_id": current.id, "target_node_id": resolved.id},
        )
        await self.presentation.advance_subflow(resolved, flow, FlowCommand.NEXT_SUBFLOW, self._is_current())

    async def _handle_back_subflow(self, event: FlowEvent) -> None:
        if not self.state.is_in_subflow:
            logger.warning("BACK_SUBFLOW ignored: not inside a subflow")
            return
        history, flow = self.state.history, self.state.flow
        if flow is None or len(history) <= 1:
            logger.warning("BACK_SUBFLOW ignored: subflow history is at its first entry")
            return
        self.state.update_context(self._context_updates(event.payload))

        previous = self.navigation.resolve_backward(history, flow)
        if previous is None:
            return
        self._step_back(history[-1], previous, flow)
        self._emit(
            FlowCommand.BACK_SUBFLOW,
            {"flow_id": flow.id, "from_node_id": history[-1].id, "target_node_id": previous.id},
        )
        await self.presentation.advance_subflow(previous, flow, FlowCommand.BACK_SUBFLOW, self._is_current())

    async def _handle_close_subflow(self, event: FlowEvent) -> None:
        if not self.state.is_in_subflow:
            logger.warning("CLOSE_SUBFLOW ignored: not inside a subflow")
            return
        payload = dict(event.payload)
        reason = payload.pop("reason", None) or "completed"
        self.state.update_context(self._context_updates(payload))
        payload.pop("context", None)

        subflow, sub_node = self.state.flow, self.state.current
        entry = self.state.pop_subflow(self.state.context)
        parent = entry.flow

        return_node = parent.get_node(entry.return_to)
        if return_node is None:
            logger.warning(
                "Return node %s not found in flow %s; falling back to start %s",
                entry.return_to,
                parent.id,
                parent.start,
            )
            return_node = parent.get_node(parent.start)
        if return_node is not None:
            self.state.return_to_node(return_node)
            self._record(
                TelemetryType.NODE_ENTER,
                parent.id,
                node_id=return_node.id,
                previous_node_id=sub_node.id if sub_node else None,
                data={"node_type": return_node.type.value if return_node.type else None},
            )

        subflow_id = subflow.id if subflow else None
        self._record(
            TelemetryType.SUBFLOW_CLOSED,
            subflow_id,
            node_id=sub_node.id if sub_node else None,
            data={"reason": reason, "parent_flow_id": parent.id, "return_to": entry.return_to},
        )
        self._emit(
            FlowCommand.CLOSE_SUBFLOW,
            {
                **payload,
                "flow_id": subflow_id,
                "parent_flow_id": parent.id,
                "reason": reason,
                "target_node_id": return_node.id if return_node else None,
                "context": self.state.context.to_dict(),
            },
        )
        await self.presentation.leave_subflow(return_node, parent, self._is_current())


__all__ = ["FlowRunner"]
