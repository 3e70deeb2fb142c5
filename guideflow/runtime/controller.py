"""
controller.py - Awaitable workflow API for UI code.

FlowController wraps a FlowRunner with calls that read like the kiosk's
user journey: start a workflow and wait for it to close, step forward and
back, hop into a subflow and wait for it to return. Unlike the runner, the
controller raises FlowError for calls that make no sense in the current
state (a second workflow, BACK at the first step, closing a subflow that is
not open), so UI code can surface them directly.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Optional

from guideflow.config.flow_registry import FlowRegistry
from guideflow.errors import FlowError, FlowErrorCode
from guideflow.spec.types import Flow

from .events import FlowCommand, FlowEvent
from .runner import FlowRunner

if TYPE_CHECKING:
    from guideflow.validator.flow_validator import FlowValidator

logger = logging.getLogger(__name__)

RECOVERABLE_CODES = frozenset(
    {
        FlowErrorCode.NAVIGATION_NOT_ALLOWED,
        FlowErrorCode.INVALID_NODE_ID,
        FlowErrorCode.CONTEXT_UPDATE_FAILED,
    }
)


@dataclass(frozen=True)
class FlowOutcome:
    """How a workflow or subflow ended.

    Attributes:
        context: Final execution context.
        data: Data handed to close_workflow/close_subflow, if any.
        role: Close role handed to close_workflow/close_subflow, if any.
        reason: Close reason ("user-initiated", "completed", "reset", ...).
    """

    context: Dict[str, Any] = field(default_factory=dict)
    data: Any = None
    role: Optional[str] = None
    reason: Optional[str] = None


def is_recoverable(error: BaseException) -> bool:
    """Whether the UI can keep the workflow open after error."""
    return isinstance(error, FlowError) and error.code in RECOVERABLE_CODES


def _outcome(event: FlowEvent) -> FlowOutcome:
    payload = event.payload
    return FlowOutcome(
        context=dict(payload.get("context") or {}),
        data=payload.get("data"),
        role=payload.get("role"),
        reason=payload.get("reason"),
    )


class FlowController:
    """High-level workflow API.

    Args:
        runner: The runner all commands go through.
        registry: Flow registry for subflow lookups; the runner's registry
            (or a new empty one) by default.
        validator: Checks a flow before it is started; a default
            FlowValidator when omitted.
    """

    def __init__(
        self,
        runner: FlowRunner,
        registry: Optional[FlowRegistry] = None,
        validator: Optional["FlowValidator"] = None,
    ):
        # Imported here: the validator depends on guideflow.runtime.conditions.
        from guideflow.validator.flow_validator import FlowValidator

        self.runner = runner
        if registry is None:
            registry = runner.flows if runner.flows is not None else FlowRegistry()
        self.registry = registry
        self.validator = validator if validator is not None else FlowValidator()
        self._active = False

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def is_in_subflow(self) -> bool:
        return self.runner.is_in_subflow

    async def _run_until(
        self, event: FlowEvent, matches: Callable[[FlowEvent], bool]
    ) -> FlowOutcome:
        """Dispatch event, then wait for the first emitted event that matches."""
        done: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_event(emitted: FlowEvent) -> None:
            if not done.done() and matches(emitted):
                done.set_result(_outcome(emitted))

        unsubscribe = self.runner.events.subscribe(on_event)
        try:
            await self.runner.dispatch(event)
            error = self.runner.state.error
            if error is not None and not done.done():
                raise error
            return await done
        finally:
            unsubscribe()

    async def start_workflow(
        self,
        flow: Flow,
        start_node_id: Optional[str] = None,
        initial_context: Optional[Mapping[str, Any]] = None,
    ) -> FlowOutcome:
        """Start flow and wait until it is closed or reset.

        Raises:
            FlowError: FLOW_ALREADY_ACTIVE when a workflow is running, or the
                error that made START fail.
            FlowValidationError: The flow has structural errors; nothing is
                dispatched.
        """
        if self._active:
            raise FlowError(
                "A workflow is already active",
                FlowErrorCode.FLOW_ALREADY_ACTIVE,
                {"flow_id": flow.id, "active_flow_id": self.runner.flow.id if self.runner.flow else None},
            )
        self.validator.ensure_valid(flow)
        if not self.registry.has_main_flow(flow.id):
            self.registry.register_flow(flow)

        payload: Dict[str, Any] = {"flow": flow, "context": dict(initial_context or {})}
        if start_node_id:
            payload["start_node_id"] = start_node_id

        self._active = True
        try:
            return await self._run_until(
                FlowEvent(FlowCommand.START, payload),
                lambda e: e.command in (FlowCommand.CLOSE, FlowCommand.RESET),
            )
        finally:
            self._active = False

    async def start_subflow(
        self,
        subflow_id: str,
        context: Optional[Mapping[str, Any]] = None,
        start_node_id: Optional[str] = None,
        return_to: Optional[str] = None,
    ) -> FlowOutcome:
        """Enter a subflow and wait until it closes.

        The subflow is looked up in the active flow first, then the registry.

        Raises:
            FlowError: SUBFLOW_START_FAILED without an active workflow,
                SUBFLOW_NOT_FOUND for unknown ids.
        """
        parent = self.runner.flow
        if parent is None:
            raise FlowError("No active workflow to start a subflow from", FlowErrorCode.SUBFLOW_START_FAILED)
        subflow = (
            parent.subflows.get(subflow_id)
            or self.registry.get_subflow(subflow_id)
            or self.registry.get_main_flow(subflow_id)
        )
        if subflow is None:
            raise FlowError(
                f"Subflow '{subflow_id}' not found",
                FlowErrorCode.SUBFLOW_NOT_FOUND,
                {"subflow_id": subflow_id, "parent_flow_id": parent.id},
            )

        payload: Dict[str, Any] = {"subflow": subflow, "context": dict(context or {})}
        if start_node_id:
            payload["start_node_id"] = start_node_id
        if return_to:
            payload["return_to"] = return_to

        def closes_subflow(event: FlowEvent) -> bool:
            if event.command == FlowCommand.CLOSE_SUBFLOW:
                return event.payload.get("flow_id") == subflow.id
            return event.command in (FlowCommand.CLOSE, FlowCommand.RESET)

        return await self._run_until(FlowEvent(FlowCommand.START_SUBFLOW, payload), closes_subflow)

    async def next(self, context: Optional[Mapping[str, Any]] = None, node_id: Optional[str] = None) -> None:
        command = FlowCommand.NEXT_SUBFLOW if self.runner.is_in_subflow else FlowCommand.NEXT
        payload: Dict[str, Any] = {}
        if context:
            payload["context"] = dict(context)
        if node_id:
            payload["node_id"] = node_id
        await self.runner.dispatch(FlowEvent(command, payload))

    async def back(self) -> None:
        """Go to the previous step.

        Raises:
            FlowError: NAVIGATION_NOT_ALLOWED at the first step.
        """
        if not self.runner.can_go_back:
            raise FlowError("Cannot go back from the first step", FlowErrorCode.NAVIGATION_NOT_ALLOWED)
        command = FlowCommand.BACK_SUBFLOW if self.runner.is_in_subflow else FlowCommand.BACK
        await self.runner.dispatch(FlowEvent(command))

    async def jump_to(self, node_id: str, context: Optional[Mapping[str, Any]] = None) -> None:
        if not node_id:
            raise FlowError("jump_to requires a node id", FlowErrorCode.INVALID_NODE_ID)
        payload: Dict[str, Any] = {"target_node_id": node_id}
        if context:
            payload["context"] = dict(context)
        await self.runner.dispatch(FlowEvent(FlowCommand.JUMP_TO, payload))

    async def close_subflow(
        self,
        return_data: Any = None,
        role: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Close the active subflow and return to its parent.

        Raises:
            FlowError: NOT_IN_SUBFLOW when no subflow is open.
        """
        if not self.runner.is_in_subflow:
            raise FlowError("No subflow is open", FlowErrorCode.NOT_IN_SUBFLOW)
        payload: Dict[str, Any] = {"data": return_data, "role": role}
        if context:
            payload["context"] = dict(context)
        await self.runner.dispatch(FlowEvent(FlowCommand.CLOSE_SUBFLOW, payload))

    async def close_workflow(
        self, final_data: Any = None, role: Optional[str] = None, reason: Optional[str] = None
    ) -> None:
        payload: Dict[str, Any] = {"data": final_data, "role": role}
        if reason:
            payload["reason"] = reason
        await self.runner.dispatch(FlowEvent(FlowCommand.CLOSE, payload))

    async def reset(self) -> None:
        await self.runner.dispatch(FlowEvent(FlowCommand.RESET))

    def snapshot(self) -> Dict[str, Any]:
        data = self.runner.snapshot().to_dict()
        data["can_go_back"] = self.runner.can_go_back
        data["can_go_next"] = self.runner.can_go_next
        data["is_active"] = self._active
        return data


__all__ = ["FlowController", "FlowOutcome", "RECOVERABLE_CODES", "is_recoverable"]
