"""
state.py - Authoritative runtime state for the active workflow.

The StateManager owns the current node, last task node, history, execution
context, running flag, subflow stack, last error and a generation counter.
All mutators are synchronous. Observers are notified once per command: the
runner calls flush() after a command completes, so an observer never sees a
half-applied command.

Usage:
    from guideflow.runtime.state import StateManager

    state = StateManager()
    unsubscribe = state.subscribe(lambda snap: print(snap.current_node_id))
    state.initialize(flow, {"visits": 1})
    state.navigate_to_node(flow.get_node(flow.start))
    state.flush()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

from guideflow.spec.types import Flow, Node

logger = logging.getLogger(__name__)


class ExecutionContext(Mapping):
    """Immutable key/value store accumulated across a workflow.

    Updates never replace the context wholesale: merged() returns a new
    context in which the update's keys overwrite and every other key persists.
    """

    __slots__ = ("_data",)

    def __init__(self, data: Optional[Mapping[str, Any]] = None):
        self._data: Dict[str, Any] = dict(data or {})

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"ExecutionContext({self._data!r})"

    def merged(self, updates: Optional[Mapping[str, Any]] = None) -> "ExecutionContext":
        if not updates:
            return self
        data = dict(self._data)
        data.update(updates)
        return ExecutionContext(data)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data)


@dataclass
class SubflowStackEntry:
    """Parent position saved when a subflow starts.

    Attributes:
        flow: The parent flow to restore.
        return_to: Node id in the parent to re-enter on close.
        saved_context: Parent context at the moment the subflow started.
        saved_history: Parent history at the moment the subflow started.
    """

    flow: Flow
    return_to: str
    saved_context: ExecutionContext
    saved_history: Tuple[Node, ...] = ()


@dataclass
class FlowState:
    flow: Optional[Flow] = None
    current: Optional[Node] = None
    last_task: Optional[Node] = None
    history: List[Node] = field(default_factory=list)
    context: ExecutionContext = field(default_factory=ExecutionContext)
    is_running: bool = False
    subflow_stack: List[SubflowStackEntry] = field(default_factory=list)
    error: Optional[BaseException] = None
    generation: int = 0


@dataclass(frozen=True)
class FlowStateSnapshot:
    """Read-only view handed to observers."""

    flow_id: Optional[str]
    current_node_id: Optional[str]
    last_task_id: Optional[str]
    history: Tuple[str, ...]
    context: Dict[str, Any]
    is_running: bool
    subflow_depth: int
    error: Optional[str]
    generation: int

    @property
    def is_in_subflow(self) -> bool:
        return self.subflow_depth > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flow_id": self.flow_id,
            "current_node_id": self.current_node_id,
            "last_task_id": self.last_task_id,
            "history": list(self.history),
            "context": dict(self.context),
            "is_running": self.is_running,
            "subflow_depth": self.subflow_depth,
            "error": self.error,
            "generation": self.generation,
        }


StateListener = Callable[[FlowStateSnapshot], None]


class StateManager:
    """Holds FlowState and applies the runner's mutations to it."""

    def __init__(self):
        self._state = FlowState()
        self._listeners: List[StateListener] = []
        self._dirty = False

    # -------------------------------------------------------------------------
    # Read access
    # -------------------------------------------------------------------------

    @property
    def flow(self) -> Optional[Flow]:
        return self._state.flow

    @property
    def current(self) -> Optional[Node]:
        return self._state.current

    @property
    def last_task(self) -> Optional[Node]:
        return self._state.last_task

    @property
    def history(self) -> Tuple[Node, ...]:
        return tuple(self._state.history)

    @property
    def context(self) -> ExecutionContext:
        return self._state.context

    @property
    def is_running(self) -> bool:
        return self._state.is_running

    @property
    def subflow_stack(self) -> Tuple[SubflowStackEntry, ...]:
        return tuple(self._state.subflow_stack)

    @property
    def is_in_subflow(self) -> bool:
        return bool(self._state.subflow_stack)

    @property
    def error(self) -> Optional[BaseException]:
        return self._state.error

    @property
    def generation(self) -> int:
        return self._state.generation

    @property
    def can_go_back(self) -> bool:
        return len(self._state.history) > 1 and self._state.flow is not None

    def snapshot(self) -> FlowStateSnapshot:
        state = self._state
        return FlowStateSnapshot(
            flow_id=state.flow.id if state.flow else None,
            current_node_id=state.current.id if state.current else None,
            last_task_id=state.last_task.id if state.last_task else None,
            history=tuple(node.id for node in state.history),
            context=state.context.to_dict(),
            is_running=state.is_running,
            subflow_depth=len(state.subflow_stack),
            error=str(state.error) if state.error is not None else None,
            generation=state.generation,
        )

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a change listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def flush(self) -> bool:
        """Notify listeners if anything changed since the last flush."""
        if not self._dirty:
            return False
        self._dirty = False
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.warning("State listener %r failed", listener, exc_info=True)
        return True

    def _touch(self) -> None:
        self._dirty = True

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def initialize(self, flow: Flow, context: Optional[Mapping[str, Any]] = None) -> None:
        """Start a fresh top-level flow; bumps the generation."""
        self._state = FlowState(
            flow=flow,
            context=ExecutionContext(context),
            is_running=True,
            generation=self._state.generation + 1,
        )
        self._touch()

    def initialize_subflow(self, flow: Flow, context: Mapping[str, Any]) -> None:
        """Activate a subflow; the subflow stack is kept."""
        state = self._state
        state.flow = flow
        state.context = context if isinstance(context, ExecutionContext) else ExecutionContext(context)
        state.current = None
        state.history = []
        self._touch()

    def start_workflow(self) -> None:
        self._state.is_running = True
        self._state.error = None
        self._touch()

    def stop_workflow(self) -> None:
        self._state.is_running = False
        self._touch()

    def reset(self) -> None:
        """Clear everything except the generation, which is bumped."""
        self._state = FlowState(generation=self._state.generation + 1)
        self._touch()

    def set_error(self, error: Optional[BaseException]) -> None:
        self._state.error = error
        self._touch()

    def clear_error(self) -> None:
        if self._state.error is not None:
            self._state.error = None
            self._touch()

    # -------------------------------------------------------------------------
    # Navigation
    # -------------------------------------------------------------------------

    def navigate_to_node(self, node: Node) -> None:
        """Enter node: it becomes current and is appended to history."""
        state = self._state
        state.current = node
        state.history.append(node)
        if node.is_task:
            state.last_task = node
        self._touch()

    def navigate_back(self, node: Node) -> None:
        """Return to an earlier history entry, truncating everything after it."""
        state = self._state
        index = None
        for i in range(len(state.history) - 2, -1, -1):
            if state.history[i].id == node.id:
                index = i
                break
        if index is None:
            logger.warning("Back target %s is not in history; appending it", node.id)
            state.history.append(node)
        else:
            del state.history[index + 1 :]
        state.current = node
        if node.is_task:
            state.last_task = node
        self._touch()

    def return_to_node(self, node: Node) -> None:
        """Re-enter node after a subflow closes.

        If node is already the last history entry (the usual round trip) the
        restored history is kept as is; otherwise node is appended.
        """
        state = self._state
        if state.history and state.history[-1].id == node.id:
            state.current = node
            if node.is_task:
                state.last_task = node
            self._touch()
            return
        self.navigate_to_node(node)

    # -------------------------------------------------------------------------
    # Context
    # -------------------------------------------------------------------------

    def update_context(self, updates: Optional[Mapping[str, Any]]) -> None:
        if not updates:
            return
        self._state.context = self._state.context.merged(updates)
        self._touch()

    # -------------------------------------------------------------------------
    # Subflow stack
    # -------------------------------------------------------------------------

    def push_subflow(self, flow: Flow, return_to: str, context: Mapping[str, Any]) -> None:
        saved = context if isinstance(context, ExecutionContext) else ExecutionContext(context)
        self._state.subflow_stack.append(
            SubflowStackEntry(
                flow=flow,
                return_to=return_to,
                saved_context=saved,
                saved_history=tuple(self._state.history),
            )
        )
        self._touch()

    def pop_subflow(self, final_context: Optional[Mapping[str, Any]] = None) -> Optional[SubflowStackEntry]:
        """Restore the parent flow saved by the last push.

        The restored context is the saved parent context with the subflow's
        final context merged over it.

        Returns:
            The popped entry, or None when the stack is empty.
        """
        state = self._state
        if not state.subflow_stack:
            return None
        entry = state.subflow_stack.pop()
        state.flow = entry.flow
        state.context = entry.saved_context.merged(final_context)
        state.history = list(entry.saved_history)
        state.current = state.history[-1] if state.history else None
        self._touch()
        return entry


__all__ = [
    "ExecutionContext",
    "FlowState",
    "FlowStateSnapshot",
    "StateListener",
    "StateManager",
    "SubflowStackEntry",
]
