"""
events.py - Commands, domain events, telemetry records and the streams that carry them.

Inbound, callers hand the runner a FlowEvent naming a FlowCommand. Outbound,
the runner emits a FlowEvent per handled command (with meta source and
timestamp) on its events stream, and TelemetryRecords on its telemetry stream.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, TypeVar, Union

from guideflow.errors import FlowError, FlowErrorCode

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def datetime_to_iso(dt: Optional[datetime]) -> Optional[str]:
    """ISO 8601 with a Z suffix for UTC datetimes."""
    if dt is None:
        return None
    text = dt.isoformat()
    if text.endswith("+00:00"):
        return text[: -len("+00:00")] + "Z"
    return text if dt.tzinfo is not None else text + "Z"


def iso_to_datetime(text: Optional[str]) -> Optional[datetime]:
    if text is None:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


class FlowCommand(str, Enum):
    START = "START"
    NEXT = "NEXT"
    BACK = "BACK"
    CLOSE = "CLOSE"
    START_SUBFLOW = "START_SUBFLOW"
    NEXT_SUBFLOW = "NEXT_SUBFLOW"
    BACK_SUBFLOW = "BACK_SUBFLOW"
    CLOSE_SUBFLOW = "CLOSE_SUBFLOW"
    RESUME = "RESUME"
    FLOW_SYNC = "FLOW_SYNC"
    JUMP_TO = "JUMP_TO"
    RESET = "RESET"
    ERROR = "ERROR"

    @classmethod
    def parse(cls, value: Any) -> Optional["FlowCommand"]:
        """Command for a raw value, or None when it names no command."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            return None


class TelemetryType(str, Enum):
    NODE_ENTER = "node.enter"
    EDGE_TAKEN = "edge.taken"
    FLOW_STARTED = "flow.started"
    FLOW_CLOSED = "flow.closed"
    FLOW_ERROR = "flow.error"
    SUBFLOW_STARTED = "subflow.started"
    SUBFLOW_CLOSED = "subflow.closed"


@dataclass
class FlowEvent:
    """A command sent to the runner, or the domain event it emits back.

    Attributes:
        command: Command name. Inbound events may carry any value; unknown
            ones are routed to the error path.
        payload: Command-specific data.
        meta: Set on emitted events: {"source": ..., "timestamp": ...}.
    """

    command: Union[FlowCommand, str]
    payload: Dict[str, Any] = field(default_factory=dict)
    meta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, value: Union["FlowEvent", Mapping[str, Any]]) -> "FlowEvent":
        if isinstance(value, FlowEvent):
            return value
        if not isinstance(value, Mapping):
            raise FlowError(
                f"Cannot build a FlowEvent from {type(value).__name__}",
                FlowErrorCode.COMMAND_EXECUTION_FAILED,
                {"command": repr(value)},
            )
        command = value.get("command", "")
        payload = value.get("payload") or {}
        meta = value.get("meta") or {}
        if not isinstance(payload, Mapping) or not isinstance(meta, Mapping):
            raise FlowError(
                f"Event payload and meta must be mappings, got {type(payload).__name__} and {type(meta).__name__}",
                FlowErrorCode.INVALID_CONTEXT_DATA,
                {"command": str(command)},
            )
        return cls(command=command, payload=dict(payload), meta=dict(meta))

    @property
    def command_name(self) -> str:
        return self.command.value if isinstance(self.command, FlowCommand) else str(self.command)

    def to_dict(self) -> Dict[str, Any]:
        meta = dict(self.meta)
        if isinstance(meta.get("timestamp"), datetime):
            meta["timestamp"] = datetime_to_iso(meta["timestamp"])
        return {"command": self.command_name, "payload": dict(self.payload), "meta": meta}


@dataclass
class TelemetryRecord:
    type: TelemetryType
    flow_id: str
    timestamp: datetime = field(default_factory=utc_now)
    node_id: Optional[str] = None
    previous_node_id: Optional[str] = None
    edge: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "type": self.type.value,
            "flow_id": self.flow_id,
            "timestamp": datetime_to_iso(self.timestamp),
            "data": self.data,
        }
        if self.node_id is not None:
            result["node_id"] = self.node_id
        if self.previous_node_id is not None:
            result["previous_node_id"] = self.previous_node_id
        if self.edge is not None:
            result["edge"] = self.edge
        if self.error is not None:
            result["error"] = self.error
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TelemetryRecord":
        return cls(
            type=TelemetryType(data["type"]),
            flow_id=data.get("flow_id", ""),
            timestamp=iso_to_datetime(data.get("timestamp")) or utc_now(),
            node_id=data.get("node_id"),
            previous_node_id=data.get("previous_node_id"),
            edge=data.get("edge"),
            error=data.get("error"),
            data=dict(data.get("data") or {}),
        )


Listener = Callable[[T], None]


class EventStream(Generic[T]):
    """Explicit observer list.

    Listeners are called synchronously in subscription order. A failing
    listener is logged and does not stop delivery to the others.
    """

    def __init__(self, name: str = "events"):
        self.name = name
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, item: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(item)
            except Exception:
                logger.warning("Listener %r on %s stream failed", listener, self.name, exc_info=True)

    def __len__(self) -> int:
        return len(self._listeners)


__all__ = [
    "EventStream",
    "FlowCommand",
    "FlowEvent",
    "TelemetryRecord",
    "TelemetryType",
    "datetime_to_iso",
    "iso_to_datetime",
    "utc_now",
]
