"""
errors.py - Exception hierarchy for guided workflow execution.

Every failure raised by the engine is a FlowError carrying a stable code from
FlowErrorCode, a free-form context dict, an optional cause, and a flag telling
callers whether the workflow can continue after it.

Usage:
    from guideflow.errors import FlowError, FlowErrorCode

    raise FlowError("Node not found", FlowErrorCode.NODE_NOT_FOUND, {"node_id": "x"})
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from guideflow.validator.errors import ValidationResult


class FlowErrorCode(str, Enum):
    """Stable error codes surfaced to callers and telemetry."""

    # Flow lifecycle
    FLOW_ALREADY_ACTIVE = "FLOW_ALREADY_ACTIVE"
    FLOW_START_FAILED = "FLOW_START_FAILED"
    FLOW_CLOSE_FAILED = "FLOW_CLOSE_FAILED"
    FLOW_TIMEOUT = "FLOW_TIMEOUT"
    RESET_FAILED = "RESET_FAILED"

    # Navigation
    NAVIGATION_NOT_ALLOWED = "NAVIGATION_NOT_ALLOWED"
    NAVIGATION_FAILED = "NAVIGATION_FAILED"
    INVALID_NODE_ID = "INVALID_NODE_ID"
    NODE_NOT_FOUND = "NODE_NOT_FOUND"

    # Subflows
    SUBFLOW_NOT_FOUND = "SUBFLOW_NOT_FOUND"
    SUBFLOW_START_FAILED = "SUBFLOW_START_FAILED"
    SUBFLOW_TIMEOUT = "SUBFLOW_TIMEOUT"
    NOT_IN_SUBFLOW = "NOT_IN_SUBFLOW"

    # Context
    CONTEXT_UPDATE_FAILED = "CONTEXT_UPDATE_FAILED"
    INVALID_CONTEXT_DATA = "INVALID_CONTEXT_DATA"

    # Components and presentation
    COMPONENT_NOT_FOUND = "COMPONENT_NOT_FOUND"
    COMPONENT_LOAD_FAILED = "COMPONENT_LOAD_FAILED"
    DUPLICATE_COMPONENT = "DUPLICATE_COMPONENT"
    LAYER_OPEN_FAILED = "LAYER_OPEN_FAILED"
    LAYER_CLOSE_FAILED = "LAYER_CLOSE_FAILED"

    # Definitions and execution
    FLOW_VALIDATION_FAILED = "FLOW_VALIDATION_FAILED"
    EDGE_CONDITION_INVALID = "EDGE_CONDITION_INVALID"
    COMMAND_EXECUTION_FAILED = "COMMAND_EXECUTION_FAILED"
    CONDITION_EVALUATION_FAILED = "CONDITION_EVALUATION_FAILED"
    STATE_CORRUPTION = "STATE_CORRUPTION"
    INVALID_CONFIGURATION = "INVALID_CONFIGURATION"
    MISSING_DEPENDENCY = "MISSING_DEPENDENCY"


# Codes after which the workflow must be restarted rather than continued.
CRITICAL_CODES = frozenset(
    {
        FlowErrorCode.STATE_CORRUPTION,
        FlowErrorCode.INVALID_CONFIGURATION,
        FlowErrorCode.MISSING_DEPENDENCY,
    }
)

_USER_MESSAGES: Dict[FlowErrorCode, str] = {
    FlowErrorCode.FLOW_ALREADY_ACTIVE: "A workflow is already in progress.",
    FlowErrorCode.NAVIGATION_NOT_ALLOWED: "That step is not available right now.",
    FlowErrorCode.NODE_NOT_FOUND: "The requested step could not be found.",
    FlowErrorCode.INVALID_NODE_ID: "The requested step could not be found.",
    FlowErrorCode.SUBFLOW_NOT_FOUND: "The requested sub-process is not available.",
    FlowErrorCode.NOT_IN_SUBFLOW: "There is no sub-process to close.",
    FlowErrorCode.COMPONENT_NOT_FOUND: "This screen is not available on this device.",
    FlowErrorCode.COMPONENT_LOAD_FAILED: "This screen could not be loaded.",
}


class FlowError(Exception):
    """Base error for the workflow engine."""

    def __init__(
        self,
        message: str,
        code: FlowErrorCode = FlowErrorCode.COMMAND_EXECUTION_FAILED,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
        recoverable: bool = True,
    ):
        self.message = message
        self.code = FlowErrorCode(code)
        self.context = dict(context or {})
        self.cause = cause
        self.recoverable = recoverable and self.code not in CRITICAL_CODES
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(message)

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        code: FlowErrorCode = FlowErrorCode.COMMAND_EXECUTION_FAILED,
        context: Optional[Dict[str, Any]] = None,
    ) -> "FlowError":
        """Wrap an arbitrary exception; FlowErrors pass through unchanged."""
        if isinstance(exc, FlowError):
            return exc
        message = str(exc) or type(exc).__name__
        return cls(message, code, context=context, cause=exc)

    @classmethod
    def critical(
        cls,
        message: str,
        code: FlowErrorCode = FlowErrorCode.STATE_CORRUPTION,
        context: Optional[Dict[str, Any]] = None,
    ) -> "FlowError":
        return cls(message, code, context=context, recoverable=False)

    @property
    def user_message(self) -> str:
        return _USER_MESSAGES.get(self.code, "Something went wrong. Please try again.")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": type(self).__name__,
            "code": self.code.value,
            "message": self.message,
            "recoverable": self.recoverable,
            "timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
            "context": self.context,
        }
        if self.cause is not None:
            data["cause"] = {"name": type(self.cause).__name__, "message": str(self.cause)}
        return data


class FlowConfigurationError(FlowError):
    """Raised when a flow definition cannot be executed as given.

    Covers a missing flow, a missing or unknown start node, and unknown
    navigation targets. These are not recoverable without fixing the input.
    """

    def __init__(
        self,
        message: str,
        code: FlowErrorCode = FlowErrorCode.INVALID_CONFIGURATION,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, code, context=context, cause=cause, recoverable=False)


class ComponentNotFoundError(FlowError):
    """Raised when no renderable unit is registered for a node."""

    def __init__(
        self,
        requested_id: Optional[str],
        node_id: Optional[str] = None,
        fallback_id: Optional[str] = None,
        page: Optional[str] = None,
        node_type: Optional[str] = None,
    ):
        self.requested_id = requested_id
        self.node_id = node_id
        self.fallback_id = fallback_id
        self.page = page
        self.node_type = node_type
        if node_id:
            message = (
                f"No component registered for node '{node_id}' "
                f"(page={page!r}, type={node_type!r})"
            )
        else:
            message = f"Component '{requested_id}' is not registered"
        super().__init__(
            message,
            FlowErrorCode.COMPONENT_NOT_FOUND,
            context={
                "requested_id": requested_id,
                "node_id": node_id,
                "fallback_id": fallback_id,
                "page": page,
                "type": node_type,
            },
        )


class ComponentLoadError(FlowError):
    """Raised when a registered loader fails or yields nothing."""

    def __init__(self, component_id: str, cause: Optional[BaseException] = None):
        self.component_id = component_id
        detail = f": {cause}" if cause is not None else ""
        super().__init__(
            f"Failed to load component '{component_id}'{detail}",
            FlowErrorCode.COMPONENT_LOAD_FAILED,
            context={"component_id": component_id},
            cause=cause,
        )


class DuplicateComponentError(FlowError):
    """Raised when a component id is registered twice."""

    def __init__(self, component_id: str):
        self.component_id = component_id
        super().__init__(
            f"Component '{component_id}' is already registered",
            FlowErrorCode.DUPLICATE_COMPONENT,
            context={"component_id": component_id},
        )


class FlowValidationError(FlowConfigurationError):
    """Raised when a flow definition fails structural validation."""

    def __init__(self, flow_id: str, result: "ValidationResult"):
        self.flow_id = flow_id
        self.result = result
        count = len(result.errors)
        super().__init__(
            f"Flow '{flow_id}' failed validation with {count} error(s)",
            FlowErrorCode.FLOW_VALIDATION_FAILED,
            context={"flow_id": flow_id, "errors": [e.to_dict() for e in result.errors]},
        )


__all__ = [
    "CRITICAL_CODES",
    "ComponentLoadError",
    "ComponentNotFoundError",
    "DuplicateComponentError",
    "FlowConfigurationError",
    "FlowError",
    "FlowErrorCode",
    "FlowValidationError",
]
