"""
Runtime for guided workflows: command dispatch, navigation, state and presentation.

Usage:
    from guideflow.runtime import (
        FlowCommand,
        FlowEvent,
        FlowRunner,
        LayerController,
        NodeComponentRegistry,
        PresentationCoordinator,
    )

    components = NodeComponentRegistry()
    components.register("welcome-page", load_welcome_page)
    coordinator = PresentationCoordinator(components, LayerController(host))
    runner = FlowRunner(coordinator)
    await runner.dispatch(FlowEvent(FlowCommand.START, {"flow": flow}))
"""

from .command_queue import CommandQueue
from .components import DEFAULT_FALLBACK_ID, ComponentRegistry, NodeComponentRegistry
from .conditions import ConditionEvaluator, compile_expression, evaluate_condition
from .controller import FlowController, FlowOutcome
from .events import (
    EventStream,
    FlowCommand,
    FlowEvent,
    TelemetryRecord,
    TelemetryType,
)
from .layers import (
    LayerController,
    LayerEvent,
    LayerResult,
    LayerState,
    LayerType,
    PresentationHost,
    PresentationRequest,
    Surface,
    SurfaceDismissal,
)
from .navigation import NavigationResolver
from .preload import PreloadReport, extract_component_ids, preload_components
from .presentation import DeviceClass, PresentationCoordinator
from .runner import FlowRunner
from .state import ExecutionContext, FlowStateSnapshot, StateManager
from .telemetry import JsonlTelemetrySink, TelemetryRecorder, read_telemetry

__all__ = [
    "CommandQueue",
    "ComponentRegistry",
    "ConditionEvaluator",
    "DEFAULT_FALLBACK_ID",
    "DeviceClass",
    "EventStream",
    "ExecutionContext",
    "FlowCommand",
    "FlowController",
    "FlowEvent",
    "FlowOutcome",
    "FlowRunner",
    "FlowStateSnapshot",
    "JsonlTelemetrySink",
    "LayerController",
    "LayerEvent",
    "LayerResult",
    "LayerState",
    "LayerType",
    "NavigationResolver",
    "NodeComponentRegistry",
    "PreloadReport",
    "PresentationCoordinator",
    "PresentationHost",
    "PresentationRequest",
    "StateManager",
    "Surface",
    "SurfaceDismissal",
    "TelemetryRecord",
    "TelemetryRecorder",
    "TelemetryType",
    "compile_expression",
    "evaluate_condition",
    "extract_component_ids",
    "preload_components",
    "read_telemetry",
]
