"""
Test fixtures and utilities for guideflow tests.

Provides a fake presentation host that records every surface it is asked to
create, a compact flow builder, and a RunnerHarness wiring a FlowRunner to
both with telemetry and domain events captured.
"""

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

_REPO_ROOT = Path(__file__).resolve().parent.parent
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from guideflow.config.runtime_config import reset_config
from guideflow.runtime.components import NodeComponentRegistry
from guideflow.runtime.events import FlowCommand, FlowEvent
from guideflow.runtime.layers import LayerController, PresentationRequest, SurfaceDismissal
from guideflow.runtime.presentation import DeviceClass, PresentationCoordinator
from guideflow.runtime.runner import FlowRunner
from guideflow.runtime.telemetry import TelemetryRecorder
from guideflow.spec.types import Flow, flow_from_dict

FLOWS_DIR = _REPO_ROOT / "guideflow" / "config" / "flows"

_ENV_VARS = (
    "GUIDEFLOW_DEVICE_CLASS",
    "GUIDEFLOW_MAX_FORWARD_HOPS",
    "GUIDEFLOW_LAYER_CLOSE_DELAY_MS",
    "GUIDEFLOW_DEFAULT_FALLBACK_COMPONENT",
    "GUIDEFLOW_EVENT_SOURCE",
    "GUIDEFLOW_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_runtime_env(monkeypatch):
    """Keep GUIDEFLOW_* settings from the developer shell out of tests."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


# ============================================================================
# Fake presentation host
# ============================================================================


class FakeSurface:
    """Surface that resolves its dismissal when dismissed by code or by the 'user'."""

    def __init__(self, request: PresentationRequest):
        self.request = request
        self.presented = False
        self.dismiss_calls: List[Tuple[Any, Optional[str]]] = []
        self._dismissed: asyncio.Future = asyncio.get_running_loop().create_future()

    async def present(self) -> None:
        self.presented = True

    async def dismiss(self, data: Any = None, role: Optional[str] = None) -> None:
        self.dismiss_calls.append((data, role))
        self.user_dismiss(role=role, data=data)

    async def on_did_dismiss(self) -> SurfaceDismissal:
        return await self._dismissed

    def user_dismiss(self, role: Optional[str] = "backdrop", data: Any = None) -> None:
        if not self._dismissed.done():
            self._dismissed.set_result(SurfaceDismissal(data=data, role=role))


class FakeHost:
    """Presentation host recording requests; can be told to fail or to be slow."""

    def __init__(self, fail_nodes: Sequence[str] = (), present_delay: float = 0.0):
        self.fail_nodes = set(fail_nodes)
        self.present_delay = present_delay
        self.requests: List[PresentationRequest] = []
        self.surfaces: List[FakeSurface] = []

    async def create(self, request: PresentationRequest) -> FakeSurface:
        if self.present_delay:
            await asyncio.sleep(self.present_delay)
        if request.node_id in self.fail_nodes:
            raise RuntimeError(f"cannot present {request.node_id}")
        self.requests.append(request)
        surface = FakeSurface(request)
        self.surfaces.append(surface)
        return surface

    def surface_for(self, node_id: str) -> FakeSurface:
        for surface in reversed(self.surfaces):
            if surface.request.node_id == node_id:
                return surface
        raise KeyError(node_id)


# ============================================================================
# Flow builder
# ============================================================================


def make_flow(
    edges: Sequence[tuple],
    nodes: Optional[Dict[str, Dict[str, Any]]] = None,
    flow_id: str = "test-flow",
    start: Optional[str] = None,
    subflows: Optional[Dict[str, Dict[str, Any]]] = None,
    **extra: Any,
) -> Flow:
    """Build a Flow from (source, target[, condition]) tuples.

    Every node mentioned by an edge becomes a task node; ``nodes`` adds or
    overrides node documents.
    """
    node_docs: Dict[str, Dict[str, Any]] = {}
    for edge in edges:
        for node_id in edge[:2]:
            node_docs.setdefault(node_id, {"type": "task"})
    for node_id, doc in (nodes or {}).items():
        merged = {"type": "task"}
        merged.update(doc)
        node_docs[node_id] = merged

    edge_docs = []
    for edge in edges:
        edge_doc: Dict[str, Any] = {"source": edge[0], "target": edge[1]}
        if len(edge) > 2:
            edge_doc["condition"] = edge[2]
        edge_docs.append(edge_doc)

    doc: Dict[str, Any] = {
        "id": flow_id,
        "version": "1",
        "start": start or (edges[0][0] if edges else next(iter(node_docs))),
        "nodes": node_docs,
        "edges": edge_docs,
    }
    if subflows:
        doc["subflows"] = subflows
    doc.update(extra)
    return flow_from_dict(doc)


def subflow_doc(flow_id: str = "badge", **extra: Any) -> Dict[str, Any]:
    """Two-step subflow: scan -> verify once badgeId is known."""
    doc: Dict[str, Any] = {
        "id": flow_id,
        "version": "1",
        "start": "scan",
        "nodes": {"scan": {"type": "task"}, "verify": {"type": "task"}},
        "edges": [{"source": "scan", "target": "verify", "condition": "badgeId != null"}],
    }
    doc.update(extra)
    return doc


# ============================================================================
# Runner harness
# ============================================================================


class RunnerHarness:
    """A FlowRunner wired to a FakeHost with events and telemetry captured."""

    def __init__(
        self,
        device: DeviceClass = DeviceClass.DESKTOP,
        component_ids: Sequence[str] = ("task", "guide"),
        host: Optional[FakeHost] = None,
        flows=None,
    ):
        self.components = NodeComponentRegistry()
        for component_id in component_ids:
            self.components.register_value(component_id, {"component": component_id})
        self.host = host or FakeHost()
        self.layers = LayerController(self.host, close_delay=0)
        self.device = device
        self.coordinator = PresentationCoordinator(self.components, self.layers, device=lambda: self.device)
        self.runner = FlowRunner(self.coordinator, flows=flows, source="test-runner", max_forward_hops=100)
        self.telemetry = TelemetryRecorder()
        self.runner.telemetry.subscribe(self.telemetry)
        self.events: List[FlowEvent] = []
        self.runner.events.subscribe(self.events.append)

    async def send(self, command: FlowCommand, **payload: Any) -> None:
        await self.runner.dispatch(FlowEvent(command, payload))

    @property
    def state(self):
        return self.runner.state

    def current_id(self) -> Optional[str]:
        node = self.runner.state.current
        return node.id if node else None

    def history_ids(self) -> List[str]:
        return [node.id for node in self.runner.state.history]

    def commands(self) -> List[FlowCommand]:
        return [event.command for event in self.events]

    def open_layers(self) -> List[Tuple[str, str]]:
        return [(state.node_id, state.layer_type.value) for state in self.layers.layers]


async def start_in_background(coro) -> "asyncio.Task":
    """Schedule coro and let it run up to its first suspension."""
    task = asyncio.create_task(coro)
    await asyncio.sleep(0)
    return task


@pytest.fixture
def harness() -> RunnerHarness:
    return RunnerHarness()


@pytest.fixture
def flows_dir() -> Path:
    return FLOWS_DIR
