"""
Tests for PresentationCoordinator: presentability rules and the layer policy
applied on each transition (replace-main, mobile sticky roots, BACK).
"""

import asyncio

import pytest

from guideflow.errors import ComponentNotFoundError
from guideflow.runtime.components import NodeComponentRegistry
from guideflow.runtime.events import FlowCommand
from guideflow.runtime.layers import LayerController
from guideflow.runtime.presentation import DeviceClass, PresentationCoordinator, device_matches
from guideflow.spec.types import ShowOn

from conftest import FakeHost, RunnerHarness, make_flow


def checkpoint_flow():
    """welcome -> identify (sticky root until confirm) -> photo -> escort -> confirm."""
    return make_flow(
        [("welcome", "identify"), ("identify", "photo"), ("photo", "escort"), ("escort", "confirm")],
        nodes={
            "welcome": {"type": "guide"},
            "identify": {
                "tags": ["checkpoint"],
                "meta": {"display": {"stickyRootOnMobile": True, "rootKeepsChildrenUntil": "confirm"}},
            },
        },
        flow_id="checkpoint",
    )


class TestPresentability:
    """Tests for device matching and component lookup."""

    def test_device_matches(self):
        assert device_matches(ShowOn.ALL, DeviceClass.MOBILE)
        assert device_matches(ShowOn.MOBILE, DeviceClass.MOBILE)
        assert not device_matches(ShowOn.MOBILE, DeviceClass.TABLET)
        assert device_matches(ShowOn.TABLET_UP, DeviceClass.DESKTOP)
        assert not device_matches(ShowOn.TABLET_UP, DeviceClass.MOBILE)
        assert not device_matches(ShowOn.NONE, DeviceClass.DESKTOP)

    def setup_method(self):
        self.components = NodeComponentRegistry()
        self.coordinator = PresentationCoordinator(self.components, LayerController(FakeHost(), close_delay=0))
        self.flow = make_flow(
            [("a", "b"), ("b", "c")],
            nodes={
                "a": {"type": None, "config": {"page": "a-page"}},
                "b": {"config": {"page": "b-page"}},
                "c": {"meta": {"display": {"showOn": "mobile"}}},
            },
        )

    def test_node_without_component_is_not_opened(self):
        assert not self.coordinator.should_open(self.flow.get_node("a"))
        self.components.register_value("a-page", object())
        assert self.coordinator.should_open(self.flow.get_node("a"))

    def test_page_wins_over_type(self):
        self.components.register_value("task", object())
        node = self.flow.get_node("b")
        assert self.coordinator.component_id_for(node) == "task"
        self.components.register_value("b-page", object())
        assert self.coordinator.component_id_for(node) == "b-page"

    def test_show_on_filters_by_device(self):
        self.components.register_value("task", object())
        assert not self.coordinator.should_open(self.flow.get_node("c"))
        mobile = PresentationCoordinator(self.components, self.coordinator.layers, device="mobile")
        assert mobile.should_open(self.flow.get_node("c"))

    def test_resolve_component_missing(self):
        async def run_test():
            with pytest.raises(ComponentNotFoundError) as exc_info:
                await self.coordinator.resolve_component(self.flow.get_node("a"))
            assert exc_info.value.node_id == "a"
            assert exc_info.value.page == "a-page"

        asyncio.run(run_test())

    def test_stale_transition_opens_nothing(self):
        async def run_test():
            self.components.register_value("task", object())
            result = await self.coordinator.handle_transition(
                self.flow.get_node("b"), self.flow, FlowCommand.NEXT, is_current=lambda: False
            )
            assert result is None
            assert self.coordinator.layers.layer_count == 0

        asyncio.run(run_test())


class TestLayerPolicy:
    """Tests for the transition policy, driven through the runner."""

    def test_desktop_replaces_main_layer(self):
        async def run_test():
            h = RunnerHarness()
            await h.send(FlowCommand.START, flow=checkpoint_flow())
            await h.send(FlowCommand.NEXT)
            await h.send(FlowCommand.NEXT)
            assert h.open_layers() == [("photo", "main")]
            assert h.coordinator.sticky_root_id is None

        asyncio.run(run_test())

    def test_mobile_sticky_root_keeps_children_nested(self):
        async def run_test():
            h = RunnerHarness(device=DeviceClass.MOBILE)
            await h.send(FlowCommand.START, flow=checkpoint_flow())
            assert h.open_layers() == [("welcome", "main")]

            await h.send(FlowCommand.NEXT)
            assert h.open_layers() == [("identify", "main")]
            assert h.coordinator.sticky_root_id == "identify"

            await h.send(FlowCommand.NEXT)
            assert h.open_layers() == [("identify", "main"), ("photo", "nested")]

            await h.send(FlowCommand.NEXT)
            assert h.open_layers() == [("identify", "main"), ("escort", "nested")]

            await h.send(FlowCommand.NEXT)
            assert h.open_layers() == [("confirm", "main")]
            assert h.coordinator.sticky_root_id == "confirm"

        asyncio.run(run_test())

    def test_mobile_back_closes_main_layer_first(self):
        async def run_test():
            h = RunnerHarness(device=DeviceClass.MOBILE)
            await h.send(FlowCommand.START, flow=checkpoint_flow())
            for _ in range(3):
                await h.send(FlowCommand.NEXT)
            assert h.current_id() == "escort"
            assert h.open_layers() == [("identify", "main"), ("escort", "nested")]

            await h.send(FlowCommand.BACK)
            assert h.current_id() == "photo"
            assert ("identify", "main") not in h.open_layers()
            assert h.open_layers() == [("photo", "nested")]

            await h.send(FlowCommand.BACK)
            assert h.current_id() == "identify"
            assert h.open_layers() == [("identify", "main")]
            assert h.coordinator.sticky_root_id == "identify"

        asyncio.run(run_test())

    def test_restart_closes_previous_flow_layers(self):
        async def run_test():
            h = RunnerHarness(device=DeviceClass.MOBILE)
            await h.send(FlowCommand.START, flow=checkpoint_flow())
            await h.send(FlowCommand.NEXT)
            await h.send(FlowCommand.NEXT)
            assert h.open_layers() == [("identify", "main"), ("photo", "nested")]

            await h.send(FlowCommand.START, flow=make_flow([("x", "y")], flow_id="second"))
            assert h.current_id() == "x"
            assert h.open_layers() == [("x", "main")]
            assert h.coordinator.sticky_root_id is None
            assert [state.flow_id for state in h.layers.layers] == ["second"]

        asyncio.run(run_test())

    def test_back_replaces_main_on_desktop(self):
        async def run_test():
            h = RunnerHarness()
            await h.send(FlowCommand.START, flow=checkpoint_flow())
            await h.send(FlowCommand.NEXT)
            await h.send(FlowCommand.BACK)
            assert h.open_layers() == [("welcome", "main")]

        asyncio.run(run_test())

    def test_device_change_applies_on_next_transition(self):
        async def run_test():
            h = RunnerHarness()
            flow = make_flow(
                [("a", "b"), ("b", "c")],
                nodes={"b": {"meta": {"display": {"showOn": "mobile"}}}},
            )
            await h.send(FlowCommand.START, flow=flow)
            await h.send(FlowCommand.NEXT)
            assert h.current_id() == "c"

            h.device = DeviceClass.MOBILE
            await h.send(FlowCommand.JUMP_TO, target_node_id="b")
            assert h.current_id() == "b"

        asyncio.run(run_test())
