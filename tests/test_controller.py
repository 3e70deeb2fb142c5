"""
Tests for FlowController, the awaitable workflow API.

start_workflow and start_subflow block until the flow (or subflow) closes,
so these tests start them in the background, drive the runner, then await
the outcome.
"""

import asyncio

import pytest

from guideflow.errors import FlowConfigurationError, FlowError, FlowErrorCode, FlowValidationError
from guideflow.runtime.controller import FlowController, is_recoverable
from guideflow.spec.types import flow_from_dict
from guideflow.validator.flow_validator import FlowValidator

from conftest import RunnerHarness, make_flow, start_in_background, subflow_doc


def visit_flow():
    return make_flow([("a", "b"), ("b", "c")], flow_id="visit", subflows={"badge": subflow_doc()})


class TestWorkflowLifecycle:
    """Tests for start_workflow, close_workflow and reset."""

    def test_start_waits_for_close(self):
        async def run_test():
            h = RunnerHarness()
            controller = FlowController(h.runner)
            task = await start_in_background(controller.start_workflow(visit_flow(), initial_context={"v": 1}))
            await h.runner.drain()

            assert controller.is_active
            assert h.current_id() == "a"
            await controller.next()
            assert h.current_id() == "b"
            assert not task.done()

            await controller.close_workflow(final_data={"ok": True}, role="done")
            outcome = await task

            assert outcome.data == {"ok": True}
            assert outcome.role == "done"
            assert outcome.reason == "user-initiated"
            assert outcome.context == {"v": 1}
            assert not controller.is_active
            assert controller.registry.has_main_flow("visit")

        asyncio.run(run_test())

    def test_second_workflow_is_rejected(self):
        async def run_test():
            h = RunnerHarness()
            controller = FlowController(h.runner)
            task = await start_in_background(controller.start_workflow(visit_flow()))
            await h.runner.drain()

            with pytest.raises(FlowError) as exc_info:
                await controller.start_workflow(visit_flow())
            assert exc_info.value.code == FlowErrorCode.FLOW_ALREADY_ACTIVE

            await controller.reset()
            outcome = await task
            assert outcome.reason == "reset"

        asyncio.run(run_test())

    def test_start_failure_is_raised(self):
        async def run_test():
            h = RunnerHarness()
            controller = FlowController(h.runner)
            with pytest.raises(FlowError) as exc_info:
                await controller.start_workflow(visit_flow(), start_node_id="ghost")
            assert exc_info.value.code == FlowErrorCode.FLOW_START_FAILED
            assert not controller.is_active

        asyncio.run(run_test())

    def test_invalid_flow_is_rejected_before_start(self):
        async def run_test():
            h = RunnerHarness()
            controller = FlowController(h.runner)
            broken = flow_from_dict(
                {
                    "id": "broken",
                    "version": "1",
                    "start": "a",
                    "nodes": {
                        "a": {"type": "task", "tags": ["checkpoint"], "meta": {"display": {"rootKeepsChildrenUntil": "nowhere"}}},
                        "b": {"type": "task"},
                    },
                    "edges": [{"source": "a", "target": "b"}, {"source": "b", "target": "ghost"}],
                }
            )
            with pytest.raises(FlowValidationError) as exc_info:
                await controller.start_workflow(broken)

            error = exc_info.value
            assert isinstance(error, FlowConfigurationError)
            assert not error.recoverable
            assert sorted(issue.code for issue in error.result.errors) == ["DISPLAY_INVALID_ANCHOR", "EDGE_INVALID_TO_NODE"]
            assert h.events == []
            assert h.telemetry.records == []
            assert not h.runner.is_running
            assert not controller.is_active
            assert not controller.registry.has_main_flow("broken")

        asyncio.run(run_test())

    def test_cycles_allowed_by_injected_validator(self):
        async def run_test():
            h = RunnerHarness()
            loop = make_flow([("a", "b"), ("b", "a")], flow_id="loop")
            with pytest.raises(FlowValidationError):
                await FlowController(h.runner).start_workflow(loop)

            controller = FlowController(h.runner, validator=FlowValidator(allow_cycles=True))
            task = await start_in_background(controller.start_workflow(loop))
            await h.runner.drain()
            assert h.current_id() == "a"
            await controller.reset()
            await task

        asyncio.run(run_test())

    def test_start_at_node_and_jump(self):
        async def run_test():
            h = RunnerHarness()
            controller = FlowController(h.runner)
            task = await start_in_background(controller.start_workflow(visit_flow(), start_node_id="b"))
            await h.runner.drain()
            assert h.current_id() == "b"

            await controller.jump_to("a")
            assert h.current_id() == "a"
            await controller.close_workflow(reason="kiosk-timeout")
            assert (await task).reason == "kiosk-timeout"

        asyncio.run(run_test())


class TestNavigationGuards:
    """Tests for the calls that raise instead of no-op."""

    def test_back_at_first_step(self):
        async def run_test():
            h = RunnerHarness()
            controller = FlowController(h.runner)
            task = await start_in_background(controller.start_workflow(visit_flow()))
            await h.runner.drain()

            with pytest.raises(FlowError) as exc_info:
                await controller.back()
            assert exc_info.value.code == FlowErrorCode.NAVIGATION_NOT_ALLOWED
            assert is_recoverable(exc_info.value)

            await controller.next()
            await controller.back()
            assert h.current_id() == "a"

            await controller.reset()
            await task

        asyncio.run(run_test())

    def test_jump_requires_node_id(self):
        async def run_test():
            controller = FlowController(RunnerHarness().runner)
            with pytest.raises(FlowError) as exc_info:
                await controller.jump_to("")
            assert exc_info.value.code == FlowErrorCode.INVALID_NODE_ID

        asyncio.run(run_test())

    def test_close_subflow_outside_subflow(self):
        async def run_test():
            controller = FlowController(RunnerHarness().runner)
            with pytest.raises(FlowError) as exc_info:
                await controller.close_subflow()
            assert exc_info.value.code == FlowErrorCode.NOT_IN_SUBFLOW

        asyncio.run(run_test())

    def test_subflow_needs_active_workflow(self):
        async def run_test():
            controller = FlowController(RunnerHarness().runner)
            with pytest.raises(FlowError) as exc_info:
                await controller.start_subflow("badge")
            assert exc_info.value.code == FlowErrorCode.SUBFLOW_START_FAILED

        asyncio.run(run_test())


class TestSubflows:
    """Tests for start_subflow and close_subflow."""

    def test_subflow_outcome(self):
        async def run_test():
            h = RunnerHarness()
            controller = FlowController(h.runner)
            main = await start_in_background(controller.start_workflow(visit_flow(), initial_context={"v": 1}))
            await h.runner.drain()

            sub = await start_in_background(controller.start_subflow("badge", context={"attempt": 1}))
            await h.runner.drain()
            assert controller.is_in_subflow
            assert h.current_id() == "scan"

            await controller.next(context={"badgeId": "B1"})
            assert h.current_id() == "verify"

            await controller.close_subflow(return_data={"badge": "B1"}, role="verified")
            outcome = await sub
            assert outcome.data == {"badge": "B1"}
            assert outcome.role == "verified"
            assert outcome.reason == "completed"
            assert outcome.context == {"v": 1, "attempt": 1, "badgeId": "B1"}
            assert not controller.is_in_subflow
            assert h.current_id() == "a"

            await controller.close_workflow()
            assert (await main).context == {"v": 1, "attempt": 1, "badgeId": "B1"}

        asyncio.run(run_test())

    def test_unknown_subflow(self):
        async def run_test():
            h = RunnerHarness()
            controller = FlowController(h.runner)
            main = await start_in_background(controller.start_workflow(visit_flow()))
            await h.runner.drain()

            with pytest.raises(FlowError) as exc_info:
                await controller.start_subflow("ghost")
            assert exc_info.value.code == FlowErrorCode.SUBFLOW_NOT_FOUND

            await controller.reset()
            await main

        asyncio.run(run_test())

    def test_reset_ends_pending_subflow(self):
        async def run_test():
            h = RunnerHarness()
            controller = FlowController(h.runner)
            main = await start_in_background(controller.start_workflow(visit_flow()))
            await h.runner.drain()
            sub = await start_in_background(controller.start_subflow("badge"))
            await h.runner.drain()

            await controller.reset()
            assert (await sub).reason == "reset"
            assert (await main).reason == "reset"

        asyncio.run(run_test())


class TestSnapshot:
    def test_snapshot_includes_navigation_flags(self):
        async def run_test():
            h = RunnerHarness()
            controller = FlowController(h.runner)
            main = await start_in_background(controller.start_workflow(visit_flow()))
            await h.runner.drain()

            snapshot = controller.snapshot()
            assert snapshot["flow_id"] == "visit"
            assert snapshot["current_node_id"] == "a"
            assert snapshot["can_go_back"] is False
            assert snapshot["can_go_next"] is True
            assert snapshot["is_active"] is True

            await controller.reset()
            await main

        asyncio.run(run_test())
