"""
Tests for NodeComponentRegistry.
"""

import asyncio
import logging

import pytest

from guideflow.errors import ComponentLoadError, ComponentNotFoundError, DuplicateComponentError, FlowErrorCode
from guideflow.runtime.components import ComponentRegistry, NodeComponentRegistry


class TestRegistration:
    def test_duplicate_registration_raises(self):
        registry = NodeComponentRegistry()
        registry.register_value("welcome-page", object())
        with pytest.raises(DuplicateComponentError) as exc_info:
            registry.register_value("welcome-page", object())
        assert exc_info.value.code == FlowErrorCode.DUPLICATE_COMPONENT

    def test_has_and_unregister(self):
        registry = NodeComponentRegistry()
        registry.register_value("b", 1)
        registry.register_value("a", 2, metadata={"lazy": False})
        assert registry.ids() == ["a", "b"]
        assert registry.has("a")
        assert not registry.has("")
        assert registry.unregister("a")
        assert not registry.unregister("a")
        assert not registry.has("a")

    def test_satisfies_protocol(self):
        assert isinstance(NodeComponentRegistry(), ComponentRegistry)


class TestResolution:
    """Tests for get() and loader handling."""

    def test_sync_and_async_loaders(self):
        async def load_async():
            await asyncio.sleep(0)
            return "async-screen"

        async def run_test():
            registry = NodeComponentRegistry()
            registry.register("sync", lambda: "sync-screen")
            registry.register("async", load_async)
            assert await registry.get("sync") == "sync-screen"
            assert await registry.get("async") == "async-screen"

        asyncio.run(run_test())

    def test_access_count(self):
        async def run_test():
            registry = NodeComponentRegistry()
            registry.register_value("page", "screen", metadata={"size": "large"})
            await registry.get("page")
            await registry.get("page")
            registration = registry.registration("page")
            assert registration.access_count == 2
            assert registration.last_accessed is not None
            assert registry.stats() == {
                "total": 1,
                "components": {"page": {"access_count": 2, "metadata": {"size": "large"}}},
            }

        asyncio.run(run_test())

    def test_unknown_id_without_fallback(self):
        async def run_test():
            registry = NodeComponentRegistry()
            with pytest.raises(ComponentNotFoundError) as exc_info:
                await registry.get("ghost")
            assert exc_info.value.requested_id == "ghost"
            assert exc_info.value.fallback_id == "default-fallback"
            assert exc_info.value.code == FlowErrorCode.COMPONENT_NOT_FOUND

        asyncio.run(run_test())

    def test_unknown_id_uses_fallback(self, caplog):
        async def run_test():
            registry = NodeComponentRegistry(fallback_id="placeholder")
            registry.register_value("placeholder", "placeholder-screen")
            return await registry.get("ghost")

        with caplog.at_level(logging.WARNING):
            assert asyncio.run(run_test()) == "placeholder-screen"
        assert "Component ghost not registered, using placeholder" in caplog.text

    def test_loader_returning_none(self):
        async def run_test():
            registry = NodeComponentRegistry()
            registry.register("empty", lambda: None)
            with pytest.raises(ComponentLoadError) as exc_info:
                await registry.get("empty")
            assert exc_info.value.component_id == "empty"
            assert registry.registration("empty").access_count == 0

        asyncio.run(run_test())

    def test_loader_raising(self):
        def broken():
            raise ImportError("missing bundle")

        async def run_test():
            registry = NodeComponentRegistry()
            registry.register("broken", broken)
            with pytest.raises(ComponentLoadError) as exc_info:
                await registry.get("broken")
            assert exc_info.value.code == FlowErrorCode.COMPONENT_LOAD_FAILED
            assert isinstance(exc_info.value.cause, ImportError)
            assert "missing bundle" in exc_info.value.message

        asyncio.run(run_test())
