"""
Tests for FlowRegistry.

Covers loading the bundled flows, main flow vs. embedded subflow lookup,
replacement on re-registration, and directory loading failures.
"""

import logging

import pytest

from guideflow.config.flow_registry import FlowRegistry
from guideflow.errors import FlowConfigurationError

from conftest import FLOWS_DIR, make_flow, subflow_doc


@pytest.fixture
def registry():
    return FlowRegistry.from_directory(FLOWS_DIR)


class TestBundledFlows:
    """Tests against the flows shipped with the package."""

    def test_default_directory_is_bundled_flows(self):
        assert FlowRegistry.from_directory().flow_ids() == ["door-checkpoint"]

    def test_main_flow_lookup(self, registry):
        flow = registry.get_main_flow("door-checkpoint")
        assert flow is not None
        assert flow.start == "welcome"
        assert registry.has_main_flow("door-checkpoint")
        assert not registry.has_main_flow("badge-scan")

    def test_subflow_lookup(self, registry):
        subflow = registry.get_subflow("badge-scan")
        assert subflow is not None
        assert subflow.start == "scan"
        assert registry.has_subflow("badge-scan")
        assert [flow.id for flow in registry.all_subflows()] == ["badge-scan"]

    def test_get_flow_falls_back_to_subflows(self, registry):
        assert registry.get_flow("door-checkpoint").id == "door-checkpoint"
        assert registry.get_flow("badge-scan").id == "badge-scan"

    def test_unknown_flow_logs_warning(self, registry, caplog):
        with caplog.at_level(logging.WARNING):
            assert registry.get_flow("ghost") is None
        assert "Flow not found: ghost" in caplog.text

    def test_preload_and_membership(self, registry):
        assert [flow.id for flow in registry.flows_with_preload()] == ["door-checkpoint"]
        assert "door-checkpoint" in registry
        assert "badge-scan" in registry
        assert "ghost" not in registry
        assert 42 not in registry
        assert len(registry) == 1


class TestRegistration:
    """Tests for in-memory registration."""

    def test_nested_subflow_is_found(self):
        inner = subflow_doc("inner")
        outer = subflow_doc("outer", subflows={"inner": inner})
        registry = FlowRegistry([make_flow([("a", "b")], flow_id="main", subflows={"outer": outer})])
        assert registry.get_subflow("inner").id == "inner"
        assert [flow.id for flow in registry.all_subflows()] == ["outer", "inner"]

    def test_register_replaces_same_id(self, caplog):
        registry = FlowRegistry([make_flow([("a", "b")], flow_id="main")])
        with caplog.at_level(logging.INFO):
            registry.register_flow(make_flow([("x", "y")], flow_id="main"))
        assert registry.get_main_flow("main").start == "x"
        assert len(registry) == 1
        assert "Replacing registered flow main" in caplog.text

    def test_unregister(self):
        registry = FlowRegistry([make_flow([("a", "b")], flow_id="main")])
        assert registry.unregister_flow("main")
        assert not registry.unregister_flow("main")
        assert registry.all_flows() == []

    def test_registries_are_independent(self):
        first = FlowRegistry([make_flow([("a", "b")], flow_id="main")])
        second = FlowRegistry()
        assert first.has_flow("main")
        assert not second.has_flow("main")


class TestLoadDirectory:
    """Tests for loading flows from a directory."""

    def test_loads_yaml_and_json(self, tmp_path):
        (tmp_path / "one.yaml").write_text("id: one\nstart: a\nnodes:\n  a: {type: task}\n", encoding="utf-8")
        (tmp_path / "two.json").write_text('{"id": "two", "start": "a", "nodes": {"a": {}}}', encoding="utf-8")
        registry = FlowRegistry()
        loaded = registry.load_directory(tmp_path)
        assert [flow.id for flow in loaded] == ["one", "two"]
        assert registry.flow_ids() == ["one", "two"]

    def test_missing_directory_loads_nothing(self, tmp_path):
        assert len(FlowRegistry.from_directory(tmp_path / "missing")) == 0

    def test_invalid_file_raises(self, tmp_path):
        (tmp_path / "bad.yaml").write_text("id: bad\nnodes: {}\n", encoding="utf-8")
        with pytest.raises(FlowConfigurationError):
            FlowRegistry.from_directory(tmp_path)
