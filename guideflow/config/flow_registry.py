"""
flow_registry.py - Registry of workflow definitions.

Holds the main flows an application can start, and answers lookups for
subflows embedded in them. Registries are plain objects: build one at
startup (optionally from a directory of YAML/JSON flow files) and pass it to
the components that need it.

Usage:
    from guideflow.config.flow_registry import FlowRegistry

    registry = FlowRegistry.from_directory("flows/")
    flow = registry.get_flow("door-checkpoint")
    subflow = registry.get_subflow("badge-scan")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from guideflow.spec.loader import iter_flow_files, load_flow_file
from guideflow.spec.types import Flow

logger = logging.getLogger(__name__)

_FLOWS_DIR = Path(__file__).parent / "flows"


def _walk_subflows(flow: Flow) -> Iterable[Flow]:
    for subflow in flow.subflows.values():
        yield subflow
        yield from _walk_subflows(subflow)


class FlowRegistry:
    """Main flows by id, with embedded subflows reachable through them."""

    def __init__(self, flows: Optional[Iterable[Flow]] = None):
        self._by_id: Dict[str, Flow] = {}
        for flow in flows or ():
            self.register_flow(flow)

    @classmethod
    def from_directory(cls, directory: Union[str, Path] = _FLOWS_DIR, validate_schema: bool = True) -> "FlowRegistry":
        """Load every flow file in directory.

        Raises:
            FlowConfigurationError: If any file fails to load.
        """
        registry = cls()
        registry.load_directory(directory, validate_schema=validate_schema)
        return registry

    def load_directory(self, directory: Union[str, Path], validate_schema: bool = True) -> List[Flow]:
        loaded = []
        for path in iter_flow_files(directory):
            flow = load_flow_file(path, validate_schema=validate_schema)
            self.register_flow(flow)
            loaded.append(flow)
        logger.debug("Loaded %d flow(s) from %s", len(loaded), directory)
        return loaded

    def register_flow(self, flow: Flow) -> None:
        """Register a main flow; a flow with the same id is replaced."""
        if flow.id in self._by_id:
            logger.info("Replacing registered flow %s", flow.id)
        self._by_id[flow.id] = flow

    def unregister_flow(self, flow_id: str) -> bool:
        return self._by_id.pop(flow_id, None) is not None

    def get_main_flow(self, flow_id: str) -> Optional[Flow]:
        return self._by_id.get(flow_id)

    def get_subflow(self, subflow_id: str) -> Optional[Flow]:
        """Find a subflow embedded in any registered flow, at any depth."""
        for flow in self._by_id.values():
            for subflow in _walk_subflows(flow):
                if subflow.id == subflow_id:
                    return subflow
        return None

    def get_flow(self, flow_id: str) -> Optional[Flow]:
        """Main flow by id, else embedded subflow by id."""
        flow = self.get_main_flow(flow_id) or self.get_subflow(flow_id)
        if flow is None:
            logger.warning("Flow not found: %s", flow_id)
        return flow

    def has_main_flow(self, flow_id: str) -> bool:
        return flow_id in self._by_id

    def has_subflow(self, subflow_id: str) -> bool:
        return self.get_subflow(subflow_id) is not None

    def has_flow(self, flow_id: str) -> bool:
        return self.has_main_flow(flow_id) or self.has_subflow(flow_id)

    def all_flows(self) -> List[Flow]:
        return list(self._by_id.values())

    def all_subflows(self) -> List[Flow]:
        return [subflow for flow in self._by_id.values() for subflow in _walk_subflows(flow)]

    def flow_ids(self) -> List[str]:
        return sorted(self._by_id)

    def flows_with_preload(self) -> List[Flow]:
        return [flow for flow in self._by_id.values() if flow.preload]

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, flow_id: object) -> bool:
        return isinstance(flow_id, str) and self.has_flow(flow_id)


__all__ = ["FlowRegistry"]
