"""
preload.py - Warm the component registry for flows marked ``preload: true``.

Kiosks resolve every screen a flow may show before the first visitor walks
up, so the first transition does not wait on a lazy loader.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from guideflow.spec.types import Flow

from .components import ComponentRegistry

logger = logging.getLogger(__name__)


def extract_component_ids(flow: Flow) -> List[str]:
    """Page ids referenced by a flow and its subflows, in first-seen order."""
    seen: Dict[str, None] = {}
    for node in flow.nodes.values():
        if node.page:
            seen.setdefault(node.page, None)
    for subflow in flow.subflows.values():
        for component_id in extract_component_ids(subflow):
            seen.setdefault(component_id, None)
    return list(seen)


@dataclass
class PreloadReport:
    loaded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


async def preload_components(registry: ComponentRegistry, flows: Iterable[Flow]) -> PreloadReport:
    """Resolve every page used by the preload-flagged flows.

    Failures are collected in the report and logged; nothing is raised.
    """
    component_ids: Dict[str, None] = {}
    for flow in flows:
        if not flow.preload:
            continue
        for component_id in extract_component_ids(flow):
            component_ids.setdefault(component_id, None)

    ids = list(component_ids)
    report = PreloadReport()
    if not ids:
        return report

    results = await asyncio.gather(*(registry.get(cid) for cid in ids), return_exceptions=True)
    for component_id, outcome in zip(ids, results):
        if isinstance(outcome, BaseException):
            logger.warning("Failed to preload component %s: %s", component_id, outcome)
            report.failed[component_id] = str(outcome)
        else:
            report.loaded.append(component_id)
    logger.info("Preloaded %d component(s), %d failed", len(report.loaded), len(report.failed))
    return report


__all__ = ["PreloadReport", "extract_component_ids", "preload_components"]
