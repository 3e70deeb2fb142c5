"""
components.py - Registry of renderable units per node.

Nodes reference their renderable unit by page id (``config.page``) or, failing
that, by node type. Units are registered as loaders so heavy screens can be
resolved lazily; a loader may be a plain callable or a coroutine function.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from guideflow.config.runtime_config import get_default_fallback_component
from guideflow.errors import (
    ComponentLoadError,
    ComponentNotFoundError,
    DuplicateComponentError,
)

from .events import utc_now

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_ID = "default-fallback"

ComponentLoader = Callable[[], Any]


@runtime_checkable
class ComponentRegistry(Protocol):
    """What the presentation coordinator needs from a component registry."""

    def has(self, component_id: str) -> bool:
        ...

    async def get(self, component_id: str) -> Any:
        ...


@dataclass
class ComponentRegistration:
    id: str
    loader: ComponentLoader
    metadata: Dict[str, Any] = field(default_factory=dict)
    registered_at: datetime = field(default_factory=utc_now)
    access_count: int = 0
    last_accessed: Optional[datetime] = None


class NodeComponentRegistry:
    """In-process ComponentRegistry.

    Args:
        fallback_id: Component returned by get() for unknown ids when it is
            registered. Defaults to the configured fallback component.
    """

    def __init__(self, fallback_id: Optional[str] = None):
        self.fallback_id = fallback_id or get_default_fallback_component()
        self._registrations: Dict[str, ComponentRegistration] = {}

    def register(
        self,
        component_id: str,
        loader: ComponentLoader,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Register a loader.

        Raises:
            DuplicateComponentError: If component_id is already registered.
        """
        if component_id in self._registrations:
            raise DuplicateComponentError(component_id)
        self._registrations[component_id] = ComponentRegistration(
            id=component_id, loader=loader, metadata=dict(metadata or {})
        )
        logger.debug("Registered component %s", component_id)

    def register_value(self, component_id: str, component: Any, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Register an already-built unit."""
        self.register(component_id, lambda: component, metadata)

    def unregister(self, component_id: str) -> bool:
        return self._registrations.pop(component_id, None) is not None

    def has(self, component_id: str) -> bool:
        return bool(component_id) and component_id in self._registrations

    def ids(self) -> List[str]:
        return sorted(self._registrations)

    def registration(self, component_id: str) -> Optional[ComponentRegistration]:
        return self._registrations.get(component_id)

    async def get(self, component_id: str) -> Any:
        """Resolve a unit, falling back to the fallback id for unknown ids.

        Raises:
            ComponentNotFoundError: Neither the id nor the fallback is registered.
            ComponentLoadError: The loader raised or returned None.
        """
        registration = self._registrations.get(component_id)
        if registration is None:
            fallback = self._registrations.get(self.fallback_id)
            if fallback is None:
                raise ComponentNotFoundError(component_id, fallback_id=self.fallback_id)
            logger.warning("Component %s not registered, using %s", component_id, self.fallback_id)
            registration = fallback
        return await self._load(registration)

    async def _load(self, registration: ComponentRegistration) -> Any:
        try:
            component = registration.loader()
            if inspect.isawaitable(component):
                component = await component
        except Exception as e:
            raise ComponentLoadError(registration.id, cause=e) from e
        if component is None:
            raise ComponentLoadError(registration.id)
        registration.access_count += 1
        registration.last_accessed = utc_now()
        return component

    def stats(self) -> Dict[str, Any]:
        return {
            "total": len(self._registrations),
            "components": {
                reg.id: {"access_count": reg.access_count, "metadata": reg.metadata}
                for reg in self._registrations.values()
            },
        }


__all__ = [
    "ComponentLoader",
    "ComponentRegistration",
    "ComponentRegistry",
    "DEFAULT_FALLBACK_ID",
    "NodeComponentRegistry",
]
