"""Integration definition registry.

A static table of IntegrationDefinition objects keyed by integration type.
Built once at import time from the provider modules; there is no dynamic
plugin loading. A module-level singleton is provided via
get_integration_registry() for application-wide access.
"""

from __future__ import annotations

from collections.abc import Iterable
from functools import lru_cache
from types import MappingProxyType

import structlog

from src.hub.integrations.capabilities import IntegrationDefinition
from src.hub.integrations.schemas import CatalogEntry

logger = structlog.get_logger(__name__)


class IntegrationRegistry:
    """Immutable lookup over integration definitions.

    Args:
        definitions: Definitions to register. Duplicate ids are rejected.

    Raises:
        ValueError: If two definitions share an id.
    """

    def __init__(self, definitions: Iterable[IntegrationDefinition]) -> None:
        table: dict[str, IntegrationDefinition] = {}
        for definition in definitions:
            if definition.id in table:
                raise ValueError(f"Integration already registered: {definition.id}")
            table[definition.id] = definition
        self._definitions = MappingProxyType(table)

    def __contains__(self, integration_type: object) -> bool:
        return integration_type in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def get(self, integration_type: str) -> IntegrationDefinition | None:
        """Get a definition by type, or None when unknown."""
        return self._definitions.get(integration_type)

    def all(self) -> list[IntegrationDefinition]:
        return list(self._definitions.values())

    def list_catalog(self, configured_credential_types: Iterable[str] = ()) -> list[CatalogEntry]:
        """List every definition annotated with availability.

        Args:
            configured_credential_types: Integration types for which an admin
                has saved platform credentials.

        Returns:
            One CatalogEntry per definition, capability-less ones included.
            ``available`` is True when no platform credentials are needed or
            they have been configured; ``configurable`` is True when the
            definition declares platform credential fields.
        """
        configured = set(configured_credential_types)
        entries = []
        for definition in self._definitions.values():
            needs_credentials = bool(definition.platform_credentials)
            entries.append(
                CatalogEntry(
                    id=definition.id,
                    name=definition.catalog.name,
                    category=definition.catalog.category,
                    description=definition.catalog.description,
                    capabilities=definition.capabilities,
                    available=not needs_credentials or definition.id in configured,
                    configurable=needs_credentials,
                )
            )
        return entries

    def list_types_with_segment_sync(self) -> list[str]:
        """Types whose user-sync capability pushes segment membership."""
        return [d.id for d in self._definitions.values() if d.segment_sync is not None]

    def list_types_with_hooks(self) -> list[str]:
        return [d.id for d in self._definitions.values() if d.hook is not None]


def build_default_registry() -> IntegrationRegistry:
    """Registry over every built-in provider definition."""
    from src.hub.integrations.providers import DEFINITIONS

    registry = IntegrationRegistry(DEFINITIONS)
    logger.debug("integrations.registry_built", types=sorted(d.id for d in registry.all()))
    return registry


@lru_cache
def get_integration_registry() -> IntegrationRegistry:
    """Singleton registry instance."""
    return build_default_registry()
