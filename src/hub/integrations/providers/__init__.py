"""Built-in provider integrations.

DEFINITIONS is the static table the default registry is built from.
build_definitions() builds the same table over a custom httpx transport.
"""

from __future__ import annotations

import httpx

from src.hub.integrations.capabilities import IntegrationDefinition
from src.hub.integrations.providers import github, linear, segment, shortcut, slack, webhook

_BUILDERS = (
    slack.build_definition,
    github.build_definition,
    linear.build_definition,
    shortcut.build_definition,
    webhook.build_definition,
    segment.build_definition,
)


def build_definitions(transport: httpx.AsyncBaseTransport | None = None) -> tuple[IntegrationDefinition, ...]:
    return tuple(builder(transport) for builder in _BUILDERS)


DEFINITIONS: tuple[IntegrationDefinition, ...] = build_definitions()

__all__ = ["DEFINITIONS", "build_definitions"]
