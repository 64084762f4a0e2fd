"""Collaborator client interfaces."""

from migration_orchestrator.clients.base import (
    ChangeDetector,
    EntityClient,
    SourceChangeDetector,
    entity_changed_since,
    parse_timestamp,
)
from migration_orchestrator.clients.memory import InMemoryEntityClient

__all__ = [
    "ChangeDetector",
    "EntityClient",
    "InMemoryEntityClient",
    "SourceChangeDetector",
    "entity_changed_since",
    "parse_timestamp",
]
