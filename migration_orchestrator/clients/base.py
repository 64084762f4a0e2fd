"""
Collaborator interfaces consumed by the orchestration core.

Platform API clients live outside this package. The engines only need
the narrow ``EntityClient`` surface: list, create, update and delete
entities of a type, and refresh credentials. Clients signal failures by
raising ``ClientError`` with an ``ErrorKind``.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional

from dateutil import parser as date_parser

from migration_orchestrator.models.jobs import ChangeDetectionRule, ChangeType, DataDelta
from migration_orchestrator.utils.helpers import generate_id

Entity = Dict[str, Any]

TIMESTAMP_FIELDS = ("created_at", "modified_at", "deleted_at", "is_deleted")


class EntityClient(ABC):
    """
    Base class for source and destination platform clients.

    Entities are plain dicts carrying an ``id`` key. Timestamp fields
    (``created_at``, ``modified_at``, ``deleted_at``) are optional and are
    used by change detection and incremental backups.
    """

    def __init__(self):
        self.logger = logging.getLogger(f"{self.__class__.__module__}.{self.__class__.__name__}")

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the platform name used in logs and snapshots."""
        pass

    @abstractmethod
    async def list_entities(self, entity_type: str) -> List[Entity]:
        """
        Fetch all entities of a type.

        Args:
            entity_type: Entity type name, e.g. ``"Queue"``

        Returns:
            List of entity dicts
        """
        pass

    @abstractmethod
    async def create_entity(self, entity_type: str, data: Entity) -> str:
        """
        Create an entity.

        Returns:
            The id of the created entity
        """
        pass

    @abstractmethod
    async def update_entity(self, entity_type: str, entity_id: str, data: Entity) -> None:
        """Update fields of an existing entity."""
        pass

    @abstractmethod
    async def delete_entity(self, entity_type: str, entity_id: str) -> None:
        """Delete an entity."""
        pass

    async def refresh_authentication(self) -> None:
        """Renew credentials; clients without expiring tokens need not override."""
        self.logger.debug(f"{self.name}: authentication refresh requested")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Read an entity timestamp given as datetime or ISO-8601 string."""
    if value is None:
        return None
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str):
        try:
            moment = date_parser.isoparse(value)
        except ValueError:
            return None
    else:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment


def entity_changed_since(entity: Entity, since: datetime) -> bool:
    """True if any timestamp on the entity is later than ``since``."""
    for key in ("created_at", "modified_at", "deleted_at"):
        moment = parse_timestamp(entity.get(key))
        if moment is not None and moment > since:
            return True
    return False


class ChangeDetector(ABC):
    """Produces the deltas an incremental job applies."""

    @abstractmethod
    async def detect_changes(
        self,
        since: datetime,
        rules: Optional[List[ChangeDetectionRule]] = None
    ) -> List[DataDelta]:
        """Return deltas observed after ``since``."""
        pass


class SourceChangeDetector(ChangeDetector):
    """
    Derives deltas from entity timestamps reported by the source client.

    A ``deleted_at`` after the watermark (or ``is_deleted`` on an entity
    modified after it) yields DELETE, a ``created_at`` after it yields
    CREATE, and otherwise a ``modified_at`` after it yields UPDATE. Active
    rules restrict the scanned entity types and set priority and the
    monitored fields.
    """

    def __init__(self, client: EntityClient, entity_types: List[str]):
        self.client = client
        self.entity_types = list(entity_types)

    async def detect_changes(
        self,
        since: datetime,
        rules: Optional[List[ChangeDetectionRule]] = None
    ) -> List[DataDelta]:
        active_rules = {r.entity_type: r for r in (rules or []) if r.is_active}
        entity_types = list(active_rules) if active_rules else self.entity_types

        deltas = []
        for entity_type in entity_types:
            rule = active_rules.get(entity_type)
            for entity in await self.client.list_entities(entity_type):
                delta = self._to_delta(entity_type, entity, since, rule)
                if delta is not None:
                    deltas.append(delta)

        deltas.sort(key=DataDelta.sort_key)
        return deltas

    def _to_delta(
        self,
        entity_type: str,
        entity: Entity,
        since: datetime,
        rule: Optional[ChangeDetectionRule]
    ) -> Optional[DataDelta]:
        if "id" not in entity:
            return None

        created_at = parse_timestamp(entity.get("created_at"))
        modified_at = parse_timestamp(entity.get("modified_at"))
        deleted_at = parse_timestamp(entity.get("deleted_at"))
        values = {k: v for k, v in entity.items() if k not in TIMESTAMP_FIELDS}

        if deleted_at is not None or entity.get("is_deleted"):
            changed_at = deleted_at or modified_at
            if changed_at is None or changed_at <= since:
                return None
            change_type = ChangeType.DELETE
            old_values, new_values = values, {}
            changed_fields: List[str] = []
        elif created_at is not None and created_at > since:
            changed_at = created_at
            change_type = ChangeType.CREATE
            old_values, new_values = {}, values
            changed_fields = sorted(k for k in values if k != "id")
        elif modified_at is not None and modified_at > since:
            changed_at = modified_at
            change_type = ChangeType.UPDATE
            monitored = rule.monitored_fields if rule else []
            if monitored:
                new_values = {k: values[k] for k in monitored if k in values}
                changed_fields = [k for k in monitored if k in values]
            else:
                new_values = {k: v for k, v in values.items() if k != "id"}
                changed_fields = sorted(new_values)
            old_values = {}
        else:
            return None

        return DataDelta(
            delta_id=generate_id(),
            entity_type=entity_type,
            entity_id=str(entity["id"]),
            change_type=change_type,
            changed_at=changed_at,
            changed_fields=changed_fields,
            old_values=old_values,
            new_values=new_values,
            priority=rule.priority if rule else 1,
            metadata={"detector": self.client.name},
        )
