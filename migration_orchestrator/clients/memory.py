"""
Dict-backed entity client for local runs and tests.
"""

import copy
import uuid
from typing import Dict, List, Optional

from migration_orchestrator.clients.base import Entity, EntityClient
from migration_orchestrator.core.exceptions import ClientError, ErrorKind


class InMemoryEntityClient(EntityClient):
    """Keeps entities in memory, keyed by entity type and id."""

    def __init__(self, name: str = "memory", entities: Optional[Dict[str, List[Entity]]] = None):
        super().__init__()
        self._name = name
        self._entities: Dict[str, Dict[str, Entity]] = {}
        self.auth_refreshes = 0
        for entity_type, records in (entities or {}).items():
            for record in records:
                self._store(entity_type).setdefault(str(record["id"]), copy.deepcopy(record))

    @property
    def name(self) -> str:
        return self._name

    def _store(self, entity_type: str) -> Dict[str, Entity]:
        return self._entities.setdefault(entity_type, {})

    async def list_entities(self, entity_type: str) -> List[Entity]:
        return [copy.deepcopy(e) for e in self._store(entity_type).values()]

    async def create_entity(self, entity_type: str, data: Entity) -> str:
        entity_id = str(data.get("id") or uuid.uuid4())
        store = self._store(entity_type)
        if entity_id in store:
            raise ClientError(
                f"{entity_type} {entity_id} already exists on {self.name}",
                kind=ErrorKind.VALIDATION
            )
        store[entity_id] = {**copy.deepcopy(data), "id": entity_id}
        return entity_id

    async def update_entity(self, entity_type: str, entity_id: str, data: Entity) -> None:
        store = self._store(entity_type)
        if entity_id not in store:
            raise ClientError(f"{entity_type} {entity_id} not found on {self.name}", kind=ErrorKind.NOT_FOUND)
        store[entity_id].update(copy.deepcopy(data))
        store[entity_id]["id"] = entity_id

    async def delete_entity(self, entity_type: str, entity_id: str) -> None:
        store = self._store(entity_type)
        if store.pop(entity_id, None) is None:
            raise ClientError(f"{entity_type} {entity_id} not found on {self.name}", kind=ErrorKind.NOT_FOUND)

    async def refresh_authentication(self) -> None:
        self.auth_refreshes += 1

    def get(self, entity_type: str, entity_id: str) -> Optional[Entity]:
        entity = self._store(entity_type).get(entity_id)
        return copy.deepcopy(entity) if entity is not None else None

    def count(self, entity_type: Optional[str] = None) -> int:
        if entity_type is not None:
            return len(self._store(entity_type))
        return sum(len(store) for store in self._entities.values())
