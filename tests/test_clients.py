"""
Tests for the in-memory client and timestamp-based change detection.
"""

from datetime import timedelta

import pytest

from migration_orchestrator.clients.base import SourceChangeDetector, entity_changed_since, parse_timestamp
from migration_orchestrator.clients.memory import InMemoryEntityClient
from migration_orchestrator.core.exceptions import ClientError, ErrorKind
from migration_orchestrator.models.jobs import ChangeDetectionRule, ChangeType

from conftest import T0


class TestInMemoryEntityClient:

    @pytest.mark.asyncio
    async def test_crud(self):
        client = InMemoryEntityClient("dest")

        entity_id = await client.create_entity("Queue", {"id": "q1", "name": "Support"})
        await client.update_entity("Queue", "q1", {"name": "Help"})

        assert entity_id == "q1"
        assert client.get("Queue", "q1") == {"id": "q1", "name": "Help"}

        await client.delete_entity("Queue", "q1")
        assert client.count() == 0

    @pytest.mark.asyncio
    async def test_generates_id_when_missing(self):
        client = InMemoryEntityClient()
        entity_id = await client.create_entity("Skill", {"name": "French"})
        assert client.get("Skill", entity_id)["name"] == "French"

    @pytest.mark.asyncio
    async def test_errors_carry_kind(self):
        client = InMemoryEntityClient(entities={"Queue": [{"id": "q1"}]})

        with pytest.raises(ClientError) as exc_info:
            await client.create_entity("Queue", {"id": "q1"})
        assert exc_info.value.kind == ErrorKind.VALIDATION

        with pytest.raises(ClientError) as exc_info:
            await client.update_entity("Queue", "missing", {})
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_list_returns_copies(self):
        client = InMemoryEntityClient(entities={"Queue": [{"id": "q1", "name": "a"}]})
        records = await client.list_entities("Queue")
        records[0]["name"] = "changed"
        assert client.get("Queue", "q1")["name"] == "a"


class TestTimestamps:

    def test_parse_timestamp(self):
        assert parse_timestamp("2024-01-01T00:00:00Z") == T0
        assert parse_timestamp("2024-01-01T00:00:00") == T0
        assert parse_timestamp(T0) == T0
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(None) is None

    def test_entity_changed_since(self):
        entity = {"id": "1", "created_at": T0.isoformat(), "modified_at": (T0 + timedelta(days=1)).isoformat()}
        assert entity_changed_since(entity, T0)
        assert not entity_changed_since(entity, T0 + timedelta(days=2))
        assert not entity_changed_since({"id": "2"}, T0)


class TestSourceChangeDetector:

    @pytest.fixture
    def client(self):
        return InMemoryEntityClient("source", {
            "Queue": [
                {"id": "new", "name": "New", "created_at": (T0 + timedelta(hours=2)).isoformat()},
                {
                    "id": "changed",
                    "name": "Changed",
                    "priority": 3,
                    "created_at": (T0 - timedelta(days=1)).isoformat(),
                    "modified_at": (T0 + timedelta(hours=1)).isoformat(),
                },
                {
                    "id": "gone",
                    "created_at": (T0 - timedelta(days=1)).isoformat(),
                    "deleted_at": (T0 + timedelta(hours=3)).isoformat(),
                },
                {"id": "old", "created_at": (T0 - timedelta(days=1)).isoformat()},
            ],
            "Skill": [
                {"id": "s1", "created_at": (T0 + timedelta(hours=4)).isoformat()},
            ],
        })

    @pytest.mark.asyncio
    async def test_detects_create_update_delete(self, client):
        detector = SourceChangeDetector(client, ["Queue"])

        deltas = await detector.detect_changes(T0)

        kinds = {d.entity_id: d.change_type for d in deltas}
        assert kinds == {"new": ChangeType.CREATE, "changed": ChangeType.UPDATE, "gone": ChangeType.DELETE}
        assert [d.entity_id for d in deltas] == ["changed", "new", "gone"]
        assert all("created_at" not in d.new_values for d in deltas)

    @pytest.mark.asyncio
    async def test_rules_restrict_types_and_set_priority(self, client):
        detector = SourceChangeDetector(client, ["Queue", "Skill"])
        rules = [
            ChangeDetectionRule(rule_id="r1", entity_type="Queue", monitored_fields=["name"], priority=2),
            ChangeDetectionRule(rule_id="r2", entity_type="Skill", is_active=False),
        ]

        deltas = await detector.detect_changes(T0, rules)

        assert {d.entity_type for d in deltas} == {"Queue"}
        assert all(d.priority == 2 for d in deltas)
        update = next(d for d in deltas if d.change_type == ChangeType.UPDATE)
        assert update.new_values == {"name": "Changed"}
        assert update.changed_fields == ["name"]

    @pytest.mark.asyncio
    async def test_nothing_after_watermark(self, client):
        detector = SourceChangeDetector(client, ["Queue", "Skill"])
        assert await detector.detect_changes(T0 + timedelta(days=1)) == []
