from pathlib import Path

import pytest

from config import Settings
from db.sqlite_client import Learning, SQLiteClient
from lifecycle import (
    classify_temperature,
    decay_temperatures,
    heat_entities,
    reheat,
    stored_tier,
)


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _new_client(tmp_path: Path, name: str) -> SQLiteClient:
    client = SQLiteClient(_sqlite_url(tmp_path / name), Settings())
    await client.init_db()
    return client


async def _advance_sessions(client: SQLiteClient, project_id: int, count: int) -> None:
    for _ in range(count):
        await client.start_session(project_id)


@pytest.mark.parametrize(
    "sessions, expected",
    [
        (0, "hot"),
        (3, "hot"),
        (4, "warm"),
        (10, "warm"),
        (11, "cold"),
        (30, "cold"),
        (31, "archived"),
        (500, "archived"),
    ],
)
def test_classify_temperature_tier_boundaries(sessions: int, expected: str) -> None:
    assert classify_temperature(sessions) == expected


@pytest.mark.parametrize("bad_value", [-1, 2.5, "3", None, True])
def test_classify_temperature_rejects_invalid_input(bad_value) -> None:
    with pytest.raises(ValueError):
        classify_temperature(bad_value)


def test_stored_tier_keeps_archival_candidates_cold() -> None:
    assert stored_tier(45) == "cold"
    assert stored_tier(2) == "hot"


@pytest.mark.asyncio
async def test_new_entities_start_hot_and_decay_with_sessions(tmp_path: Path) -> None:
    client = await _new_client(tmp_path, "decay.db")
    project = await client.ensure_project("/work/decay")
    created = await client.add_learning(project["id"], "Pin sqlite version", "Use 3.45")
    assert created["temperature"] == "hot"
    assert created["created_session"] == 0

    await _advance_sessions(client, project["id"], 5)
    first = await decay_temperatures(client, project["id"])
    assert first["current_session"] == 5
    assert first["changed"]["learnings"] == 1
    entity = await client.get_entity("learnings", created["id"], heat=False)
    assert entity["temperature"] == "warm"

    await _advance_sessions(client, project["id"], 10)
    await decay_temperatures(client, project["id"])
    entity = await client.get_entity("learnings", created["id"], heat=False)
    assert entity["temperature"] == "cold"

    # Unchanged tiers are not rewritten.
    again = await decay_temperatures(client, project["id"])
    assert again["changed"]["learnings"] == 0
    await client.close()


@pytest.mark.asyncio
async def test_heat_entities_marks_active_rows_hot(tmp_path: Path) -> None:
    client = await _new_client(tmp_path, "heat.db")
    project = await client.ensure_project("/work/heat")
    created = await client.add_decision(project["id"], "Adopt WAL", "Enable WAL journal")
    await _advance_sessions(client, project["id"], 20)
    await decay_temperatures(client, project["id"])

    heated = await heat_entities(client, project["id"], [("decisions", created["id"])])
    assert heated == 1
    entity = await client.get_entity("decisions", created["id"], heat=False)
    assert entity["temperature"] == "hot"
    assert entity["last_referenced_session"] == 20
    await client.close()


@pytest.mark.asyncio
async def test_get_entity_counts_as_a_reference(tmp_path: Path) -> None:
    client = await _new_client(tmp_path, "get-heat.db")
    project = await client.ensure_project("/work/get")
    created = await client.add_learning(project["id"], "Retry flaky tests", "Use rerun plugin")
    await _advance_sessions(client, project["id"], 12)

    entity = await client.get_entity("learnings", created["id"])
    assert entity["last_referenced_session"] == 12
    assert entity["temperature"] == "hot"
    await client.close()


@pytest.mark.asyncio
async def test_reheat_is_noop_for_active_entity_and_rejects_unknown_ids(tmp_path: Path) -> None:
    client = await _new_client(tmp_path, "reheat-noop.db")
    project = await client.ensure_project("/work/reheat")
    created = await client.add_learning(project["id"], "Cache invalidation", "Bust on deploy")

    outcome = await reheat(client, "learnings", created["id"])
    assert outcome["reheated"] is False
    assert outcome["entity"]["archived_at"] is None

    with pytest.raises(LookupError):
        await reheat(client, "learnings", 9999)
    with pytest.raises(ValueError):
        await reheat(client, "learnings", 0)
    with pytest.raises(ValueError):
        await reheat(client, "widgets", created["id"])
    await client.close()


@pytest.mark.asyncio
async def test_reheat_restores_archived_entity_once(tmp_path: Path) -> None:
    client = await _new_client(tmp_path, "reheat-archived.db")
    project = await client.ensure_project("/work/reheat-archived")
    created = await client.add_learning(project["id"], "Archived fact", "Old content")
    await _advance_sessions(client, project["id"], 3)

    async with client.session() as session:
        row = await session.get(Learning, created["id"])
        row.archived_at = row.created_at
        row.consolidated_into = 42
        row.temperature = "cold"

    first = await reheat(client, "learnings", created["id"])
    assert first["reheated"] is True
    assert first["entity"]["archived_at"] is None
    assert first["entity"]["consolidated_into"] is None
    assert first["entity"]["temperature"] == "warm"
    assert first["entity"]["last_referenced_session"] == 3

    second = await reheat(client, "learnings", created["id"])
    assert second["reheated"] is False
    assert second["entity"]["temperature"] == "warm"
    await client.close()
