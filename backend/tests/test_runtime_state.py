from pathlib import Path

import pytest

from config import Settings
from db.sqlite_client import SQLiteClient
from runtime_state import ConsolidationScheduler, HeatingQueue, RuntimeState


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _new_client(tmp_path: Path, name: str) -> SQLiteClient:
    client = SQLiteClient(_sqlite_url(tmp_path / name), Settings())
    await client.init_db()
    return client


@pytest.mark.asyncio
async def test_heating_queue_applies_batches_and_dedupes_targets(tmp_path: Path) -> None:
    client = await _new_client(tmp_path, "heating.db")
    project = await client.ensure_project("/work/heating")
    created = await client.add_learning(project["id"], "Queue heating", "Writes go off path")
    for _ in range(5):
        await client.start_session(project["id"])

    queue = HeatingQueue(maxsize=8)
    await queue.ensure_started(client)
    queued = await queue.enqueue(
        project["id"], [("learnings", created["id"]), ("learnings", created["id"])]
    )
    assert queued == {"queued": True, "count": 1}

    await queue.flush()
    entity = await client.get_entity("learnings", created["id"], heat=False)
    assert entity["temperature"] == "hot"
    assert entity["last_referenced_session"] == 5

    status = await queue.status()
    assert status["running"] is True
    assert status["pending_targets"] == 0
    assert status["stats"]["heated"] == 1

    await queue.shutdown()
    assert (await queue.status())["running"] is False
    await client.close()


@pytest.mark.asyncio
async def test_heating_queue_drops_batches_when_full() -> None:
    queue = HeatingQueue(maxsize=1)
    first = await queue.enqueue(1, [("files", 1)])
    assert first["queued"] is True

    again = await queue.enqueue(1, [("files", 1)])
    assert again["queued"] is False
    assert again["deduped"] is True

    dropped = await queue.enqueue(1, [("files", 2)])
    assert dropped == {"queued": False, "reason": "queue_full", "count": 1}
    status = await queue.status()
    assert status["stats"]["dropped"] == 1
    assert status["pending_targets"] == 1


@pytest.mark.asyncio
async def test_scheduler_skips_and_throttles_when_nothing_is_cold(tmp_path: Path) -> None:
    client = await _new_client(tmp_path, "throttle.db")
    project = await client.ensure_project("/work/throttle")
    scheduler = ConsolidationScheduler(interval_seconds=1800)

    first = await scheduler.schedule(client, project["id"])
    assert first["scheduled"] is False
    assert first["reason"] == "not_enough_cold_entities"

    second = await scheduler.schedule(client, project["id"])
    assert second["throttled"] is True
    assert await scheduler.wait(project["id"]) is None
    await client.close()


@pytest.mark.asyncio
async def test_session_start_decays_and_runs_background_consolidation(tmp_path: Path) -> None:
    client = await _new_client(tmp_path, "session-start.db")
    project = await client.ensure_project("/work/session-start")
    for index in range(10):
        await client.add_learning(project["id"], f"Stale note {index}", "old detail")
    for _ in range(40):
        await client.start_session(project["id"])

    runtime = RuntimeState(Settings())
    await runtime.ensure_started(client)
    outcome = await runtime.on_session_start(client, project["id"])
    assert outcome["decay"]["changed"]["learnings"] == 10
    assert outcome["consolidation"]["scheduled"] is True

    finished = await runtime.consolidation.wait(project["id"])
    assert finished["ok"] is True
    assert finished["consolidated_count"] == 10
    assert finished["reason"] == "session_start"

    status = await runtime.status()
    assert status["consolidation"]["recent_runs"][0]["consolidated_count"] == 10
    await runtime.shutdown()
    await client.close()
