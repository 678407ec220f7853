import json
import random
from pathlib import Path
from typing import Dict, List, Tuple

import pytest
from sqlalchemy import select

from config import Settings
from db.sqlite_client import Consolidation, Decision, FileRecord, Issue, Learning, SQLiteClient
from lifecycle import consolidate, decay_temperatures, heat_entities, reheat

_MODELS = {
    "files": FileRecord,
    "decisions": Decision,
    "issues": Issue,
    "learnings": Learning,
}


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _rows(client: SQLiteClient) -> Dict[str, List[Tuple[int, object, object]]]:
    rows = {}
    async with client.session() as session:
        for entity_type, model in _MODELS.items():
            result = await session.execute(
                select(model.id, model.archived_at, model.consolidated_into).order_by(model.id)
            )
            rows[entity_type] = [tuple(row) for row in result.all()]
    return rows


async def _assert_archive_link_holds(client: SQLiteClient, step: str) -> None:
    rows = await _rows(client)
    async with client.session() as session:
        records = {
            record.id: json.loads(record.source_ids)
            for record in (await session.execute(select(Consolidation))).scalars()
        }
    for entity_type, entries in rows.items():
        for entity_id, archived_at, consolidated_into in entries:
            assert (archived_at is None) == (consolidated_into is None), (
                step,
                entity_type,
                entity_id,
            )
            if consolidated_into is not None:
                assert entity_id in records[consolidated_into], (step, entity_type, entity_id)


async def _create(client: SQLiteClient, project_id: int, rng: random.Random, serial: int) -> None:
    kind = rng.choice(["learnings", "issues", "decisions"])
    if kind == "learnings":
        await client.add_learning(project_id, f"Note {serial}", f"Observed behaviour {serial}")
    elif kind == "issues":
        await client.add_issue(project_id, f"Issue {serial}", f"Symptom {serial}")
    else:
        await client.add_decision(project_id, f"Decision {serial}", f"Choice {serial}")


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", [3, 11, 29])
async def test_archived_iff_consolidated_across_random_transitions(
    tmp_path: Path, seed: int
) -> None:
    rng = random.Random(seed)
    client = SQLiteClient(_sqlite_url(tmp_path / f"invariant-{seed}.db"), Settings())
    await client.init_db()
    project_id = (await client.ensure_project("/work/invariant"))["id"]

    for serial in range(12):
        await _create(client, project_id, rng, serial)

    steps = ["create", "sessions", "decay", "consolidate", "reheat", "heat"]
    for index in range(80):
        step = rng.choice(steps)
        if step == "create":
            await _create(client, project_id, rng, 100 + index)
        elif step == "sessions":
            for _ in range(rng.randint(1, 15)):
                await client.start_session(project_id)
        elif step == "decay":
            await decay_temperatures(client, project_id)
        elif step == "consolidate":
            await consolidate(client, project_id, rng.choice(list(_MODELS)))
        else:
            rows = await _rows(client)
            entity_type = rng.choice(list(_MODELS))
            archived = [entry[0] for entry in rows[entity_type] if entry[1] is not None]
            active = [entry[0] for entry in rows[entity_type] if entry[1] is None]
            if step == "reheat" and archived:
                await reheat(client, entity_type, rng.choice(archived))
            elif step == "heat" and active:
                picked = rng.sample(active, min(3, len(active)))
                await heat_entities(client, project_id, [(entity_type, i) for i in picked])
        await _assert_archive_link_holds(client, f"{index}:{step}")

    for serial in range(10):
        await client.add_learning(project_id, f"Closing note {serial}", "Final batch")
    for _ in range(40):
        await client.start_session(project_id)
    records = await consolidate(client, project_id, "learnings")
    assert records
    await _assert_archive_link_holds(client, "final")

    rows = await _rows(client)
    archived_learning = next(entry[0] for entry in rows["learnings"] if entry[1] is not None)
    await reheat(client, "learnings", archived_learning)
    await _assert_archive_link_holds(client, "final-reheat")
    await client.close()
