import json
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import pytest
from sqlalchemy import select

from config import Settings
from db.sqlite_client import Consolidation, Decision, Learning, SQLiteClient
from lifecycle import (
    ConsolidationIntegrityError,
    build_summary,
    consolidate,
    consolidation_status,
    list_consolidations,
    run_consolidation,
    should_consolidate,
)
from lifecycle import consolidation as consolidation_module


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


class _FailingEmbedder:
    available = True
    timeout_sec = 1.0
    model = "broken"

    async def embed(self, text: str) -> Optional[List[float]]:
        raise RuntimeError("embedding backend exploded")


class _FakeSummarizer:
    available = True
    timeout_sec = 1.0

    def __init__(self) -> None:
        self.prompts: List[str] = []

    async def summarize(self, prompt: str) -> Optional[str]:
        self.prompts.append(prompt)
        return "Ten notes about connection pooling."


async def _new_client(tmp_path: Path, name: str, **kwargs) -> SQLiteClient:
    client = SQLiteClient(_sqlite_url(tmp_path / name), Settings(), **kwargs)
    await client.init_db()
    return client


async def _seed_cold_learnings(client: SQLiteClient, count: int, sessions_ago: int = 40):
    project = await client.ensure_project("/work/consolidation")
    ids = []
    for index in range(count):
        created = await client.add_learning(
            project["id"], f"Pooling note {index}", f"Connection pool detail number {index}"
        )
        ids.append(created["id"])
    for _ in range(sessions_ago):
        await client.start_session(project["id"])
    return project["id"], ids


async def _archived_ids(client: SQLiteClient, model) -> List[int]:
    async with client.session() as session:
        result = await session.execute(
            select(model.id).where(model.archived_at.is_not(None)).order_by(model.id)
        )
        return [row[0] for row in result.all()]


def test_build_summary_lists_titles_and_excerpts() -> None:
    items = [{"id": i, "title": f"T{i}", "content": "x" * 300} for i in range(5)]
    summary = build_summary(items, "learnings")
    assert summary["title"] == "Consolidated learnings (5 items): T0, T1, T2..."
    lines = summary["content"].splitlines()
    assert len(lines) == 5
    assert lines[0] == "- T0: " + "x" * 200


@pytest.mark.asyncio
async def test_consolidate_skips_when_fewer_than_minimum_are_cold(tmp_path: Path) -> None:
    client = await _new_client(tmp_path, "nine.db")
    project_id, _ids = await _seed_cold_learnings(client, 9)

    assert await consolidate(client, project_id, "learnings") == []
    assert await _archived_ids(client, Learning) == []
    assert await should_consolidate(client, project_id) is False
    await client.close()


@pytest.mark.asyncio
async def test_consolidate_archives_one_batch_with_back_reference(tmp_path: Path) -> None:
    client = await _new_client(tmp_path, "ten.db")
    project_id, ids = await _seed_cold_learnings(client, 10)

    records = await consolidate(client, project_id, "learnings")
    assert len(records) == 1
    record = records[0]
    assert record["entity_count"] == 10
    assert record["summary_method"] == "extractive"
    assert record["confidence"] == pytest.approx(0.8)
    assert sorted(record["source_ids"]) == ids
    assert record["summary_title"].startswith("Consolidated learnings (10 items)")

    async with client.session() as session:
        rows = (await session.execute(select(Learning))).scalars().all()
        for row in rows:
            # archived_at and consolidated_into move together
            assert row.archived_at is not None
            assert row.consolidated_into == record["id"]
    await client.close()


@pytest.mark.asyncio
async def test_consolidate_leaves_trailing_partial_batch_active(tmp_path: Path) -> None:
    client = await _new_client(tmp_path, "fifteen.db")
    project_id, ids = await _seed_cold_learnings(client, 15)

    records = await consolidate(client, project_id, "learnings")
    assert len(records) == 1
    archived = await _archived_ids(client, Learning)
    assert len(archived) == 10
    # Oldest reference first.
    assert archived == ids[:10]
    await client.close()


@pytest.mark.asyncio
async def test_consolidate_ignores_recently_referenced_entities(tmp_path: Path) -> None:
    client = await _new_client(tmp_path, "recent.db")
    project_id, ids = await _seed_cold_learnings(client, 10)
    await client.get_entity("learnings", ids[0])

    assert await consolidate(client, project_id, "learnings") == []
    await client.close()


@pytest.mark.asyncio
async def test_embedding_failure_does_not_block_consolidation(tmp_path: Path) -> None:
    client = await _new_client(tmp_path, "embed-fail.db", embedder=_FailingEmbedder())
    project_id, _ids = await _seed_cold_learnings(client, 10)

    reasons: List[str] = []
    records = await consolidate(client, project_id, "learnings", degrade_reasons=reasons)
    assert len(records) == 1
    assert records[0]["has_embedding"] is False
    assert "embedding_failed" in reasons
    await client.close()


@pytest.mark.asyncio
async def test_llm_summary_is_used_when_available(tmp_path: Path) -> None:
    summarizer = _FakeSummarizer()
    client = await _new_client(tmp_path, "llm.db", summarizer=summarizer)
    project_id, _ids = await _seed_cold_learnings(client, 10)

    records = await consolidate(client, project_id, "learnings")
    assert records[0]["summary_method"] == "llm"
    assert records[0]["summary_content"] == "Ten notes about connection pooling."
    assert len(summarizer.prompts) == 1
    await client.close()


@pytest.mark.asyncio
async def test_partial_archive_rolls_back_the_batch(tmp_path: Path, monkeypatch) -> None:
    client = await _new_client(tmp_path, "integrity.db")
    project_id, _ids = await _seed_cold_learnings(client, 10)
    repo = client.repository("learnings")
    original_archive = repo.archive

    async def _archive_all_but_one(session, ids, consolidation_id, archived_at):
        return await original_archive(session, list(ids)[:-1], consolidation_id, archived_at)

    monkeypatch.setattr(repo, "archive", _archive_all_but_one)

    with pytest.raises(ConsolidationIntegrityError):
        await consolidate(client, project_id, "learnings")

    assert await _archived_ids(client, Learning) == []
    async with client.session() as session:
        count = (await session.execute(select(Consolidation.id))).all()
    assert count == []
    await client.close()


@pytest.mark.asyncio
async def test_run_consolidation_isolates_failures_per_type(tmp_path: Path, monkeypatch) -> None:
    client = await _new_client(tmp_path, "isolation.db")
    project_id, _ids = await _seed_cold_learnings(client, 10)
    original = consolidation_module.consolidate

    async def _decisions_fail(client_arg, project_arg, entity_type, **kwargs):
        if entity_type == "decisions":
            raise RuntimeError("decisions table locked")
        return await original(client_arg, project_arg, entity_type, **kwargs)

    monkeypatch.setattr(consolidation_module, "consolidate", _decisions_fail)

    payload = await run_consolidation(client, project_id)
    assert payload["ok"] is False
    assert payload["results"]["decisions"]["ok"] is False
    assert payload["results"]["learnings"]["ok"] is True
    assert payload["results"]["learnings"]["archived"] == 10
    assert payload["consolidated_count"] == 10
    assert await _archived_ids(client, Decision) == []
    await client.close()


@pytest.mark.asyncio
async def test_status_and_listing_report_consolidations(tmp_path: Path) -> None:
    client = await _new_client(tmp_path, "status.db")
    project_id, _ids = await _seed_cold_learnings(client, 10)

    before = await consolidation_status(client, project_id)
    assert before["ready"] is False  # tiers have not been recomputed yet

    await run_consolidation(client, project_id)
    after = await consolidation_status(client, project_id)
    assert after["total_consolidations"] == 1
    assert after["entities"]["learnings"]["archived"] == 10
    assert after["entities"]["learnings"]["cold"] == 0

    listed = await list_consolidations(client, project_id)
    assert len(listed) == 1
    assert listed[0]["entity_type"] == "learnings"
    assert json.loads(json.dumps(listed[0]["source_ids"])) == listed[0]["source_ids"]
    assert await list_consolidations(client, project_id, entity_type="issues") == []
    await client.close()


@pytest.mark.asyncio
async def test_untiered_rows_stay_eligible_through_the_decay_pass(tmp_path: Path) -> None:
    client = await _new_client(tmp_path, "untiered.db")
    project = await client.ensure_project("/work/imported")
    project_id = project["id"]
    await client.start_session(project_id)
    async with client.session() as session:
        for index in range(10):
            session.add(
                Learning(
                    project_id=project_id,
                    title=f"Imported note {index}",
                    content=f"Carried over from the old tracker {index}",
                    temperature=None,
                    last_referenced_at=None,
                    created_session=None,
                )
            )

    assert await should_consolidate(client, project_id) is True
    status = await consolidation_status(client, project_id)
    assert status["entities"]["learnings"]["cold"] == 10

    records = await consolidate(client, project_id, "learnings")
    assert len(records) == 1
    assert records[0]["entity_count"] == 10
    assert len(await _archived_ids(client, Learning)) == 10
    assert await should_consolidate(client, project_id) is False
    await client.close()


@pytest.mark.asyncio
async def test_ready_count_ignores_recently_referenced_untiered_rows(tmp_path: Path) -> None:
    client = await _new_client(tmp_path, "untiered-recent.db")
    project = await client.ensure_project("/work/imported-recent")
    project_id = project["id"]
    for _ in range(3):
        await client.start_session(project_id)
    async with client.session() as session:
        for index in range(10):
            session.add(
                Learning(
                    project_id=project_id,
                    title=f"Recently read note {index}",
                    content="Looked at two sessions ago",
                    temperature=None,
                    last_referenced_at=datetime(2026, 1, 1),
                    last_referenced_session=2,
                )
            )

    assert await should_consolidate(client, project_id) is False
    assert await consolidate(client, project_id, "learnings") == []
    await client.close()
