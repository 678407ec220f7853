import json
from pathlib import Path

import pytest

import mcp_server
from config import Settings
from db.sqlite_client import SQLiteClient
from runtime_state import RuntimeState


async def _install_services(tmp_path: Path, monkeypatch, name: str):
    settings = Settings(database_url=f"sqlite+aiosqlite:///{tmp_path / name}")
    client = SQLiteClient(settings.database_url, settings)
    await client.init_db()
    runtime = RuntimeState(settings)
    await runtime.ensure_started(client)
    monkeypatch.setattr(mcp_server, "_services", (client, runtime))
    return client, runtime


@pytest.mark.asyncio
async def test_remember_and_query_memory_round_trip(tmp_path: Path, monkeypatch) -> None:
    client, runtime = await _install_services(tmp_path, monkeypatch, "mcp-query.db")

    created = json.loads(
        await mcp_server.remember(
            "/work/mcp", "decision", "Adopt uv for installs", "Faster resolver in CI"
        )
    )
    assert created["ok"] is True
    assert created["entity"]["type"] == "decision"

    payload = json.loads(await mcp_server.query_memory("/work/mcp", "resolver", mode="fts"))
    assert payload["ok"] is True
    assert [item["title"] for item in payload["results"]] == ["Adopt uv for installs"]

    await runtime.heating_queue.flush()
    await runtime.shutdown()
    await client.close()


@pytest.mark.asyncio
async def test_tools_report_errors_as_json(tmp_path: Path, monkeypatch) -> None:
    client, runtime = await _install_services(tmp_path, monkeypatch, "mcp-errors.db")

    bad_kind = json.loads(await mcp_server.remember("/work/mcp", "note", "x", "y"))
    assert bad_kind["ok"] is False

    empty_query = json.loads(await mcp_server.query_memory("/work/mcp", "  "))
    assert empty_query == {"ok": False, "error": "query must not be empty."}

    bad_intent = json.loads(await mcp_server.get_context("/work/mcp", "refactor"))
    assert bad_intent["ok"] is False

    missing = json.loads(await mcp_server.reheat_entity("issues", 404))
    assert missing["ok"] is False

    await runtime.shutdown()
    await client.close()


@pytest.mark.asyncio
async def test_get_context_returns_rendered_text(tmp_path: Path, monkeypatch) -> None:
    client, runtime = await _install_services(tmp_path, monkeypatch, "mcp-context.db")

    await mcp_server.remember("/work/mcp", "file", "core/engine.py", "Scheduler core", fragility=9)
    empty = await mcp_server.get_context("/work/mcp", "read", files=["unknown.py"])
    assert empty.startswith("No relevant context found.")

    text = await mcp_server.get_context("/work/mcp", "edit", files=["core/engine.py"], budget=50)
    assert text.startswith("WARNINGS:\n  !! Fragility 9/10 [core/engine.py]")

    await runtime.heating_queue.flush()
    await runtime.shutdown()
    await client.close()


@pytest.mark.asyncio
async def test_consolidate_tool_runs_and_lists(tmp_path: Path, monkeypatch) -> None:
    client, runtime = await _install_services(tmp_path, monkeypatch, "mcp-consolidate.db")
    project = await client.ensure_project("/work/mcp")
    for index in range(10):
        await client.add_issue(project["id"], f"Old warning {index}", "Seen once")
    for _ in range(40):
        await client.start_session(project["id"])

    status = json.loads(await mcp_server.consolidate("/work/mcp", action="status"))
    assert status["ok"] is True

    run = json.loads(await mcp_server.consolidate("/work/mcp", entity_type="issues"))
    assert run["ok"] is True
    assert run["consolidated_count"] == 10

    listed = json.loads(await mcp_server.consolidate("/work/mcp", action="list"))
    assert len(listed["consolidations"]) == 1
    archived_id = listed["consolidations"][0]["source_ids"][0]

    reheated = json.loads(await mcp_server.reheat_entity("issues", archived_id))
    assert reheated["ok"] is True
    assert reheated["reheated"] is True

    unknown_action = json.loads(await mcp_server.consolidate("/work/mcp", action="purge"))
    assert unknown_action["ok"] is False

    index = json.loads(await mcp_server.index_status())
    assert index["ok"] is True
    assert index["consolidations"] == 1

    await runtime.shutdown()
    await client.close()
