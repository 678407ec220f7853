from pathlib import Path

from fastapi.testclient import TestClient

from config import Settings
from main import create_app

_API_KEY = "ledger-secret"
_HEADERS = {"X-MCP-API-Key": _API_KEY}


def _build_client(tmp_path: Path, name: str) -> TestClient:
    settings = Settings(database_url=f"sqlite+aiosqlite:///{tmp_path / name}")
    return TestClient(create_app(settings))


def _seed_cold_learnings(client: TestClient, count: int = 10) -> int:
    project = client.post("/knowledge/projects", json={"path": "/work/api"}).json()
    project_id = project["id"]
    for index in range(count):
        response = client.post(
            f"/knowledge/projects/{project_id}/learnings",
            json={"title": f"Retry budget {index}", "content": f"Budget detail {index}"},
        )
        assert response.status_code == 200
    for _ in range(40):
        assert client.post(f"/knowledge/projects/{project_id}/sessions").status_code == 200
    return project_id


def test_health_reports_index_and_runtime(tmp_path: Path) -> None:
    with _build_client(tmp_path, "health.db") as client:
        payload = client.get("/health").json()
    assert payload["status"] == "ok"
    assert payload["index"]["fts_available"] is True
    assert "heating_queue" in payload["runtime"]


def test_knowledge_writes_validate_input(tmp_path: Path) -> None:
    with _build_client(tmp_path, "validate.db") as client:
        project = client.post("/knowledge/projects", json={"path": "/work/validate"}).json()
        project_id = project["id"]

        bad_severity = client.post(
            f"/knowledge/projects/{project_id}/issues",
            json={"title": "Broken build", "severity": 11},
        )
        assert bad_severity.status_code == 422

        bad_outcome = client.post("/knowledge/decisions/1/outcome", json={"outcome": "maybe"})
        assert bad_outcome.status_code == 400

        missing = client.post("/knowledge/decisions/999/outcome", json={"outcome": "failed"})
        assert missing.status_code == 404

        missing_project = client.post("/knowledge/projects/999/sessions")
        assert missing_project.status_code == 404

        unknown_type = client.get("/knowledge/entities/widgets/1")
        assert unknown_type.status_code == 400


def test_query_and_context_endpoints(tmp_path: Path) -> None:
    with _build_client(tmp_path, "query.db") as client:
        project_id = client.post("/knowledge/projects", json={"path": "/work/q"}).json()["id"]
        client.post(
            f"/knowledge/projects/{project_id}/files",
            json={"path": "a.ts", "purpose": "Entry point", "fragility": 9},
        )
        client.post(
            f"/knowledge/projects/{project_id}/decisions",
            json={"title": "Use signals in a.ts", "decision": "Signals over stores"},
        )

        query = client.post(
            f"/knowledge/projects/{project_id}/query", json={"query": "signals", "mode": "fts"}
        )
        assert query.status_code == 200
        assert query.json()["results"][0]["title"] == "Use signals in a.ts"

        bad_mode = client.post(
            f"/knowledge/projects/{project_id}/query", json={"query": "signals", "mode": "x"}
        )
        assert bad_mode.status_code == 400

        context = client.post(
            f"/knowledge/projects/{project_id}/context",
            json={"intent": "edit", "files": ["a.ts"], "budget": 50},
        )
        assert context.status_code == 200
        body = context.json()
        assert body["text"].startswith("WARNINGS:\n  !! Fragility 9/10 [a.ts]")
        assert body["meta"]["tokens_used"] <= 50

        bad_intent = client.post(
            f"/knowledge/projects/{project_id}/context", json={"intent": "refactor"}
        )
        assert bad_intent.status_code == 400


def test_maintenance_requires_api_key(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("MCP_API_KEY", _API_KEY)
    with _build_client(tmp_path, "auth.db") as client:
        response = client.get("/maintenance/consolidate/status", params={"project_id": 1})
        assert response.status_code == 401
        assert response.json()["detail"]["error"] == "maintenance_auth_failed"

        bearer = client.get(
            "/maintenance/consolidate/status",
            params={"project_id": 1},
            headers={"Authorization": f"Bearer {_API_KEY}"},
        )
        assert bearer.status_code == 200


def test_maintenance_auth_rejects_when_key_not_configured(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("MCP_API_KEY", raising=False)
    monkeypatch.delenv("MCP_API_KEY_ALLOW_INSECURE_LOCAL", raising=False)
    with _build_client(tmp_path, "no-key.db") as client:
        response = client.post("/maintenance/decay", params={"project_id": 1})
    assert response.status_code == 401
    assert response.json()["detail"]["reason"] == "api_key_not_configured"


def test_maintenance_consolidation_flow(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("MCP_API_KEY", _API_KEY)
    with _build_client(tmp_path, "flow.db") as client:
        project_id = _seed_cold_learnings(client)

        status = client.get(
            "/maintenance/consolidate/status", params={"project_id": project_id}, headers=_HEADERS
        ).json()
        assert status["min_cold_for_consolidation"] == 10

        run = client.post(
            "/maintenance/consolidate/run",
            json={"project_id": project_id, "entity_type": "learnings"},
            headers=_HEADERS,
        )
        assert run.status_code == 200
        body = run.json()
        assert body["consolidated_count"] == 10
        source_ids = body["consolidations"][0]["source_ids"]

        listed = client.get(
            "/maintenance/consolidate/list", params={"project_id": project_id}, headers=_HEADERS
        ).json()
        assert listed["count"] == 1

        search = client.post(
            f"/knowledge/projects/{project_id}/query",
            json={"query": "Retry budget", "mode": "fts"},
        ).json()
        assert search["results"] == []

        reheated = client.post(
            f"/maintenance/reheat/learnings/{source_ids[0]}", headers=_HEADERS
        ).json()
        assert reheated["reheated"] is True
        assert reheated["entity"]["temperature"] == "warm"

        missing = client.post("/maintenance/reheat/learnings/9999", headers=_HEADERS)
        assert missing.status_code == 404

        bad_type = client.post(
            "/maintenance/consolidate/run",
            json={"project_id": project_id, "entity_type": "widgets"},
            headers=_HEADERS,
        )
        assert bad_type.status_code == 400

        runtime = client.get("/maintenance/runtime", headers=_HEADERS).json()
        assert runtime["index"]["consolidations"] == 1


def test_current_session_number_tracks_started_sessions(tmp_path: Path) -> None:
    with _build_client(tmp_path, "sessions.db") as client:
        project_id = client.post("/knowledge/projects", json={"path": "/work/s"}).json()["id"]
        current = client.get(f"/knowledge/projects/{project_id}/sessions/current").json()
        assert current == {"project_id": project_id, "session_number": 0}

        for _ in range(3):
            client.post(f"/knowledge/projects/{project_id}/sessions")
        current = client.get(f"/knowledge/projects/{project_id}/sessions/current").json()
        assert current["session_number"] == 3
