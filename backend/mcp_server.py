"""
MCP Server for the knowledge ledger (SQLite backend).

This module provides the MCP (Model Context Protocol) interface an AI coding
assistant uses to record and retrieve project knowledge. Projects are
addressed by their filesystem path; the project row is created on first use.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import structlog
from mcp.server.fastmcp import FastMCP

from config import Settings
from context import ContextRequest, build_context
from db import SQLiteClient
from lifecycle import (
    ConsolidationIntegrityError,
    consolidate as consolidate_entities,
    consolidation_status,
    list_consolidations,
    reheat,
    run_consolidation,
)
from logging_setup import configure_logging
from retrieval import search
from runtime_state import RuntimeState

logger = structlog.get_logger(__name__)

_services: Optional[Tuple[SQLiteClient, RuntimeState]] = None
_services_guard = asyncio.Lock()


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


async def _get_services() -> Tuple[SQLiteClient, RuntimeState]:
    """Create the client and runtime on first use."""
    global _services
    async with _services_guard:
        if _services is None:
            settings = Settings.from_env()
            client = SQLiteClient(settings.database_url, settings)
            await client.init_db()
            runtime = RuntimeState(settings)
            await runtime.ensure_started(client)
            _services = (client, runtime)
        return _services


def set_services(client: SQLiteClient, runtime: RuntimeState) -> None:
    """Install an already initialized client and runtime."""
    global _services
    _services = (client, runtime)


async def close_services() -> None:
    global _services
    async with _services_guard:
        if _services is None:
            return
        client, runtime = _services
        _services = None
    await runtime.shutdown()
    await client.close()


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[None]:
    configure_logging()
    await _get_services()
    try:
        yield
    finally:
        await close_services()


mcp = FastMCP("Knowledge Ledger Interface", lifespan=lifespan)


# =============================================================================
# Helper Functions
# =============================================================================


def _to_json(payload: Dict[str, Any]) -> str:
    """Serialize payload for MCP string responses."""
    return json.dumps(payload, ensure_ascii=False, default=str)


def _tool_response(*, ok: bool, message: str, **extra: Any) -> str:
    payload: Dict[str, Any] = {"ok": bool(ok), "message": message}
    payload.update(extra)
    return _to_json(payload)


async def _project_id(client: SQLiteClient, project_path: str) -> int:
    project = await client.ensure_project(project_path)
    return int(project["id"])


# =============================================================================
# MCP Tools
# =============================================================================


@mcp.tool()
async def start_session(project_path: str, goal: Optional[str] = None) -> str:
    """
    Open a working session for a project.

    Starting a session advances the project's aging clock, recomputes
    entity temperatures and schedules consolidation when enough knowledge
    has gone cold.

    Args:
        project_path: Absolute path of the project root.
        goal: Optional one-line goal for the session.
    """
    try:
        client, runtime = await _get_services()
        project_id = await _project_id(client, project_path)
        started = await client.start_session(project_id, goal)
        lifecycle = await runtime.on_session_start(client, project_id)
        return _tool_response(
            ok=True, message="session started", session=started, lifecycle=lifecycle
        )
    except (ValueError, LookupError) as e:
        return _to_json({"ok": False, "error": str(e)})


@mcp.tool()
async def remember(
    project_path: str,
    kind: str,
    title: str,
    content: Optional[str] = None,
    reasoning: Optional[str] = None,
    affects: Optional[str] = None,
    confidence: int = 5,
    severity: int = 5,
    fragility: int = 0,
    category: Optional[str] = None,
    files: Optional[str] = None,
) -> str:
    """
    Record one piece of project knowledge.

    Args:
        project_path: Absolute path of the project root.
        kind: decision / issue / learning / file.
        title: Short title. For kind=file this is the file path.
        content: Decision text, issue description, learning body or file purpose.
        reasoning: Why a decision was made (decisions only).
        affects: Files or areas a decision affects (decisions only).
        confidence: 0-10 confidence (decisions and learnings).
        severity: 1-10 severity (issues only).
        fragility: 0-10 fragility (files only).
        category: Learning category (learnings only).
        files: Related files (learnings only).

    Examples:
        remember("/repo", "decision", "Use WAL mode", "Enable WAL for sqlite")
        remember("/repo", "file", "src/db.py", "Database access", fragility=8)
    """
    kind_value = (kind or "").strip().lower()
    try:
        client, _runtime = await _get_services()
        project_id = await _project_id(client, project_path)
        if kind_value == "decision":
            entity = await client.add_decision(
                project_id, title, content or "", reasoning, affects, confidence
            )
        elif kind_value == "issue":
            entity = await client.add_issue(project_id, title, content, severity)
        elif kind_value == "learning":
            entity = await client.add_learning(
                project_id, title, content or "", category, None, files, confidence
            )
        elif kind_value == "file":
            entity = await client.add_file(project_id, title, content, fragility)
        else:
            return _to_json(
                {
                    "ok": False,
                    "error": "kind must be one of: decision, issue, learning, file.",
                }
            )
    except (ValueError, LookupError) as e:
        return _to_json({"ok": False, "error": str(e)})
    return _tool_response(ok=True, message=f"{kind_value} recorded", entity=entity)


@mcp.tool()
async def query_memory(
    project_path: str,
    query: str,
    mode: str = "auto",
    entity_types: Optional[List[str]] = None,
    limit: int = 10,
) -> str:
    """
    Search project knowledge.

    Args:
        project_path: Absolute path of the project root.
        query: Search text.
        mode: fts / vector / hybrid / auto. auto uses hybrid when vectors exist.
        entity_types: Optional subset of files, decisions, issues, learnings.
        limit: Number of results, at most 10.

    Returns:
        Structured JSON string with results and degrade reasons.
    """
    if not isinstance(query, str) or not query.strip():
        return _to_json({"ok": False, "error": "query must not be empty."})
    try:
        client, runtime = await _get_services()
        project_id = await _project_id(client, project_path)
        payload = await search(
            client,
            query,
            project_id,
            mode,
            entity_types=entity_types,
            limit=limit,
            heating_queue=runtime.heating_queue,
        )
    except (ValueError, LookupError) as e:
        return _to_json({"ok": False, "error": str(e)})
    payload["ok"] = True
    return _to_json(payload)


@mcp.tool()
async def get_context(
    project_path: str,
    intent: str,
    files: Optional[List[str]] = None,
    query: Optional[str] = None,
    task: Optional[str] = None,
    budget: Optional[int] = None,
) -> str:
    """
    Build a token-budgeted context block for the current task.

    Args:
        project_path: Absolute path of the project root.
        intent: edit / read / debug / explore / plan.
        files: Files the task touches.
        query: Free-text question.
        task: Description of the task.
        budget: Token budget; defaults to CONTEXT_TOKEN_BUDGET.

    Returns:
        The rendered context text. Returns a JSON error object on bad input.
    """
    try:
        request = ContextRequest(intent=intent, files=list(files or []), query=query, task=task)
        client, runtime = await _get_services()
        project_id = await _project_id(client, project_path)
        payload = await build_context(
            client,
            project_id,
            request,
            budget=budget if budget is not None else client.settings.context_token_budget,
            heating_queue=runtime.heating_queue,
        )
    except (ValueError, LookupError) as e:
        return _to_json({"ok": False, "error": str(e)})
    return payload["text"]


@mcp.tool()
async def consolidate(
    project_path: str,
    entity_type: Optional[str] = None,
    action: str = "run",
) -> str:
    """
    Inspect or run consolidation of cold knowledge.

    Args:
        project_path: Absolute path of the project root.
        entity_type: Restrict a run or listing to one type.
        action: status / run / list.
    """
    action_value = (action or "run").strip().lower()
    try:
        client, _runtime = await _get_services()
        project_id = await _project_id(client, project_path)
        if action_value == "status":
            payload = await consolidation_status(client, project_id)
        elif action_value == "list":
            items = await list_consolidations(client, project_id, entity_type=entity_type)
            payload = {"project_id": project_id, "consolidations": items}
        elif action_value == "run":
            if entity_type:
                records = await consolidate_entities(client, project_id, entity_type)
                payload = {
                    "project_id": project_id,
                    "entity_type": entity_type,
                    "consolidations": records,
                    "consolidated_count": sum(int(r["entity_count"]) for r in records),
                }
            else:
                payload = await run_consolidation(client, project_id)
        else:
            return _to_json(
                {"ok": False, "error": "action must be one of: status, run, list."}
            )
    except ConsolidationIntegrityError as e:
        logger.error("consolidation_integrity_error", error=str(e))
        return _to_json({"ok": False, "error": str(e), "integrity_error": True})
    except (ValueError, LookupError) as e:
        return _to_json({"ok": False, "error": str(e)})
    payload.setdefault("ok", True)
    return _to_json(payload)


@mcp.tool()
async def reheat_entity(entity_type: str, entity_id: int) -> str:
    """
    Restore an archived entity to active (warm) status.

    Reheating an entity that is not archived changes nothing.
    """
    try:
        client, _runtime = await _get_services()
        outcome = await reheat(client, entity_type, entity_id)
    except (ValueError, LookupError) as e:
        return _to_json({"ok": False, "error": str(e)})
    message = "reheated" if outcome["reheated"] else "not archived; nothing to do"
    return _tool_response(ok=True, message=message, **outcome)


@mcp.tool()
async def index_status() -> str:
    """
    Get retrieval index availability, entity counts and runtime status.

    Returns:
        Structured JSON string.
    """
    try:
        client, runtime = await _get_services()
        payload = await client.get_index_status()
        payload["runtime"] = await runtime.status()
        payload.setdefault("ok", True)
        payload.setdefault("timestamp", _utc_iso_now())
        return _to_json(payload)
    except Exception as e:
        logger.warning("index_status_failed", error=str(e))
        return _to_json(
            {
                "ok": False,
                "index_available": False,
                "degraded": True,
                "reason": str(e),
                "timestamp": _utc_iso_now(),
            }
        )


if __name__ == "__main__":
    mcp.run()
