"""
Knowledge API - projects, sessions, entity writes and retrieval.

Writes go straight to the client. Retrieval endpoints hand heating writes
to the runtime heating queue so the response does not wait for them.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from config import DEFAULT_TOKEN_BUDGET, SEARCH_RESULT_CAP
from context import ContextRequest, build_context
from db import SQLiteClient
from retrieval import search
from runtime_state import RuntimeState

from .deps import get_client, get_runtime, raise_http

router = APIRouter(prefix="/knowledge", tags=["knowledge"])


class ProjectCreate(BaseModel):
    path: str = Field(min_length=1)
    name: Optional[str] = None


class SessionStart(BaseModel):
    goal: Optional[str] = None


class SessionEnd(BaseModel):
    outcome: Optional[str] = None


class FileUpsert(BaseModel):
    path: str = Field(min_length=1)
    purpose: Optional[str] = None
    fragility: int = Field(default=0, ge=0, le=10)
    fragility_signals: Optional[str] = None
    type: Optional[str] = None


class DecisionCreate(BaseModel):
    title: str = Field(min_length=1)
    decision: str = Field(min_length=1)
    reasoning: Optional[str] = None
    affects: Optional[str] = None
    confidence: int = Field(default=5, ge=0, le=10)


class DecisionOutcome(BaseModel):
    outcome: str
    notes: Optional[str] = None


class IssueCreate(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    severity: int = Field(default=5, ge=1, le=10)
    type: Optional[str] = None
    workaround: Optional[str] = None


class IssueResolve(BaseModel):
    resolution: Optional[str] = None


class LearningCreate(BaseModel):
    title: str = Field(min_length=1)
    content: str = Field(min_length=1)
    category: Optional[str] = None
    context: Optional[str] = None
    files: Optional[str] = None
    confidence: int = Field(default=5, ge=0, le=10)


class QueryRequest(BaseModel):
    query: str = Field(min_length=1)
    mode: str = "auto"
    entity_types: Optional[List[str]] = None
    limit: int = Field(default=SEARCH_RESULT_CAP, ge=1, le=SEARCH_RESULT_CAP)


class ContextRequestBody(BaseModel):
    intent: str
    files: List[str] = Field(default_factory=list)
    query: Optional[str] = None
    task: Optional[str] = None
    budget: Optional[int] = Field(default=None, ge=0)


# ---------------------------------------------------------------------------
# Projects & sessions
# ---------------------------------------------------------------------------


@router.post("/projects")
async def create_project(payload: ProjectCreate, client: SQLiteClient = Depends(get_client)):
    try:
        return await client.ensure_project(payload.path, payload.name)
    except ValueError as exc:
        raise_http(exc)


@router.post("/projects/{project_id}/sessions")
async def start_session(
    project_id: int,
    payload: Optional[SessionStart] = None,
    client: SQLiteClient = Depends(get_client),
    runtime: RuntimeState = Depends(get_runtime),
):
    try:
        started = await client.start_session(project_id, payload.goal if payload else None)
    except (ValueError, LookupError) as exc:
        raise_http(exc)
    started["lifecycle"] = await runtime.on_session_start(client, project_id)
    return started


@router.get("/projects/{project_id}/sessions/current")
async def current_session(project_id: int, client: SQLiteClient = Depends(get_client)):
    return {
        "project_id": project_id,
        "session_number": await client.current_session_number(project_id),
    }


@router.post("/sessions/{session_id}/end")
async def end_session(
    session_id: int,
    payload: Optional[SessionEnd] = None,
    client: SQLiteClient = Depends(get_client),
):
    try:
        return await client.end_session(session_id, payload.outcome if payload else None)
    except LookupError as exc:
        raise_http(exc)


# ---------------------------------------------------------------------------
# Entity writes
# ---------------------------------------------------------------------------


@router.post("/projects/{project_id}/files")
async def upsert_file(
    project_id: int, payload: FileUpsert, client: SQLiteClient = Depends(get_client)
):
    try:
        return await client.add_file(project_id, **payload.model_dump())
    except (ValueError, LookupError) as exc:
        raise_http(exc)


@router.post("/projects/{project_id}/decisions")
async def create_decision(
    project_id: int, payload: DecisionCreate, client: SQLiteClient = Depends(get_client)
):
    try:
        return await client.add_decision(project_id, **payload.model_dump())
    except (ValueError, LookupError) as exc:
        raise_http(exc)


@router.post("/decisions/{decision_id}/outcome")
async def record_decision_outcome(
    decision_id: int, payload: DecisionOutcome, client: SQLiteClient = Depends(get_client)
):
    try:
        return await client.set_decision_outcome(decision_id, payload.outcome, payload.notes)
    except (ValueError, LookupError) as exc:
        raise_http(exc)


@router.post("/projects/{project_id}/issues")
async def create_issue(
    project_id: int, payload: IssueCreate, client: SQLiteClient = Depends(get_client)
):
    try:
        return await client.add_issue(project_id, **payload.model_dump())
    except (ValueError, LookupError) as exc:
        raise_http(exc)


@router.post("/issues/{issue_id}/resolve")
async def resolve_issue(
    issue_id: int,
    payload: Optional[IssueResolve] = None,
    client: SQLiteClient = Depends(get_client),
):
    try:
        return await client.resolve_issue(issue_id, payload.resolution if payload else None)
    except LookupError as exc:
        raise_http(exc)


@router.post("/projects/{project_id}/learnings")
async def create_learning(
    project_id: int, payload: LearningCreate, client: SQLiteClient = Depends(get_client)
):
    try:
        return await client.add_learning(project_id, **payload.model_dump())
    except (ValueError, LookupError) as exc:
        raise_http(exc)


# ---------------------------------------------------------------------------
# Reads & retrieval
# ---------------------------------------------------------------------------


@router.get("/entities/{entity_type}/{entity_id}")
async def get_entity(
    entity_type: str, entity_id: int, client: SQLiteClient = Depends(get_client)
):
    try:
        entity = await client.get_entity(entity_type, entity_id)
    except ValueError as exc:
        raise_http(exc)
    if entity is None:
        raise_http(LookupError(f"{entity_type} {entity_id} not found"))
    return entity


@router.get("/projects/{project_id}/hot")
async def get_hot_entities(
    project_id: int,
    limit: int = Query(default=5, ge=1, le=50),
    client: SQLiteClient = Depends(get_client),
):
    return await client.get_hot_entities(project_id, limit=limit)


@router.post("/projects/{project_id}/query")
async def query_knowledge(
    project_id: int,
    payload: QueryRequest,
    client: SQLiteClient = Depends(get_client),
    runtime: RuntimeState = Depends(get_runtime),
):
    try:
        return await search(
            client,
            payload.query,
            project_id,
            payload.mode,
            entity_types=payload.entity_types,
            limit=payload.limit,
            heating_queue=runtime.heating_queue,
        )
    except ValueError as exc:
        raise_http(exc)


@router.post("/projects/{project_id}/context")
async def get_context(
    project_id: int,
    payload: ContextRequestBody,
    client: SQLiteClient = Depends(get_client),
    runtime: RuntimeState = Depends(get_runtime),
):
    try:
        request = ContextRequest(
            intent=payload.intent,
            files=payload.files,
            query=payload.query,
            task=payload.task,
        )
    except ValueError as exc:
        raise_http(exc)
    budget = payload.budget
    if budget is None:
        budget = client.settings.context_token_budget or DEFAULT_TOKEN_BUDGET
    return await build_context(
        client,
        project_id,
        request,
        budget=budget,
        heating_queue=runtime.heating_queue,
    )
