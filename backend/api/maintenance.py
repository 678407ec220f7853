import hmac
import os
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, Field

from db import SQLiteClient
from lifecycle import (
    ConsolidationIntegrityError,
    consolidate,
    consolidation_status,
    decay_temperatures,
    list_consolidations,
    reheat,
    run_consolidation,
)
from runtime_state import RuntimeState

from .deps import get_client, get_runtime, raise_http

logger = structlog.get_logger(__name__)

_MCP_API_KEY_ENV = "MCP_API_KEY"
_MCP_API_KEY_HEADER = "X-MCP-API-Key"
_MCP_API_KEY_ALLOW_INSECURE_LOCAL_ENV = "MCP_API_KEY_ALLOW_INSECURE_LOCAL"
_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on"}
_LOOPBACK_CLIENT_HOSTS = {"127.0.0.1", "::1", "localhost"}


def _get_configured_mcp_api_key() -> str:
    return str(os.getenv(_MCP_API_KEY_ENV) or "").strip()


def _allow_insecure_local_without_api_key() -> bool:
    value = str(os.getenv(_MCP_API_KEY_ALLOW_INSECURE_LOCAL_ENV) or "").strip().lower()
    return value in _TRUTHY_ENV_VALUES


def _is_loopback_request(request: Request) -> bool:
    client = getattr(request, "client", None)
    host = str(getattr(client, "host", "") or "").strip().lower()
    return host in _LOOPBACK_CLIENT_HOSTS


def _extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not isinstance(authorization, str):
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def _auth_failure(reason: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "maintenance_auth_failed", "reason": reason},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_maintenance_api_key(
    request: Request,
    x_mcp_api_key: Optional[str] = Header(default=None, alias=_MCP_API_KEY_HEADER),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
    configured = _get_configured_mcp_api_key()
    if not configured:
        if _allow_insecure_local_without_api_key() and _is_loopback_request(request):
            return
        raise _auth_failure(
            "insecure_local_override_requires_loopback"
            if _allow_insecure_local_without_api_key()
            else "api_key_not_configured"
        )

    provided = str(x_mcp_api_key or "").strip() or _extract_bearer_token(authorization)
    if not provided or not hmac.compare_digest(provided, configured):
        raise _auth_failure("invalid_or_missing_api_key")


router = APIRouter(
    prefix="/maintenance",
    tags=["maintenance"],
    dependencies=[Depends(require_maintenance_api_key)],
)


class ConsolidationRunRequest(BaseModel):
    project_id: int = Field(ge=1)
    entity_type: Optional[str] = None
    background: bool = False


class BackfillRequest(BaseModel):
    project_id: int = Field(ge=1)
    entity_type: Optional[str] = None
    limit: int = Field(default=500, ge=1, le=5000)


@router.get("/consolidate/status")
async def get_consolidation_status(
    project_id: int,
    client: SQLiteClient = Depends(get_client),
    runtime: RuntimeState = Depends(get_runtime),
):
    payload = await consolidation_status(client, project_id)
    payload["scheduler"] = await runtime.consolidation.status()
    return payload


@router.post("/consolidate/run")
async def trigger_consolidation(
    payload: ConsolidationRunRequest,
    client: SQLiteClient = Depends(get_client),
    runtime: RuntimeState = Depends(get_runtime),
):
    if payload.background:
        return await runtime.consolidation.schedule(
            client, payload.project_id, force=True, reason="api"
        )
    if payload.entity_type is None:
        return await run_consolidation(client, payload.project_id)

    degrade_reasons: List[str] = []
    try:
        records = await consolidate(
            client,
            payload.project_id,
            payload.entity_type,
            degrade_reasons=degrade_reasons,
        )
    except ConsolidationIntegrityError as exc:
        raise HTTPException(
            status_code=500,
            detail={"error": "consolidation_integrity_error", "reason": str(exc)},
        )
    except (ValueError, LookupError) as exc:
        raise_http(exc)
    return {
        "ok": True,
        "project_id": payload.project_id,
        "entity_type": payload.entity_type,
        "consolidations": records,
        "consolidated_count": sum(int(item["entity_count"]) for item in records),
        "degraded": bool(degrade_reasons),
        "degrade_reasons": degrade_reasons,
    }


@router.get("/consolidate/list")
async def get_consolidations(
    project_id: int,
    entity_type: Optional[str] = None,
    limit: int = 20,
    client: SQLiteClient = Depends(get_client),
):
    try:
        items = await list_consolidations(
            client, project_id, entity_type=entity_type, limit=limit
        )
    except ValueError as exc:
        raise_http(exc)
    return {"project_id": project_id, "count": len(items), "consolidations": items}


@router.post("/reheat/{entity_type}/{entity_id}")
async def reheat_entity(
    entity_type: str,
    entity_id: int,
    client: SQLiteClient = Depends(get_client),
):
    try:
        return await reheat(client, entity_type, entity_id)
    except (ValueError, LookupError) as exc:
        raise_http(exc)


@router.post("/decay")
async def trigger_decay(project_id: int, client: SQLiteClient = Depends(get_client)):
    result = await decay_temperatures(client, project_id)
    return {"ok": True, "result": result}


@router.post("/embeddings/backfill")
async def backfill_embeddings(
    payload: BackfillRequest,
    client: SQLiteClient = Depends(get_client),
):
    try:
        result = await client.backfill_embeddings(
            payload.project_id, payload.entity_type, limit=payload.limit
        )
    except ValueError as exc:
        raise_http(exc)
    degraded = bool(result.get("degraded"))
    return {"ok": not degraded, "status": "degraded" if degraded else "ok", **result}


@router.get("/runtime")
async def get_runtime_status(
    client: SQLiteClient = Depends(get_client),
    runtime: RuntimeState = Depends(get_runtime),
) -> Dict[str, Any]:
    return {
        "runtime": await runtime.status(),
        "index": await client.get_index_status(),
    }
