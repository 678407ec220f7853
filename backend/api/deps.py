from fastapi import HTTPException, Request, status

from db import SQLiteClient
from runtime_state import RuntimeState


def get_client(request: Request) -> SQLiteClient:
    client = getattr(request.app.state, "client", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="database not initialized",
        )
    return client


def get_runtime(request: Request) -> RuntimeState:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="runtime not initialized",
        )
    return runtime


def raise_http(exc: Exception) -> None:
    """Map domain errors onto HTTP status codes."""
    if isinstance(exc, LookupError):
        raise HTTPException(status_code=404, detail=str(exc).strip("'\""))
    if isinstance(exc, ValueError):
        raise HTTPException(status_code=400, detail=str(exc))
    raise exc
