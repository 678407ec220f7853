from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from api import knowledge_router, maintenance_router
from config import Settings
from db import SQLiteClient
from logging_setup import configure_logging
from runtime_state import RuntimeState

logger = structlog.get_logger(__name__)

APP_VERSION = "0.3.0"


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        resolved = settings or Settings.from_env()
        logger.info("api_starting", database_url=resolved.database_url)
        client = SQLiteClient(resolved.database_url, resolved)
        try:
            await client.init_db()
        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise RuntimeError("Failed to initialize SQLite during startup") from e
        runtime = RuntimeState(resolved)
        await runtime.ensure_started(client)
        app.state.client = client
        app.state.runtime = runtime

        yield

        logger.info("api_stopping")
        await runtime.shutdown()
        await client.close()
        app.state.client = None
        app.state.runtime = None

    app = FastAPI(
        title="Knowledge Ledger API",
        description="Persistent project knowledge for AI coding assistants",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(knowledge_router)
    app.include_router(maintenance_router)

    @app.get("/")
    async def root():
        return {"message": "Knowledge Ledger API", "version": APP_VERSION, "docs": "/docs"}

    @app.get("/health")
    async def health(request: Request):
        payload: Dict[str, Any] = {"status": "ok", "timestamp": _utc_iso_now()}
        client = getattr(request.app.state, "client", None)
        runtime = getattr(request.app.state, "runtime", None)
        if client is None or runtime is None:
            payload["status"] = "degraded"
            payload["index"] = {"index_available": False, "reason": "not_initialized"}
            return payload
        try:
            index_payload = await client.get_index_status()
            payload["index"] = index_payload
            payload["runtime"] = await runtime.status()
            if index_payload.get("degraded"):
                payload["status"] = "degraded"
        except Exception as e:
            logger.warning("health_check_failed", error=str(e))
            payload["status"] = "degraded"
            payload["index"] = {"index_available": False, "degraded": True, "reason": str(e)}
        return payload

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
