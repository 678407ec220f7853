"""
SQLite Client for the knowledge ledger

This module implements the SQLite-based knowledge storage with:
- Projects and numbered sessions (the clock that ages knowledge)
- Four entity tables (files, decisions, issues, learnings) sharing a
  temperature/archival lifecycle
- Consolidation records that absorb batches of cold entities
- FTS5 mirrors of every entity table, kept in sync by triggers
- Optional signal tables read by the context collectors
"""

import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from contextlib import asynccontextmanager

import structlog
from sqlalchemy import (
    Column,
    Integer,
    Float,
    Index,
    String,
    Text,
    DateTime,
    ForeignKey,
    select,
    func,
    text,
)
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base, declared_attr

from config import Settings
from providers import EmbeddingProvider, SummaryProvider, call_optional

logger = structlog.get_logger(__name__)

Base = declarative_base()

_SQLITE_ADAPTERS_REGISTERED = False


def _register_sqlite_adapters() -> None:
    """
    Register explicit sqlite adapters for Python datetime objects.

    Python 3.12+ deprecates sqlite3's implicit default datetime adapter.
    """
    global _SQLITE_ADAPTERS_REGISTERED
    if _SQLITE_ADAPTERS_REGISTERED:
        return
    sqlite3.register_adapter(datetime, lambda value: value.isoformat(sep=" "))
    _SQLITE_ADAPTERS_REGISTERED = True


_register_sqlite_adapters()


def _utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def _utc_now_naive() -> datetime:
    """Naive UTC datetime, the storage format for every timestamp column."""
    return _utc_now().replace(tzinfo=None)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def encode_embedding(vector: Optional[List[float]]) -> Optional[str]:
    if not vector:
        return None
    return json.dumps([float(v) for v in vector], separators=(",", ":"))


def decode_embedding(raw: Optional[str]) -> Optional[List[float]]:
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, list):
        return None
    try:
        return [float(v) for v in payload]
    except (TypeError, ValueError):
        return None


# =============================================================================
# ORM Models
# =============================================================================


class Project(Base):
    """A codebase whose knowledge is tracked."""

    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    path = Column(String(1024), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=_utc_now_naive)


class WorkSession(Base):
    """One working session. session_number is the aging clock per project."""

    __tablename__ = "sessions"
    __table_args__ = (
        Index("idx_sessions_project_number", "project_id", "session_number", unique=True),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    session_number = Column(Integer, nullable=False)
    goal = Column(Text, nullable=True)
    outcome = Column(Text, nullable=True)
    started_at = Column(DateTime, default=_utc_now_naive)
    ended_at = Column(DateTime, nullable=True)


class LifecycleMixin:
    """Temperature, reference and archival columns shared by every entity."""

    @declared_attr
    def project_id(cls):
        return Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)

    # hot | warm | cold; NULL means untiered (cold-eligible)
    temperature = Column(String(16), nullable=True)
    last_referenced_at = Column(DateTime, nullable=True)
    last_referenced_session = Column(Integer, nullable=True)
    created_session = Column(Integer, nullable=True)
    # Set together, cleared together
    archived_at = Column(DateTime, nullable=True)
    consolidated_into = Column(Integer, nullable=True)
    embedding = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


class FileRecord(LifecycleMixin, Base):
    __tablename__ = "files"
    __table_args__ = (
        Index("idx_files_project_path", "project_id", "path", unique=True),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    path = Column(String(1024), nullable=False)
    purpose = Column(Text, nullable=True)
    fragility = Column(Integer, nullable=False, default=0)
    fragility_signals = Column(Text, nullable=True)
    type = Column(String(64), nullable=True)
    status = Column(String(32), nullable=False, default="active")


class Decision(LifecycleMixin, Base):
    __tablename__ = "decisions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(512), nullable=False)
    decision = Column(Text, nullable=False)
    reasoning = Column(Text, nullable=True)
    affects = Column(Text, nullable=True)
    # succeeded | failed | revised | pending; NULL means not yet known
    outcome = Column(String(32), nullable=True)
    outcome_notes = Column(Text, nullable=True)
    confidence = Column(Integer, nullable=False, default=5)
    status = Column(String(32), nullable=False, default="active")


class Issue(LifecycleMixin, Base):
    __tablename__ = "issues"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(512), nullable=False)
    description = Column(Text, nullable=True)
    severity = Column(Integer, nullable=False, default=5)
    status = Column(String(32), nullable=False, default="open")
    type = Column(String(64), nullable=True)
    workaround = Column(Text, nullable=True)
    resolution = Column(Text, nullable=True)


class Learning(LifecycleMixin, Base):
    __tablename__ = "learnings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(512), nullable=False)
    content = Column(Text, nullable=False)
    category = Column(String(64), nullable=True)
    context = Column(Text, nullable=True)
    files = Column(Text, nullable=True)
    confidence = Column(Integer, nullable=False, default=5)


class Consolidation(Base):
    """Summary record for one batch of archived entities. Immutable once written."""

    __tablename__ = "consolidations"
    __table_args__ = (
        Index("idx_consolidations_project_type", "project_id", "entity_type"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False)
    entity_type = Column(String(32), nullable=False)
    source_ids = Column(Text, nullable=False)
    summary_title = Column(Text, nullable=False)
    summary_content = Column(Text, nullable=False)
    summary_method = Column(String(32), nullable=False, default="extractive")
    entity_count = Column(Integer, nullable=False)
    confidence = Column(Float, nullable=False, default=0.8)
    embedding = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive)


class IndexMeta(Base):
    """Runtime metadata and capability flags."""

    __tablename__ = "index_meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


# -----------------------------------------------------------------------------
# Optional signal tables. Collectors treat any of them being absent as
# "no contribution".
# -----------------------------------------------------------------------------


class FileCorrelation(Base):
    __tablename__ = "file_correlations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, nullable=False, index=True)
    file_a = Column(String(1024), nullable=False)
    file_b = Column(String(1024), nullable=False)
    cochange_count = Column(Integer, nullable=False, default=1)


class TestResult(Base):
    __tablename__ = "test_results"
    __test__ = False

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, nullable=False, index=True)
    status = Column(String(16), nullable=False)
    output_summary = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive)


class ContradictionAlert(Base):
    __tablename__ = "contradiction_alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, nullable=False, index=True)
    source_type = Column(String(32), nullable=False)
    contradiction_summary = Column(Text, nullable=False)
    severity = Column(String(16), nullable=False, default="warning")
    dismissed = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=_utc_now_naive)


class ErrorFixPair(Base):
    __tablename__ = "error_fix_pairs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, nullable=False, index=True)
    error_signature = Column(Text, nullable=False)
    fix_description = Column(Text, nullable=True)
    fix_files = Column(Text, nullable=True)
    confidence = Column(Float, nullable=False, default=0.5)
    last_seen_at = Column(DateTime, default=_utc_now_naive)


class ErrorEvent(Base):
    __tablename__ = "error_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, nullable=False, index=True)
    error_type = Column(String(128), nullable=False)
    error_message = Column(Text, nullable=False)
    source_file = Column(String(1024), nullable=True)
    created_at = Column(DateTime, default=_utc_now_naive)


class StrategyCatalog(Base):
    __tablename__ = "strategy_catalog"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    success_rate = Column(Float, nullable=False, default=0.0)
    times_used = Column(Integer, nullable=False, default=0)
    trigger_conditions = Column(Text, nullable=True)


# FTS5 mirrors: rowid is the entity id, (title, body) the searchable text.
_FTS_DDL = (
    "CREATE VIRTUAL TABLE IF NOT EXISTS fts_files USING fts5(title, body)",
    "CREATE VIRTUAL TABLE IF NOT EXISTS fts_decisions USING fts5(title, body)",
    "CREATE VIRTUAL TABLE IF NOT EXISTS fts_issues USING fts5(title, body)",
    "CREATE VIRTUAL TABLE IF NOT EXISTS fts_learnings USING fts5(title, body)",
    # files
    "CREATE TRIGGER IF NOT EXISTS files_fts_ai AFTER INSERT ON files BEGIN "
    "INSERT INTO fts_files(rowid, title, body) "
    "VALUES (new.id, new.path, COALESCE(new.purpose, '')); END",
    "CREATE TRIGGER IF NOT EXISTS files_fts_au AFTER UPDATE OF path, purpose ON files BEGIN "
    "DELETE FROM fts_files WHERE rowid = old.id; "
    "INSERT INTO fts_files(rowid, title, body) "
    "VALUES (new.id, new.path, COALESCE(new.purpose, '')); END",
    "CREATE TRIGGER IF NOT EXISTS files_fts_ad AFTER DELETE ON files BEGIN "
    "DELETE FROM fts_files WHERE rowid = old.id; END",
    # decisions
    "CREATE TRIGGER IF NOT EXISTS decisions_fts_ai AFTER INSERT ON decisions BEGIN "
    "INSERT INTO fts_decisions(rowid, title, body) "
    "VALUES (new.id, new.title, new.decision || ' ' || COALESCE(new.reasoning, '')); END",
    "CREATE TRIGGER IF NOT EXISTS decisions_fts_au AFTER UPDATE OF title, decision, reasoning "
    "ON decisions BEGIN "
    "DELETE FROM fts_decisions WHERE rowid = old.id; "
    "INSERT INTO fts_decisions(rowid, title, body) "
    "VALUES (new.id, new.title, new.decision || ' ' || COALESCE(new.reasoning, '')); END",
    "CREATE TRIGGER IF NOT EXISTS decisions_fts_ad AFTER DELETE ON decisions BEGIN "
    "DELETE FROM fts_decisions WHERE rowid = old.id; END",
    # issues
    "CREATE TRIGGER IF NOT EXISTS issues_fts_ai AFTER INSERT ON issues BEGIN "
    "INSERT INTO fts_issues(rowid, title, body) "
    "VALUES (new.id, new.title, COALESCE(new.description, '')); END",
    "CREATE TRIGGER IF NOT EXISTS issues_fts_au AFTER UPDATE OF title, description ON issues BEGIN "
    "DELETE FROM fts_issues WHERE rowid = old.id; "
    "INSERT INTO fts_issues(rowid, title, body) "
    "VALUES (new.id, new.title, COALESCE(new.description, '')); END",
    "CREATE TRIGGER IF NOT EXISTS issues_fts_ad AFTER DELETE ON issues BEGIN "
    "DELETE FROM fts_issues WHERE rowid = old.id; END",
    # learnings
    "CREATE TRIGGER IF NOT EXISTS learnings_fts_ai AFTER INSERT ON learnings BEGIN "
    "INSERT INTO fts_learnings(rowid, title, body) "
    "VALUES (new.id, new.title, new.content); END",
    "CREATE TRIGGER IF NOT EXISTS learnings_fts_au AFTER UPDATE OF title, content ON learnings BEGIN "
    "DELETE FROM fts_learnings WHERE rowid = old.id; "
    "INSERT INTO fts_learnings(rowid, title, body) "
    "VALUES (new.id, new.title, new.content); END",
    "CREATE TRIGGER IF NOT EXISTS learnings_fts_ad AFTER DELETE ON learnings BEGIN "
    "DELETE FROM fts_learnings WHERE rowid = old.id; END",
)


# =============================================================================
# SQLite Client
# =============================================================================


class SQLiteClient:
    """
    Async SQLite client owning the engine, the providers and the per-type
    repositories. One instance per process, created by the entry point.

    Core operations:
    - projects/sessions: ensure_project, start_session, end_session
    - write paths: add_file, add_decision, add_issue, add_learning
    - reads: get_entity, get_hot_entities, get_index_status
    """

    def __init__(
        self,
        database_url: str,
        settings: Optional[Settings] = None,
        *,
        embedder: Optional[EmbeddingProvider] = None,
        summarizer: Optional[SummaryProvider] = None,
    ):
        """
        Args:
            database_url: SQLAlchemy async URL, e.g.
                          "sqlite+aiosqlite:///memory_ledger.db"
            settings: runtime settings; read from the environment when omitted.
        """
        # Imported here: repositories import the models defined above.
        from .repositories import build_repositories

        self.database_url = database_url
        self.settings = settings or Settings.from_env()
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self.embedder = embedder or EmbeddingProvider(self.settings)
        self.summarizer = summarizer or SummaryProvider(self.settings)
        self.repositories = build_repositories()
        self.fts_available = False

    def repository(self, entity_type: str):
        repo = self.repositories.get((entity_type or "").strip().lower())
        if repo is None:
            raise ValueError(
                f"Unknown entity type '{entity_type}'. "
                f"Expected one of: {', '.join(sorted(self.repositories))}."
            )
        return repo

    async def init_db(self):
        """Create tables, FTS mirrors and sync triggers if they don't exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            self.fts_available = await conn.run_sync(self._setup_fts_infra)
        async with self.session() as session:
            await self._set_index_meta(
                session, "fts_available", "1" if self.fts_available else "0"
            )
            await self._set_index_meta(
                session, "embedding_backend", self.settings.embedding_backend
            )
            await self._set_index_meta(
                session, "embedding_model", self.settings.embedding_model
            )
        logger.info(
            "database_initialized",
            fts_available=self.fts_available,
            embedding_backend=self.settings.embedding_backend,
        )

    @staticmethod
    def _setup_fts_infra(connection) -> bool:
        try:
            for statement in _FTS_DDL:
                connection.execute(text(statement))
        except OperationalError as exc:
            # SQLite builds without FTS5 fall back to LIKE scans.
            logger.warning("fts5_unavailable", error=str(exc))
            return False
        return True

    async def _set_index_meta(
        self, session: AsyncSession, key: str, value: str
    ) -> None:
        await session.execute(
            text(
                "INSERT INTO index_meta(key, value, updated_at) "
                "VALUES (:key, :value, :updated_at) "
                "ON CONFLICT(key) DO UPDATE SET "
                "value = excluded.value, "
                "updated_at = excluded.updated_at"
            ),
            {"key": key, "value": value, "updated_at": _utc_now_naive().isoformat()},
        )

    async def close(self):
        """Dispose of the engine and its pooled connections."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Scoped session: commits on success, rolls back and re-raises on error."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def embed_text(
        self, content: str, degrade_reasons: Optional[List[str]] = None
    ) -> Optional[List[float]]:
        """Best-effort embedding; None when the provider is absent or fails."""
        if not self.embedder.available:
            return None
        return await call_optional(
            self.embedder.embed(content),
            timeout=self.embedder.timeout_sec,
            label="embedding",
            degrade_reasons=degrade_reasons,
        )

    # -------------------------------------------------------------------------
    # Projects & sessions
    # -------------------------------------------------------------------------

    async def ensure_project(self, path: str, name: Optional[str] = None) -> Dict[str, Any]:
        path_value = (path or "").strip()
        if not path_value:
            raise ValueError("project path must not be empty")
        async with self.session() as session:
            result = await session.execute(select(Project).where(Project.path == path_value))
            project = result.scalar_one_or_none()
            if project is None:
                project = Project(
                    path=path_value,
                    name=(name or "").strip() or path_value.rstrip("/").split("/")[-1] or path_value,
                )
                session.add(project)
                await session.flush()
            return {"id": project.id, "path": project.path, "name": project.name}

    @staticmethod
    async def session_number_in(session: AsyncSession, project_id: int) -> int:
        result = await session.execute(
            select(func.max(WorkSession.session_number)).where(
                WorkSession.project_id == project_id
            )
        )
        return int(result.scalar_one_or_none() or 0)

    async def current_session_number(self, project_id: int) -> int:
        async with self.session() as session:
            return await self.session_number_in(session, project_id)

    async def start_session(
        self, project_id: int, goal: Optional[str] = None
    ) -> Dict[str, Any]:
        async with self.session() as session:
            if await session.get(Project, project_id) is None:
                raise LookupError(f"Project {project_id} not found")
            number = await self.session_number_in(session, project_id) + 1
            row = WorkSession(project_id=project_id, session_number=number, goal=goal)
            session.add(row)
            await session.flush()
            logger.info("session_started", project_id=project_id, session_number=number)
            return {
                "id": row.id,
                "project_id": project_id,
                "session_number": number,
                "goal": goal,
                "started_at": _iso(row.started_at),
            }

    async def end_session(
        self, session_id: int, outcome: Optional[str] = None
    ) -> Dict[str, Any]:
        async with self.session() as session:
            row = await session.get(WorkSession, session_id)
            if row is None:
                raise LookupError(f"Session {session_id} not found")
            row.ended_at = _utc_now_naive()
            row.outcome = outcome
            return {
                "id": row.id,
                "session_number": row.session_number,
                "outcome": outcome,
                "ended_at": _iso(row.ended_at),
            }

    # -------------------------------------------------------------------------
    # Write paths
    # -------------------------------------------------------------------------

    async def _create_entity(self, entity_type: str, project_id: int, **fields: Any) -> Dict[str, Any]:
        repo = self.repository(entity_type)
        now_value = _utc_now_naive()
        async with self.session() as session:
            if await session.get(Project, project_id) is None:
                raise LookupError(f"Project {project_id} not found")
            current = await self.session_number_in(session, project_id)
            row = repo.spec.model(
                project_id=project_id,
                temperature="hot",
                last_referenced_at=now_value,
                last_referenced_session=current,
                created_session=current,
                **fields,
            )
            session.add(row)
            await session.flush()
            entity_id = row.id
            payload = repo.to_dict(row)

        embedding = await self.embed_text(repo.embedding_text_of(payload))
        if embedding is not None:
            async with self.session() as session:
                await repo.set_embedding(session, entity_id, encode_embedding(embedding))
            payload["has_embedding"] = True
        return payload

    async def add_file(
        self,
        project_id: int,
        path: str,
        purpose: Optional[str] = None,
        fragility: int = 0,
        fragility_signals: Optional[str] = None,
        type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create or update a file record, keyed by (project, path)."""
        path_value = (path or "").strip()
        if not path_value:
            raise ValueError("path must not be empty")
        if not 0 <= int(fragility) <= 10:
            raise ValueError("fragility must be between 0 and 10")

        repo = self.repository("files")
        async with self.session() as session:
            result = await session.execute(
                select(FileRecord).where(
                    FileRecord.project_id == project_id, FileRecord.path == path_value
                )
            )
            existing = result.scalar_one_or_none()
            if existing is not None:
                current = await self.session_number_in(session, project_id)
                if purpose is not None:
                    existing.purpose = purpose
                existing.fragility = int(fragility)
                if fragility_signals is not None:
                    existing.fragility_signals = fragility_signals
                if type is not None:
                    existing.type = type
                existing.last_referenced_at = _utc_now_naive()
                existing.last_referenced_session = current
                if existing.archived_at is None:
                    existing.temperature = "hot"
                await session.flush()
                return repo.to_dict(existing)

        return await self._create_entity(
            "files",
            project_id,
            path=path_value,
            purpose=purpose,
            fragility=int(fragility),
            fragility_signals=fragility_signals,
            type=type,
        )

    async def add_decision(
        self,
        project_id: int,
        title: str,
        decision: str,
        reasoning: Optional[str] = None,
        affects: Optional[str] = None,
        confidence: int = 5,
    ) -> Dict[str, Any]:
        if not (title or "").strip() or not (decision or "").strip():
            raise ValueError("title and decision must not be empty")
        return await self._create_entity(
            "decisions",
            project_id,
            title=title.strip(),
            decision=decision.strip(),
            reasoning=reasoning,
            affects=affects,
            confidence=int(confidence),
        )

    async def add_issue(
        self,
        project_id: int,
        title: str,
        description: Optional[str] = None,
        severity: int = 5,
        type: Optional[str] = None,
        workaround: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not (title or "").strip():
            raise ValueError("title must not be empty")
        if not 1 <= int(severity) <= 10:
            raise ValueError("severity must be between 1 and 10")
        return await self._create_entity(
            "issues",
            project_id,
            title=title.strip(),
            description=description,
            severity=int(severity),
            type=type,
            workaround=workaround,
        )

    async def add_learning(
        self,
        project_id: int,
        title: str,
        content: str,
        category: Optional[str] = None,
        context: Optional[str] = None,
        files: Optional[str] = None,
        confidence: int = 5,
    ) -> Dict[str, Any]:
        if not (title or "").strip() or not (content or "").strip():
            raise ValueError("title and content must not be empty")
        return await self._create_entity(
            "learnings",
            project_id,
            title=title.strip(),
            content=content.strip(),
            category=category,
            context=context,
            files=files,
            confidence=int(confidence),
        )

    async def set_decision_outcome(
        self, decision_id: int, outcome: str, notes: Optional[str] = None
    ) -> Dict[str, Any]:
        outcome_value = (outcome or "").strip().lower()
        if outcome_value not in {"succeeded", "failed", "revised", "pending"}:
            raise ValueError(
                "outcome must be one of: succeeded, failed, revised, pending"
            )
        repo = self.repository("decisions")
        async with self.session() as session:
            row = await session.get(Decision, decision_id)
            if row is None:
                raise LookupError(f"Decision {decision_id} not found")
            row.outcome = outcome_value
            row.outcome_notes = notes
            await session.flush()
            return repo.to_dict(row)

    async def resolve_issue(self, issue_id: int, resolution: Optional[str] = None) -> Dict[str, Any]:
        repo = self.repository("issues")
        async with self.session() as session:
            row = await session.get(Issue, issue_id)
            if row is None:
                raise LookupError(f"Issue {issue_id} not found")
            row.status = "resolved"
            row.resolution = resolution
            await session.flush()
            return repo.to_dict(row)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_entity(
        self, entity_type: str, entity_id: int, *, heat: bool = True
    ) -> Optional[Dict[str, Any]]:
        """Fetch one entity. Reading an active entity counts as a reference."""
        repo = self.repository(entity_type)
        if int(entity_id) <= 0:
            raise ValueError("entity id must be a positive integer")
        async with self.session() as session:
            row = await repo.get(session, int(entity_id))
            if row is None:
                return None
            if heat and row.archived_at is None:
                current = await self.session_number_in(session, row.project_id)
                await repo.heat(session, [row.id], _utc_now_naive(), current)
                await session.refresh(row)
            return repo.to_dict(row)

    async def get_hot_entities(self, project_id: int, limit: int = 5) -> Dict[str, List[Dict[str, Any]]]:
        """Hot files/decisions/learnings, most recently referenced first."""
        payload: Dict[str, List[Dict[str, Any]]] = {}
        async with self.session() as session:
            for entity_type in ("files", "decisions", "learnings"):
                repo = self.repository(entity_type)
                rows = await repo.list_hot(session, project_id, limit=max(1, int(limit)))
                payload[entity_type] = [repo.to_dict(row) for row in rows]
        return payload

    async def backfill_embeddings(
        self, project_id: int, entity_type: Optional[str] = None, limit: int = 500
    ) -> Dict[str, Any]:
        """Embed rows that have no vector yet. A missing provider embeds nothing."""
        types = [entity_type] if entity_type else list(self.repositories)
        counts: Dict[str, int] = {}
        degrade_reasons: List[str] = []
        if not self.embedder.available:
            return {
                "embedded": {name: 0 for name in types},
                "degraded": True,
                "degrade_reasons": ["embedding_provider_unavailable"],
            }
        for name in types:
            repo = self.repository(name)
            async with self.session() as session:
                rows = await repo.missing_embeddings(session, project_id, limit=limit)
                pending = [(row.id, repo.embedding_text_of(repo.to_dict(row))) for row in rows]
            embedded = 0
            for entity_id, content in pending:
                vector = await self.embed_text(content, degrade_reasons)
                if vector is None:
                    continue
                async with self.session() as session:
                    await repo.set_embedding(session, entity_id, encode_embedding(vector))
                embedded += 1
            counts[name] = embedded
        return {
            "embedded": counts,
            "degraded": bool(degrade_reasons),
            "degrade_reasons": degrade_reasons,
        }

    async def get_index_status(self) -> Dict[str, Any]:
        counts: Dict[str, Any] = {}
        async with self.session() as session:
            for name, repo in self.repositories.items():
                counts[name] = await repo.count_summary(session)
            consolidations = await session.execute(select(func.count(Consolidation.id)))
        return {
            "fts_available": self.fts_available,
            "vector_available": self.embedder.available,
            "embedding_backend": self.settings.embedding_backend,
            "embedding_model": self.settings.embedding_model,
            "entities": counts,
            "consolidations": int(consolidations.scalar_one() or 0),
            "degraded": not self.fts_available,
        }
