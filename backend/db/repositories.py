"""
Per-type data access for the four entity variants.

Every variant shares the same lifecycle columns, so a single
``EntityRepository`` implementation is bound to each variant through an
``EntitySpec``. Table and column references are SQLAlchemy objects chosen
from the closed ``ENTITY_SPECS`` mapping; no SQL text is assembled from identifiers.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Type

from sqlalchemy import (
    Column,
    Float,
    Integer,
    MetaData,
    Table,
    Text,
    and_,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.ext.asyncio import AsyncSession

from .sqlite_client import Decision, FileRecord, Issue, Learning

# FTS5 virtual tables are created by DDL at init time; these Table objects
# only describe them for queries and are kept out of Base.metadata.
_fts_metadata = MetaData()


def _fts_table(name: str) -> Table:
    return Table(
        name,
        _fts_metadata,
        Column("rowid", Integer),
        Column("title", Text),
        Column("body", Text),
        # FTS5 exposes a hidden column named after the table for MATCH.
        Column(name, Text),
        Column("rank", Float),
    )


@dataclass(frozen=True)
class EntitySpec:
    entity_type: str
    kind: str
    model: Type[Any]
    fts_table: Table
    title_attr: str
    content_attr: str
    extra_fields: Tuple[str, ...] = ()

    @property
    def fts_match_column(self):
        return self.fts_table.c[self.fts_table.name]

    @property
    def title_column(self):
        return getattr(self.model, self.title_attr)

    @property
    def content_column(self):
        return getattr(self.model, self.content_attr)


FILES = EntitySpec(
    entity_type="files",
    kind="file",
    model=FileRecord,
    fts_table=_fts_table("fts_files"),
    title_attr="path",
    content_attr="purpose",
    extra_fields=("fragility", "fragility_signals", "type", "status"),
)
DECISIONS = EntitySpec(
    entity_type="decisions",
    kind="decision",
    model=Decision,
    fts_table=_fts_table("fts_decisions"),
    title_attr="title",
    content_attr="decision",
    extra_fields=("reasoning", "affects", "outcome", "outcome_notes", "confidence", "status"),
)
ISSUES = EntitySpec(
    entity_type="issues",
    kind="issue",
    model=Issue,
    fts_table=_fts_table("fts_issues"),
    title_attr="title",
    content_attr="description",
    extra_fields=("severity", "status", "type", "workaround", "resolution"),
)
LEARNINGS = EntitySpec(
    entity_type="learnings",
    kind="learning",
    model=Learning,
    fts_table=_fts_table("fts_learnings"),
    title_attr="title",
    content_attr="content",
    extra_fields=("category", "context", "files", "confidence"),
)

ENTITY_SPECS: Tuple[EntitySpec, ...] = (FILES, DECISIONS, ISSUES, LEARNINGS)


def _escape_like_pattern(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class EntityRepository:
    """Lifecycle-aware queries for one entity variant."""

    def __init__(self, spec: EntitySpec):
        self.spec = spec

    @property
    def entity_type(self) -> str:
        return self.spec.entity_type

    @property
    def model(self):
        return self.spec.model

    def _reference_session(self):
        m = self.model
        return func.coalesce(m.last_referenced_session, m.created_session, 0)

    def _cold_or_untiered(self):
        m = self.model
        return or_(m.temperature == "cold", m.temperature.is_(None))

    def _eligible(self, project_id: int, current_session: int, threshold: int) -> List[Any]:
        m = self.model
        return [
            m.project_id == project_id,
            m.archived_at.is_(None),
            self._cold_or_untiered(),
            or_(
                m.last_referenced_at.is_(None),
                (current_session - self._reference_session()) >= threshold,
            ),
        ]

    # -- row shaping -----------------------------------------------------------

    def to_dict(self, row: Any) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.spec.kind,
            "entity_type": self.spec.entity_type,
            "id": row.id,
            "project_id": row.project_id,
            "title": getattr(row, self.spec.title_attr) or "",
            "content": getattr(row, self.spec.content_attr) or "",
            "temperature": row.temperature,
            "last_referenced_at": _iso(row.last_referenced_at),
            "last_referenced_session": row.last_referenced_session,
            "created_session": row.created_session,
            "archived_at": _iso(row.archived_at),
            "consolidated_into": row.consolidated_into,
            "has_embedding": bool(row.embedding),
            "created_at": _iso(row.created_at),
            "updated_at": _iso(row.updated_at),
        }
        for name in self.spec.extra_fields:
            payload[name] = getattr(row, name)
        return payload

    @staticmethod
    def embedding_text_of(payload: Dict[str, Any]) -> str:
        return f"{payload.get('title') or ''} {payload.get('content') or ''}".strip()

    # -- reads -----------------------------------------------------------------

    async def get(self, session: AsyncSession, entity_id: int):
        return await session.get(self.model, entity_id)

    async def select_cold(
        self,
        session: AsyncSession,
        project_id: int,
        current_session: int,
        threshold: int,
    ) -> List[Any]:
        """Consolidation candidates, oldest reference first (never referenced first)."""
        m = self.model
        stmt = (
            select(m)
            .where(*self._eligible(project_id, current_session, threshold))
            .order_by(m.last_referenced_at.is_not(None), m.last_referenced_at, m.id)
        )
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def tier_inputs(
        self, session: AsyncSession, project_id: int
    ) -> List[Tuple[int, int, Optional[str]]]:
        """(id, reference session, stored temperature) for every active tiered row.

        Untiered rows are left out so they stay consolidation candidates
        until something references them.
        """
        m = self.model
        result = await session.execute(
            select(m.id, self._reference_session(), m.temperature).where(
                m.project_id == project_id,
                m.archived_at.is_(None),
                m.temperature.is_not(None),
            )
        )
        return [(int(row[0]), int(row[1] or 0), row[2]) for row in result.all()]

    async def match(
        self,
        session: AsyncSession,
        project_id: int,
        *,
        match_query: str,
        terms: Sequence[str],
        fts_available: bool,
        limit: int,
        order_by: Optional[Sequence[Any]] = None,
        where: Iterable[Any] = (),
    ) -> List[Tuple[Any, float]]:
        """
        Full-text match over active rows, returning (row, score) pairs.

        Archived rows are never returned. Without FTS5 the match degrades to a
        LIKE scan over the title/content columns.
        """
        m = self.model
        filters = [m.project_id == project_id, m.archived_at.is_(None), *where]

        if fts_available:
            if not match_query or match_query == '""':
                return []
            fts = self.spec.fts_table
            stmt = (
                select(m, fts.c.rank)
                .join(fts, fts.c.rowid == m.id)
                .where(self.spec.fts_match_column.match(match_query), *filters)
                .order_by(*(order_by or (fts.c.rank,)))
                .limit(limit)
            )
            result = await session.execute(stmt)
            # bm25 rank is negative; larger magnitude means better.
            return [(row[0], -float(row[1] or 0.0)) for row in result.all()]

        cleaned = [term for term in terms if term]
        if not cleaned:
            return []
        clauses = []
        for term in cleaned:
            pattern = f"%{_escape_like_pattern(term)}%"
            clauses.append(
                or_(
                    self.spec.title_column.ilike(pattern, escape="\\"),
                    self.spec.content_column.ilike(pattern, escape="\\"),
                )
            )
        stmt = (
            select(m)
            .where(or_(*clauses), *filters)
            .order_by(*(order_by or (m.id.desc(),)))
            .limit(limit)
        )
        result = await session.execute(stmt)
        return [(row, 1.0) for row in result.scalars().all()]

    async def embedded_rows(self, session: AsyncSession, project_id: int) -> List[Any]:
        """Every row with a vector, archived rows included."""
        m = self.model
        result = await session.execute(
            select(m).where(m.project_id == project_id, m.embedding.is_not(None))
        )
        return list(result.scalars().all())

    async def has_embeddings(self, session: AsyncSession, project_id: int) -> bool:
        m = self.model
        result = await session.execute(
            select(m.id)
            .where(m.project_id == project_id, m.embedding.is_not(None))
            .limit(1)
        )
        return result.first() is not None

    async def missing_embeddings(
        self, session: AsyncSession, project_id: int, limit: int = 500
    ) -> List[Any]:
        m = self.model
        result = await session.execute(
            select(m)
            .where(m.project_id == project_id, m.embedding.is_(None))
            .order_by(m.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_cold(
        self, session: AsyncSession, project_id: int, current_session: int, threshold: int
    ) -> int:
        """Count of rows ``select_cold`` would return."""
        m = self.model
        result = await session.execute(
            select(func.count(m.id)).where(*self._eligible(project_id, current_session, threshold))
        )
        return int(result.scalar_one() or 0)

    async def count_archived(self, session: AsyncSession, project_id: int) -> int:
        m = self.model
        result = await session.execute(
            select(func.count(m.id)).where(
                m.project_id == project_id, m.archived_at.is_not(None)
            )
        )
        return int(result.scalar_one() or 0)

    async def list_hot(self, session: AsyncSession, project_id: int, limit: int = 5) -> List[Any]:
        m = self.model
        result = await session.execute(
            select(m)
            .where(
                m.project_id == project_id,
                m.archived_at.is_(None),
                m.temperature == "hot",
            )
            .order_by(m.last_referenced_at.desc(), m.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_summary(self, session: AsyncSession) -> Dict[str, Any]:
        m = self.model
        result = await session.execute(
            select(m.temperature, func.count(m.id))
            .where(m.archived_at.is_(None))
            .group_by(m.temperature)
        )
        by_temperature = {str(row[0] or "untiered"): int(row[1]) for row in result.all()}
        archived = await session.execute(
            select(func.count(m.id)).where(m.archived_at.is_not(None))
        )
        return {
            "active": sum(by_temperature.values()),
            "archived": int(archived.scalar_one() or 0),
            "by_temperature": by_temperature,
        }

    # -- writes ----------------------------------------------------------------

    async def archive(
        self,
        session: AsyncSession,
        ids: Sequence[int],
        consolidation_id: int,
        archived_at: datetime,
    ) -> int:
        """Archive the given active rows; returns how many rows changed."""
        if not ids:
            return 0
        m = self.model
        result = await session.execute(
            update(m)
            .where(m.id.in_(list(ids)), m.archived_at.is_(None))
            .values(archived_at=archived_at, consolidated_into=consolidation_id)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    async def reheat(
        self,
        session: AsyncSession,
        entity_id: int,
        now_value: datetime,
        session_number: int,
    ) -> int:
        """Restore one archived row to warm. Active rows are left untouched."""
        m = self.model
        result = await session.execute(
            update(m)
            .where(m.id == entity_id, m.archived_at.is_not(None))
            .values(
                archived_at=None,
                consolidated_into=None,
                temperature="warm",
                last_referenced_at=now_value,
                last_referenced_session=session_number,
            )
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    async def heat(
        self,
        session: AsyncSession,
        ids: Sequence[int],
        now_value: datetime,
        session_number: int,
    ) -> int:
        if not ids:
            return 0
        m = self.model
        result = await session.execute(
            update(m)
            .where(m.id.in_(list(ids)), m.archived_at.is_(None))
            .values(
                temperature="hot",
                last_referenced_at=now_value,
                last_referenced_session=session_number,
            )
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    async def set_temperature(
        self, session: AsyncSession, ids: Sequence[int], tier: str
    ) -> int:
        if not ids:
            return 0
        m = self.model
        result = await session.execute(
            update(m)
            .where(and_(m.id.in_(list(ids)), m.archived_at.is_(None)))
            .values(temperature=tier)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    async def set_embedding(
        self, session: AsyncSession, entity_id: int, payload: Optional[str]
    ) -> None:
        m = self.model
        await session.execute(
            update(m)
            .where(m.id == entity_id)
            .values(embedding=payload)
            .execution_options(synchronize_session=False)
        )


def build_repositories() -> Dict[str, EntityRepository]:
    return {spec.entity_type: EntityRepository(spec) for spec in ENTITY_SPECS}
