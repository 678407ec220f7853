"""
Context collectors.

Each collector reads one source and returns either a ``Contribution`` or
``NotAvailable`` (for example when an optional table does not exist). A
collector opens its own session, so collectors can run concurrently and
in any order; the router merges their contributions in intent order.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Sequence

import structlog
from sqlalchemy import case, func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from db.sqlite_client import (
    ContradictionAlert,
    Decision,
    ErrorEvent,
    ErrorFixPair,
    FileCorrelation,
    FileRecord,
    Issue,
    Learning,
    StrategyCatalog,
    TestResult,
)

from .types import (
    CollectorOutcome,
    ContextRequest,
    ContextWarning,
    Contribution,
    FileAnnotation,
    FileInfo,
    KnowledgeItem,
    NotAvailable,
)

logger = structlog.get_logger(__name__)

FILE_INFO_MAX_FILES = 20
FILE_SIGNAL_MAX_FILES = 10
FILE_KNOWLEDGE_MAX_FILES = 5
FRAGILITY_WARNING = 7
FRAGILITY_CRITICAL = 9
TEST_HISTORY_DAYS = 30
MIN_LEARNING_CONFIDENCE = 3
MIN_ERROR_FIX_CONFIDENCE = 0.4
MIN_STRATEGY_SUCCESS_RATE = 0.5
MIN_STRATEGY_USES = 3


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _escape_like_pattern(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _contains(value: str) -> str:
    return f"%{_escape_like_pattern(value)}%"


def _basename(path: str) -> str:
    return path.rstrip("/").split("/")[-1]


def _stem(path: str) -> str:
    return re.sub(r"\.[^.]+$", "", _basename(path))


def sanitize_fts_query(query: str) -> str:
    """Loose prefix-OR FTS5 query from free text; '""' when nothing is left."""
    cleaned = re.sub(r"[^a-zA-Z0-9\s_-]", " ", query or "").strip()
    terms = [term for term in cleaned.split() if len(term) >= 2][:5]
    if not terms:
        return '""'
    return " OR ".join(f'"{term}"*' for term in terms)


def _sanitized_terms(query: str) -> List[str]:
    cleaned = re.sub(r"[^a-zA-Z0-9\s_-]", " ", query or "").strip()
    return [term for term in cleaned.split() if len(term) >= 2][:5]


async def _guarded(
    source: str,
    client: Any,
    collect: Callable[[Any], Awaitable[Contribution]],
) -> CollectorOutcome:
    try:
        async with client.session() as session:
            return await collect(session)
    except SQLAlchemyError as exc:
        logger.debug("collector_not_available", source=source, error=str(exc))
        return NotAvailable(source=source, reason=str(exc).splitlines()[0])


# =============================================================================
# File collectors
# =============================================================================


async def collect_file_info(client: Any, project_id: int, files: Sequence[str]) -> CollectorOutcome:
    async def _collect(session) -> Contribution:
        out = Contribution(source="file_info")
        for file_path in list(files)[:FILE_INFO_MAX_FILES]:
            result = await session.execute(
                select(FileRecord).where(
                    FileRecord.project_id == project_id,
                    FileRecord.path == file_path,
                    FileRecord.archived_at.is_(None),
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                continue
            fragility = int(row.fragility or 0)
            out.files.append(FileInfo(path=row.path, fragility=fragility, purpose=row.purpose))
            out.heat_targets.append(("files", row.id))
            if fragility >= FRAGILITY_WARNING:
                signals = f" - {row.fragility_signals}" if row.fragility_signals else ""
                out.warnings.append(
                    ContextWarning(
                        type="fragility",
                        severity="critical" if fragility >= FRAGILITY_CRITICAL else "warning",
                        message=f"Fragility {fragility}/10{signals}",
                        file=row.path,
                    )
                )
        return out

    return await _guarded("file_info", client, _collect)


async def collect_test_history(client: Any, project_id: int, files: Sequence[str]) -> CollectorOutcome:
    async def _collect(session) -> Contribution:
        out = Contribution(source="test_history")
        since = _utc_now_naive() - timedelta(days=TEST_HISTORY_DAYS)
        for file_path in list(files)[:FILE_SIGNAL_MAX_FILES]:
            result = await session.execute(
                select(
                    func.count(TestResult.id),
                    func.sum(case((TestResult.status == "failed", 1), else_=0)),
                ).where(
                    TestResult.project_id == project_id,
                    TestResult.output_summary.like(_contains(_basename(file_path)), escape="\\"),
                    TestResult.created_at > since,
                )
            )
            total, failures = result.one()
            total = int(total or 0)
            failures = int(failures or 0)
            if total <= 0 or failures <= 0:
                continue
            rate = failures / total
            out.annotations.append(
                FileAnnotation(path=file_path, historical_failure_rate=round(rate, 2))
            )
            if rate > 0.3:
                out.warnings.append(
                    ContextWarning(
                        type="test_failure",
                        severity="warning" if rate > 0.5 else "info",
                        message=f"{round(rate * 100)}% test failure rate in last {TEST_HISTORY_DAYS} days",
                        file=file_path,
                    )
                )
        return out

    return await _guarded("test_history", client, _collect)


async def collect_cochangers(client: Any, project_id: int, files: Sequence[str]) -> CollectorOutcome:
    async def _collect(session) -> Contribution:
        out = Contribution(source="cochangers")
        for file_path in list(files)[:FILE_SIGNAL_MAX_FILES]:
            result = await session.execute(
                select(FileCorrelation.file_b)
                .where(
                    FileCorrelation.project_id == project_id,
                    FileCorrelation.file_a == file_path,
                    FileCorrelation.cochange_count >= 2,
                )
                .order_by(FileCorrelation.cochange_count.desc(), FileCorrelation.file_b)
                .limit(5)
            )
            partners = [row[0] for row in result.all()]
            if partners:
                out.annotations.append(FileAnnotation(path=file_path, cochangers=partners))
        return out

    return await _guarded("cochangers", client, _collect)


async def collect_suggested_files(client: Any, project_id: int, task: str) -> CollectorOutcome:
    repo = client.repository("files")

    async def _collect(session) -> Contribution:
        out = Contribution(source="suggested_files")
        rows = await repo.match(
            session,
            project_id,
            match_query=sanitize_fts_query(task),
            terms=_sanitized_terms(task),
            fts_available=client.fts_available,
            limit=10,
            order_by=(FileRecord.fragility.desc(), FileRecord.path),
        )
        for row, _score in rows:
            out.files.append(
                FileInfo(path=row.path, fragility=int(row.fragility or 0), purpose=row.purpose)
            )
            out.heat_targets.append(("files", row.id))
        return out

    return await _guarded("suggested_files", client, _collect)


# =============================================================================
# Decision & contradiction collectors
# =============================================================================


async def collect_contradictions(client: Any, project_id: int) -> CollectorOutcome:
    async def _collect(session) -> Contribution:
        out = Contribution(source="contradictions")
        result = await session.execute(
            select(ContradictionAlert)
            .where(
                ContradictionAlert.project_id == project_id,
                ContradictionAlert.dismissed == 0,
            )
            .order_by(ContradictionAlert.created_at.desc(), ContradictionAlert.id.desc())
            .limit(3)
        )
        for alert in result.scalars().all():
            out.warnings.append(
                ContextWarning(
                    type="contradiction",
                    severity="critical" if alert.severity == "critical" else "warning",
                    message=f"{alert.source_type}: {alert.contradiction_summary}",
                )
            )
        return out

    return await _guarded("contradictions", client, _collect)


async def collect_failed_decisions(client: Any, project_id: int) -> CollectorOutcome:
    async def _collect(session) -> Contribution:
        out = Contribution(source="failed_decisions")
        result = await session.execute(
            select(Decision)
            .where(
                Decision.project_id == project_id,
                Decision.outcome.in_(("failed", "revised")),
                Decision.archived_at.is_(None),
            )
            .order_by(Decision.updated_at.desc(), Decision.id.desc())
            .limit(5)
        )
        for row in result.scalars().all():
            out.warnings.append(
                ContextWarning(
                    type="failed_decision",
                    severity="critical" if row.outcome == "failed" else "warning",
                    message=row.title,
                )
            )
            out.context.append(
                KnowledgeItem(
                    type="decision",
                    title=row.title,
                    content=row.decision,
                    confidence=row.confidence,
                    status=row.outcome,
                )
            )
            out.heat_targets.append(("decisions", row.id))
        return out

    return await _guarded("failed_decisions", client, _collect)


async def collect_file_decisions(client: Any, project_id: int, files: Sequence[str]) -> CollectorOutcome:
    async def _collect(session) -> Contribution:
        out = Contribution(source="file_decisions")
        for file_path in list(files)[:FILE_KNOWLEDGE_MAX_FILES]:
            result = await session.execute(
                select(Decision)
                .where(
                    Decision.project_id == project_id,
                    Decision.archived_at.is_(None),
                    or_(
                        Decision.affects.like(_contains(file_path), escape="\\"),
                        Decision.title.like(_contains(_stem(file_path)), escape="\\"),
                    ),
                )
                .order_by(Decision.confidence.desc(), Decision.id)
                .limit(3)
            )
            for row in result.scalars().all():
                out.context.append(
                    KnowledgeItem(
                        type="decision",
                        title=row.title,
                        content=row.decision,
                        confidence=row.confidence,
                        status=row.outcome or "pending",
                    )
                )
                out.heat_targets.append(("decisions", row.id))
        return out

    return await _guarded("file_decisions", client, _collect)


# =============================================================================
# Learning & issue collectors
# =============================================================================


async def collect_file_learnings(client: Any, project_id: int, files: Sequence[str]) -> CollectorOutcome:
    async def _collect(session) -> Contribution:
        out = Contribution(source="file_learnings")
        for file_path in list(files)[:FILE_KNOWLEDGE_MAX_FILES]:
            stem_pattern = _contains(_stem(file_path))
            result = await session.execute(
                select(Learning)
                .where(
                    Learning.project_id == project_id,
                    Learning.archived_at.is_(None),
                    Learning.confidence >= MIN_LEARNING_CONFIDENCE,
                    or_(
                        Learning.files.like(_contains(file_path), escape="\\"),
                        Learning.title.like(stem_pattern, escape="\\"),
                        Learning.content.like(stem_pattern, escape="\\"),
                    ),
                )
                .order_by(Learning.confidence.desc(), Learning.id)
                .limit(3)
            )
            for row in result.scalars().all():
                out.context.append(
                    KnowledgeItem(
                        type="learning",
                        title=row.title,
                        content=row.content,
                        confidence=row.confidence,
                    )
                )
                out.heat_targets.append(("learnings", row.id))
        return out

    return await _guarded("file_learnings", client, _collect)


def _issue_item(row: Issue) -> KnowledgeItem:
    return KnowledgeItem(
        type="issue",
        title=row.title,
        content=row.description or row.title,
        confidence=row.severity,
    )


async def collect_file_issues(client: Any, project_id: int, files: Sequence[str]) -> CollectorOutcome:
    async def _collect(session) -> Contribution:
        out = Contribution(source="file_issues")
        for file_path in list(files)[:FILE_KNOWLEDGE_MAX_FILES]:
            stem_pattern = _contains(_stem(file_path))
            result = await session.execute(
                select(Issue)
                .where(
                    Issue.project_id == project_id,
                    Issue.status == "open",
                    Issue.archived_at.is_(None),
                    or_(
                        Issue.title.like(stem_pattern, escape="\\"),
                        Issue.description.like(stem_pattern, escape="\\"),
                    ),
                )
                .order_by(Issue.severity.desc(), Issue.id)
                .limit(3)
            )
            for row in result.scalars().all():
                out.context.append(_issue_item(row))
                out.heat_targets.append(("issues", row.id))
        return out

    return await _guarded("file_issues", client, _collect)


async def collect_open_issues(client: Any, project_id: int) -> CollectorOutcome:
    async def _collect(session) -> Contribution:
        out = Contribution(source="open_issues")
        result = await session.execute(
            select(Issue)
            .where(
                Issue.project_id == project_id,
                Issue.status == "open",
                Issue.archived_at.is_(None),
            )
            .order_by(Issue.severity.desc(), Issue.id)
            .limit(5)
        )
        for row in result.scalars().all():
            out.context.append(_issue_item(row))
        return out

    return await _guarded("open_issues", client, _collect)


# =============================================================================
# Error collectors
# =============================================================================


async def collect_error_fixes(client: Any, project_id: int, query: str) -> CollectorOutcome:
    async def _collect(session) -> Contribution:
        out = Contribution(source="error_fixes")
        pattern = _contains((query or "")[:50])
        result = await session.execute(
            select(ErrorFixPair)
            .where(
                ErrorFixPair.project_id == project_id,
                ErrorFixPair.confidence >= MIN_ERROR_FIX_CONFIDENCE,
                or_(
                    ErrorFixPair.error_signature.like(pattern, escape="\\"),
                    ErrorFixPair.fix_description.like(pattern, escape="\\"),
                ),
            )
            .order_by(
                ErrorFixPair.confidence.desc(),
                ErrorFixPair.last_seen_at.desc(),
                ErrorFixPair.id,
            )
            .limit(5)
        )
        for row in result.scalars().all():
            out.context.append(
                KnowledgeItem(
                    type="error_fix",
                    title=row.error_signature[:60],
                    content=row.fix_description or "See fix files",
                    confidence=row.confidence,
                )
            )
        return out

    return await _guarded("error_fixes", client, _collect)


async def collect_recent_errors(client: Any, project_id: int) -> CollectorOutcome:
    async def _collect(session) -> Contribution:
        out = Contribution(source="recent_errors")
        result = await session.execute(
            select(ErrorEvent)
            .where(ErrorEvent.project_id == project_id)
            .order_by(ErrorEvent.created_at.desc(), ErrorEvent.id.desc())
            .limit(5)
        )
        for row in result.scalars().all():
            out.warnings.append(
                ContextWarning(
                    type="test_failure",
                    severity="info",
                    message=f"{row.error_type}: {row.error_message[:80]}",
                    file=row.source_file,
                )
            )
        return out

    return await _guarded("recent_errors", client, _collect)


# =============================================================================
# Query collectors
# =============================================================================


async def collect_query_results(client: Any, project_id: int, query: str) -> CollectorOutcome:
    """Decisions and learnings matching free text, highest confidence first."""
    decisions = client.repository("decisions")
    learnings = client.repository("learnings")
    match_query = sanitize_fts_query(query)
    terms = _sanitized_terms(query)

    async def _collect(session) -> Contribution:
        out = Contribution(source="query")
        decision_rows = await decisions.match(
            session,
            project_id,
            match_query=match_query,
            terms=terms,
            fts_available=client.fts_available,
            limit=5,
            order_by=(Decision.confidence.desc(), Decision.id),
        )
        for row, _score in decision_rows:
            out.context.append(
                KnowledgeItem(
                    type="decision",
                    title=row.title,
                    content=row.decision,
                    confidence=row.confidence,
                    status=row.outcome or "pending",
                )
            )
            out.heat_targets.append(("decisions", row.id))

        learning_rows = await learnings.match(
            session,
            project_id,
            match_query=match_query,
            terms=terms,
            fts_available=client.fts_available,
            limit=5,
            order_by=(Learning.confidence.desc(), Learning.id),
            where=(Learning.confidence >= MIN_LEARNING_CONFIDENCE,),
        )
        for row, _score in learning_rows:
            out.context.append(
                KnowledgeItem(
                    type="learning",
                    title=row.title,
                    content=row.content,
                    confidence=row.confidence,
                )
            )
            out.heat_targets.append(("learnings", row.id))
        return out

    return await _guarded("query", client, _collect)


def request_keywords(request: ContextRequest) -> List[str]:
    keywords: List[str] = []
    for text_value in (request.query, request.task):
        if text_value:
            keywords.extend([word for word in text_value.split() if len(word) >= 3][:5])
    for file_path in request.files[:3]:
        stem = _stem(file_path)
        if len(stem) >= 3:
            keywords.append(stem)
    return list(dict.fromkeys(keywords))


async def collect_strategies(client: Any, project_id: int, keywords: Sequence[str]) -> CollectorOutcome:
    """Proven strategies, ranked by keyword relevance then success rate."""

    async def _collect(session) -> Contribution:
        out = Contribution(source="strategies")
        result = await session.execute(
            select(StrategyCatalog)
            .where(
                StrategyCatalog.project_id == project_id,
                StrategyCatalog.success_rate >= MIN_STRATEGY_SUCCESS_RATE,
                StrategyCatalog.times_used >= MIN_STRATEGY_USES,
            )
            .order_by(
                StrategyCatalog.success_rate.desc(),
                StrategyCatalog.times_used.desc(),
                StrategyCatalog.id,
            )
            .limit(10)
        )
        scored = []
        for index, row in enumerate(result.scalars().all()):
            name = (row.name or "").lower()
            description = (row.description or "").lower()
            relevance = 0
            for keyword in keywords:
                needle = keyword.lower()
                if needle in name:
                    relevance += 2
                if needle in description:
                    relevance += 1
            scored.append((-relevance, -float(row.success_rate or 0.0), index, row))
        scored.sort(key=lambda item: item[:3])
        for _rel, _rate, _index, row in scored[:3]:
            out.context.append(
                KnowledgeItem(
                    type="strategy",
                    title=row.name,
                    content=row.description,
                    confidence=round(float(row.success_rate or 0.0) * 10),
                )
            )
        return out

    return await _guarded("strategies", client, _collect)
