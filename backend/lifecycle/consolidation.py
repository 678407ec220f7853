"""
Consolidation of cold knowledge.

Cold entities of one type are gathered oldest-reference-first, split into
fixed-size batches, summarized into a Consolidation record and archived
with a back-reference to that record. Each batch's record insert and
archive update share one transaction, so a batch is either fully applied
or not applied at all.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import func, select

from config import (
    COLD_SESSION_THRESHOLD,
    CONSOLIDATION_BATCH_SIZE,
    CONSOLIDATION_DEFAULT_CONFIDENCE,
    MIN_COLD_FOR_CONSOLIDATION,
)
from db.sqlite_client import Consolidation, encode_embedding
from providers import call_optional

from .temperature import decay_temperatures

logger = structlog.get_logger(__name__)

_SUMMARY_TITLE_ITEMS = 3
_SUMMARY_EXCERPT_CHARS = 200


class ConsolidationIntegrityError(RuntimeError):
    """The archive update did not cover the whole batch; the batch was rolled back."""


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def build_summary(items: Sequence[Dict[str, Any]], entity_type: str) -> Dict[str, str]:
    """Extractive summary: first titles plus a one-line excerpt per item."""
    titles = [item["title"] for item in items if item.get("title")]
    more = "..." if len(titles) > _SUMMARY_TITLE_ITEMS else ""
    title = (
        f"Consolidated {entity_type} ({len(items)} items): "
        f"{', '.join(titles[:_SUMMARY_TITLE_ITEMS])}{more}"
    )

    lines = []
    for index, item in enumerate(items):
        entry_title = item.get("title") or f"Item {index + 1}"
        content = (item.get("content") or "")[:_SUMMARY_EXCERPT_CHARS]
        lines.append(f"- {entry_title}: {content}" if content else f"- {entry_title}")
    return {"title": title, "content": "\n".join(lines)}


def _summary_prompt(items: Sequence[Dict[str, Any]], entity_type: str) -> str:
    body = "\n".join(
        f"- {item.get('title') or ''}: {(item.get('content') or '')[:400]}"
        for item in items
    )
    return (
        f"Summarize these {len(items)} archived {entity_type} into one paragraph "
        f"under 120 words:\n{body}"
    )


def _record_to_dict(record: Consolidation) -> Dict[str, Any]:
    try:
        source_ids = json.loads(record.source_ids or "[]")
    except (TypeError, ValueError):
        source_ids = []
    return {
        "id": record.id,
        "project_id": record.project_id,
        "entity_type": record.entity_type,
        "source_ids": source_ids,
        "summary_title": record.summary_title,
        "summary_content": record.summary_content,
        "summary_method": record.summary_method,
        "entity_count": record.entity_count,
        "confidence": record.confidence,
        "has_embedding": bool(record.embedding),
        "created_at": record.created_at.isoformat() if record.created_at else None,
    }


async def _consolidate_batch(
    client: Any,
    repo: Any,
    project_id: int,
    batch: List[Dict[str, Any]],
    degrade_reasons: List[str],
) -> Dict[str, Any]:
    summary = build_summary(batch, repo.entity_type)
    method = "extractive"
    if client.summarizer.available:
        llm_text = await call_optional(
            client.summarizer.summarize(_summary_prompt(batch, repo.entity_type)),
            timeout=client.summarizer.timeout_sec,
            label="summary_llm",
            degrade_reasons=degrade_reasons,
        )
        if llm_text:
            summary["content"] = llm_text
            method = "llm"

    embedding = await client.embed_text(
        f"{summary['title']} {summary['content']}", degrade_reasons
    )
    source_ids = [item["id"] for item in batch]

    async with client.session() as session:
        record = Consolidation(
            project_id=project_id,
            entity_type=repo.entity_type,
            source_ids=json.dumps(source_ids),
            summary_title=summary["title"],
            summary_content=summary["content"],
            summary_method=method,
            entity_count=len(batch),
            confidence=CONSOLIDATION_DEFAULT_CONFIDENCE,
            embedding=encode_embedding(embedding),
        )
        session.add(record)
        await session.flush()

        archived = await repo.archive(session, source_ids, record.id, _utc_now_naive())
        if archived != len(source_ids):
            raise ConsolidationIntegrityError(
                f"archived {archived} of {len(source_ids)} {repo.entity_type} "
                f"for consolidation {record.id}"
            )
        payload = _record_to_dict(record)

    logger.info(
        "batch_consolidated",
        project_id=project_id,
        entity_type=repo.entity_type,
        consolidation_id=payload["id"],
        entity_count=len(source_ids),
        summary_method=method,
    )
    return payload


async def consolidate(
    client: Any,
    project_id: int,
    entity_type: str,
    *,
    degrade_reasons: Optional[List[str]] = None,
) -> List[Dict[str, Any]]:
    """
    Consolidate the cold entities of one type.

    Returns the created records, or an empty list when fewer than
    MIN_COLD_FOR_CONSOLIDATION entities are eligible. A failed archive
    update raises ConsolidationIntegrityError and stops this type's run;
    batches committed before it stay committed.
    """
    repo = client.repository(entity_type)
    reasons = degrade_reasons if degrade_reasons is not None else []

    await decay_temperatures(client, project_id, [repo.entity_type])

    async with client.session() as session:
        current = await client.session_number_in(session, project_id)
        rows = await repo.select_cold(session, project_id, current, COLD_SESSION_THRESHOLD)
        candidates = []
        for row in rows:
            payload = repo.to_dict(row)
            candidates.append(
                {"id": row.id, "title": payload["title"], "content": payload["content"]}
            )

    if len(candidates) < MIN_COLD_FOR_CONSOLIDATION:
        logger.debug(
            "consolidation_skipped",
            project_id=project_id,
            entity_type=repo.entity_type,
            eligible=len(candidates),
        )
        return []

    records: List[Dict[str, Any]] = []
    for start in range(0, len(candidates), CONSOLIDATION_BATCH_SIZE):
        batch = candidates[start : start + CONSOLIDATION_BATCH_SIZE]
        if len(batch) < MIN_COLD_FOR_CONSOLIDATION:
            # Trailing remainder waits for the next run.
            break
        try:
            records.append(
                await _consolidate_batch(client, repo, project_id, batch, reasons)
            )
        except Exception:
            logger.error(
                "batch_consolidation_failed",
                project_id=project_id,
                entity_type=repo.entity_type,
                batch_ids=[item["id"] for item in batch],
                exc_info=True,
            )
            raise
    return records


async def run_consolidation(client: Any, project_id: int) -> Dict[str, Any]:
    """Lifecycle check, then consolidate every entity type independently."""
    await decay_temperatures(client, project_id)

    results: Dict[str, Any] = {}
    degrade_reasons: List[str] = []
    total = 0
    for entity_type in client.repositories:
        try:
            records = await consolidate(
                client, project_id, entity_type, degrade_reasons=degrade_reasons
            )
        except Exception as exc:
            logger.warning(
                "consolidation_type_failed",
                project_id=project_id,
                entity_type=entity_type,
                error=str(exc),
            )
            results[entity_type] = {"ok": False, "error": str(exc)}
            continue
        archived = sum(int(item["entity_count"]) for item in records)
        total += archived
        results[entity_type] = {
            "ok": True,
            "consolidations": records,
            "archived": archived,
        }

    return {
        "ok": all(item["ok"] for item in results.values()),
        "project_id": project_id,
        "consolidated_count": total,
        "results": results,
        "degraded": bool(degrade_reasons),
        "degrade_reasons": degrade_reasons,
    }


async def should_consolidate(client: Any, project_id: int) -> bool:
    """True when any type has enough consolidation candidates."""
    async with client.session() as session:
        current = await client.session_number_in(session, project_id)
        for repo in client.repositories.values():
            if await repo.count_cold(
                session, project_id, current, COLD_SESSION_THRESHOLD
            ) >= MIN_COLD_FOR_CONSOLIDATION:
                return True
    return False


async def consolidation_status(client: Any, project_id: int) -> Dict[str, Any]:
    by_type: Dict[str, Any] = {}
    async with client.session() as session:
        current = await client.session_number_in(session, project_id)
        for entity_type, repo in client.repositories.items():
            cold = await repo.count_cold(session, project_id, current, COLD_SESSION_THRESHOLD)
            by_type[entity_type] = {
                "cold": cold,
                "archived": await repo.count_archived(session, project_id),
                "ready": cold >= MIN_COLD_FOR_CONSOLIDATION,
            }
        total = await session.execute(
            select(func.count(Consolidation.id)).where(
                Consolidation.project_id == project_id
            )
        )
    return {
        "project_id": project_id,
        "entities": by_type,
        "total_consolidations": int(total.scalar_one() or 0),
        "cold_session_threshold": COLD_SESSION_THRESHOLD,
        "min_cold_for_consolidation": MIN_COLD_FOR_CONSOLIDATION,
        "ready": any(item["ready"] for item in by_type.values()),
    }


async def list_consolidations(
    client: Any,
    project_id: int,
    *,
    entity_type: Optional[str] = None,
    limit: int = 20,
) -> List[Dict[str, Any]]:
    """Consolidation records, newest first."""
    stmt = select(Consolidation).where(Consolidation.project_id == project_id)
    if entity_type:
        stmt = stmt.where(
            Consolidation.entity_type == client.repository(entity_type).entity_type
        )
    stmt = stmt.order_by(Consolidation.created_at.desc(), Consolidation.id.desc()).limit(
        max(1, int(limit))
    )
    async with client.session() as session:
        result = await session.execute(stmt)
        return [_record_to_dict(row) for row in result.scalars().all()]
