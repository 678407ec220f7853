"""
Hybrid search over the four entity tables.

Full-text search covers active entities only. Vector search also covers
archived ones, and an archived entity matched by vector search is reheated.
Hybrid results put vector hits first, then full-text hits not already
present, deduplicated on (entity type, id) and capped.
"""

import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError

from config import (
    ENTITY_TYPES,
    FTS_PER_TYPE_LIMIT,
    HEATING_TOP_N,
    SEARCH_MODES,
    SEARCH_RESULT_CAP,
)
from db.sqlite_client import decode_embedding
from lifecycle.temperature import heat_entities, reheat
from providers import cosine_similarity

logger = structlog.get_logger(__name__)

_FTS_OPERATORS = {"AND", "OR", "NOT", "NEAR"}
_FTS_QUERY_MAX_CHARS = 200
_TYPE_ORDER = {name: index for index, name in enumerate(ENTITY_TYPES)}


@dataclass
class SearchHit:
    entity_type: str
    type: str
    id: int
    title: str
    content: str
    score: float
    source: str
    temperature: Optional[str] = None
    archived: bool = False
    reheated: bool = False

    @property
    def key(self) -> Tuple[str, int]:
        return (self.entity_type, self.id)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["score"] = round(float(self.score), 6)
        return payload


def _append_degrade_reason(degrade_reasons: Optional[List[str]], reason: str) -> None:
    if degrade_reasons is None or not reason:
        return
    if reason not in degrade_reasons:
        degrade_reasons.append(reason)


def escape_fts_query(query: str) -> str:
    """
    Turn free text into a literal FTS5 query.

    Operator words and the characters `"`, `*`, `^` are dropped; every other
    term is quoted so the match is an implicit AND of literal terms.
    Returns '""' when nothing searchable remains.
    """
    sanitized = re.sub(r'["*^]', " ", query or "").strip()[:_FTS_QUERY_MAX_CHARS]
    terms = [
        term
        for term in sanitized.split()
        if term and term.upper() not in _FTS_OPERATORS
    ]
    if not terms:
        return '""'
    return " ".join(f'"{term}"' for term in terms)


def query_terms(query: str) -> List[str]:
    """Plain terms used when FTS5 is unavailable."""
    sanitized = re.sub(r'["*^]', " ", query or "").strip()[:_FTS_QUERY_MAX_CHARS]
    return [
        term for term in sanitized.split() if term and term.upper() not in _FTS_OPERATORS
    ]


def _sort_key(hit: SearchHit):
    return (-hit.score, _TYPE_ORDER.get(hit.entity_type, len(_TYPE_ORDER)), hit.id)


def _resolve_types(client: Any, entity_types: Optional[Iterable[str]]) -> List[str]:
    if not entity_types:
        return list(client.repositories)
    resolved: List[str] = []
    for name in entity_types:
        entity_type = client.repository(name).entity_type
        if entity_type not in resolved:
            resolved.append(entity_type)
    return resolved


async def fts_search(
    client: Any,
    query: str,
    project_id: int,
    *,
    entity_types: Optional[Iterable[str]] = None,
    limit: int = SEARCH_RESULT_CAP,
) -> List[SearchHit]:
    """Top matches per type among active entities, merged by relevance."""
    match_query = escape_fts_query(query)
    terms = query_terms(query)
    hits: List[SearchHit] = []
    async with client.session() as session:
        for entity_type in _resolve_types(client, entity_types):
            repo = client.repository(entity_type)
            rows = await repo.match(
                session,
                project_id,
                match_query=match_query,
                terms=terms,
                fts_available=client.fts_available,
                limit=FTS_PER_TYPE_LIMIT,
            )
            for row, score in rows:
                payload = repo.to_dict(row)
                hits.append(
                    SearchHit(
                        entity_type=entity_type,
                        type=repo.spec.kind,
                        id=row.id,
                        title=payload["title"],
                        content=payload["content"],
                        score=score,
                        source="fts",
                        temperature=row.temperature,
                    )
                )
    hits.sort(key=_sort_key)
    return hits[:limit]


async def _reheat_matches(client: Any, hits: Sequence[SearchHit]) -> None:
    for hit in hits:
        if not hit.archived:
            continue
        try:
            outcome = await reheat(client, hit.entity_type, hit.id)
        except (SQLAlchemyError, LookupError) as exc:
            logger.warning(
                "vector_reheat_failed",
                entity_type=hit.entity_type,
                entity_id=hit.id,
                error=str(exc),
            )
            continue
        if outcome["reheated"]:
            hit.archived = False
            hit.reheated = True
            hit.temperature = "warm"


async def vector_search(
    client: Any,
    query: str,
    project_id: int,
    *,
    entity_types: Optional[Iterable[str]] = None,
    limit: int = SEARCH_RESULT_CAP,
    min_similarity: Optional[float] = None,
    degrade_reasons: Optional[List[str]] = None,
    reheat_archived: bool = True,
) -> List[SearchHit]:
    """
    Cosine similarity over every embedded entity, archived ones included.

    Archived matches are reheated before they are returned unless
    ``reheat_archived`` is false, in which case they come back flagged archived.
    """
    threshold = (
        client.settings.vector_min_similarity if min_similarity is None else min_similarity
    )
    query_embedding = await client.embed_text(query, degrade_reasons)
    if query_embedding is None:
        _append_degrade_reason(degrade_reasons, "query_embedding_unavailable")
        return []

    hits: List[SearchHit] = []
    async with client.session() as session:
        for entity_type in _resolve_types(client, entity_types):
            repo = client.repository(entity_type)
            for row in await repo.embedded_rows(session, project_id):
                vector = decode_embedding(row.embedding)
                if vector is None:
                    continue
                similarity = cosine_similarity(query_embedding, vector)
                if similarity < threshold:
                    continue
                payload = repo.to_dict(row)
                hits.append(
                    SearchHit(
                        entity_type=entity_type,
                        type=repo.spec.kind,
                        id=row.id,
                        title=payload["title"],
                        content=payload["content"],
                        score=similarity,
                        source="vector",
                        temperature=row.temperature,
                        archived=row.archived_at is not None,
                    )
                )
    hits.sort(key=_sort_key)
    hits = hits[:limit]
    if reheat_archived:
        await _reheat_matches(client, hits)
    return hits


def merge_results(
    vector_hits: Sequence[SearchHit],
    fts_hits: Sequence[SearchHit],
    cap: int = SEARCH_RESULT_CAP,
) -> List[SearchHit]:
    """Vector hits first, then unseen full-text hits; unique on (type, id)."""
    merged: List[SearchHit] = []
    seen = set()
    for hit in list(vector_hits) + list(fts_hits):
        if len(merged) >= cap:
            break
        if hit.key in seen:
            continue
        seen.add(hit.key)
        merged.append(hit)
    return merged


async def _project_has_embeddings(client: Any, project_id: int, types: List[str]) -> bool:
    async with client.session() as session:
        for entity_type in types:
            if await client.repository(entity_type).has_embeddings(session, project_id):
                return True
    return False


async def search(
    client: Any,
    query: str,
    project_id: int,
    mode: str = "auto",
    *,
    entity_types: Optional[Iterable[str]] = None,
    limit: int = SEARCH_RESULT_CAP,
    heat: bool = True,
    heating_queue: Any = None,
) -> Dict[str, Any]:
    """
    Run a full-text, vector, hybrid or auto search.

    `auto` behaves like `hybrid` when an embedding provider is available and
    the project has embedded entities, and like `fts` otherwise. The top
    results are heated, through `heating_queue` when one is given. With
    `heat=False` the search is read-only: nothing is heated or reheated.
    """
    query_value = (query or "").strip()
    if not query_value:
        raise ValueError("query must not be empty")
    mode_value = (mode or "auto").strip().lower()
    if mode_value not in SEARCH_MODES:
        raise ValueError(
            f"Invalid search mode '{mode}'. Expected one of: {', '.join(SEARCH_MODES)}."
        )
    cap = max(1, min(int(limit), SEARCH_RESULT_CAP))
    types = _resolve_types(client, entity_types)

    degrade_reasons: List[str] = []
    applied = mode_value
    if mode_value == "auto":
        use_vector = client.embedder.available and await _project_has_embeddings(
            client, project_id, types
        )
        applied = "hybrid" if use_vector else "fts"
    elif mode_value in {"vector", "hybrid"} and not client.embedder.available:
        _append_degrade_reason(degrade_reasons, "embedding_provider_unavailable")
        applied = "fts"

    vector_hits: List[SearchHit] = []
    fts_hits: List[SearchHit] = []
    if applied in {"vector", "hybrid"}:
        vector_hits = await vector_search(
            client,
            query_value,
            project_id,
            entity_types=types,
            limit=cap,
            degrade_reasons=degrade_reasons,
            reheat_archived=heat,
        )
    if applied in {"fts", "hybrid"}:
        fts_hits = await fts_search(
            client, query_value, project_id, entity_types=types, limit=cap
        )
    if not client.fts_available and fts_hits:
        _append_degrade_reason(degrade_reasons, "fts_unavailable_like_fallback")

    results = merge_results(vector_hits, fts_hits, cap)

    # Reheated hits already got their reference bump (to warm).
    heat_targets = [
        hit.key
        for hit in results[:HEATING_TOP_N]
        if not hit.archived and not hit.reheated
    ]
    if heat and heat_targets:
        if heating_queue is not None:
            await heating_queue.enqueue(project_id, heat_targets)
        else:
            try:
                await heat_entities(client, project_id, heat_targets)
            except SQLAlchemyError as exc:
                logger.warning("search_heating_failed", error=str(exc))

    return {
        "query": query_value,
        "requested_mode": mode_value,
        "mode": applied,
        "results": [hit.to_dict() for hit in results],
        "count": len(results),
        "heated": heat_targets if heat else [],
        "degraded": bool(degrade_reasons),
        "degrade_reasons": degrade_reasons,
    }
