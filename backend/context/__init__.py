from typing import Any, Dict, Optional

from .collectors import sanitize_fts_query
from .formatter import NO_CONTEXT_SENTINEL, estimate_tokens, format_context
from .router import build_plan, merge_outcomes, route_context
from .types import (
    ContextMeta,
    ContextRequest,
    ContextResult,
    ContextWarning,
    FileInfo,
    KnowledgeItem,
)


async def build_context(
    client: Any,
    project_id: int,
    request: ContextRequest,
    *,
    budget: Optional[int] = None,
    heating_queue: Optional[Any] = None,
) -> Dict[str, Any]:
    """Route, compose and render context for one request."""
    result = await route_context(client, project_id, request, heating_queue=heating_queue)
    text = format_context(result, budget)
    payload = result.to_dict()
    payload["text"] = text
    return payload


__all__ = [
    "ContextMeta",
    "ContextRequest",
    "ContextResult",
    "ContextWarning",
    "FileInfo",
    "KnowledgeItem",
    "NO_CONTEXT_SENTINEL",
    "build_context",
    "build_plan",
    "estimate_tokens",
    "format_context",
    "merge_outcomes",
    "route_context",
    "sanitize_fts_query",
]
