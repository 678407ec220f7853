"""
External providers: embeddings and LLM summaries.

Both are optional collaborators. Every call is time-bounded and fails soft:
a missing backend, a timeout, an HTTP error or a malformed response all
come back as ``None`` so the surrounding operation can carry on without
that enrichment.
"""

import asyncio
import hashlib
import math
import re
from typing import Any, Awaitable, Dict, List, Optional

import httpx
import structlog

from config import Settings

logger = structlog.get_logger(__name__)

_REMOTE_EMBEDDING_BACKENDS = {"router", "api", "openai"}
_LOCAL_EMBEDDING_BACKENDS = {"hash", "local"}


def _join_api_url(base: str, endpoint: str) -> str:
    return f"{base.rstrip('/')}/{endpoint.lstrip('/')}"


def _append_degrade_reason(degrade_reasons: Optional[List[str]], reason: str) -> None:
    if degrade_reasons is None or not reason:
        return
    if reason not in degrade_reasons:
        degrade_reasons.append(reason)


async def call_optional(
    awaitable: Awaitable[Any],
    *,
    timeout: float,
    label: str,
    degrade_reasons: Optional[List[str]] = None,
) -> Any:
    """Await a provider call, returning None on timeout or failure."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("provider_timeout", provider=label, timeout=timeout)
        _append_degrade_reason(degrade_reasons, f"{label}_timeout")
        return None
    except Exception as exc:
        logger.warning("provider_failed", provider=label, error=str(exc))
        _append_degrade_reason(degrade_reasons, f"{label}_failed")
        return None


async def _post_json(
    base: str,
    endpoint: str,
    payload: Dict[str, Any],
    api_key: str = "",
    timeout_sec: float = 8.0,
) -> Optional[Dict[str, Any]]:
    if not base:
        return None

    url = _join_api_url(base, endpoint)
    headers = {
        "Content-Type": "application/json",
        "Accept": "application/json",
    }
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
        headers["X-API-Key"] = api_key

    try:
        timeout = httpx.Timeout(timeout_sec)
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            parsed = response.json()
        if isinstance(parsed, dict):
            return parsed
        return {"data": parsed}
    except (httpx.HTTPError, httpx.InvalidURL, ValueError, TypeError) as exc:
        logger.debug("provider_request_failed", url=url, error=str(exc))
        return None


def hash_embedding(content: str, dim: int = 64) -> List[float]:
    """Deterministic token-hash vector, L2-normalized."""
    vector = [0.0] * dim

    normalized = re.sub(r"\s+", " ", (content or "").strip().lower())
    tokens = re.findall(r"[a-z0-9_]+", normalized)
    if not tokens and normalized:
        tokens = list(normalized)

    for token in tokens:
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        for i in range(0, 8, 2):
            idx = digest[i] % dim
            sign = -1.0 if (digest[i + 1] & 1) else 1.0
            weight = 1.0 + (digest[(i + 2) % len(digest)] / 255.0)
            vector[idx] += sign * weight

    norm = math.sqrt(sum(v * v for v in vector))
    if norm <= 0:
        return [0.0] * dim
    return [v / norm for v in vector]


def cosine_similarity(v1: List[float], v2: List[float]) -> float:
    if not v1 or not v2:
        return 0.0
    length = min(len(v1), len(v2))
    dot = sum(v1[i] * v2[i] for i in range(length))
    norm1 = math.sqrt(sum(v1[i] * v1[i] for i in range(length)))
    norm2 = math.sqrt(sum(v2[i] * v2[i] for i in range(length)))
    if norm1 <= 0 or norm2 <= 0:
        return 0.0
    return float(dot / (norm1 * norm2))


def _extract_embedding_from_response(payload: Any) -> Optional[List[float]]:
    if not isinstance(payload, dict):
        return None
    data = payload.get("data")
    if isinstance(data, list) and data:
        first = data[0]
        if isinstance(first, dict):
            data = first.get("embedding")
    elif isinstance(payload.get("embedding"), list):
        data = payload.get("embedding")
    if not isinstance(data, list) or not data:
        return None
    try:
        return [float(v) for v in data]
    except (TypeError, ValueError):
        return None


def _extract_chat_message_text(payload: Dict[str, Any]) -> str:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first_choice = choices[0]
    if not isinstance(first_choice, dict):
        return ""
    message = first_choice.get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        parts: List[str] = []
        for item in content:
            if not isinstance(item, dict):
                continue
            text_content = item.get("text")
            if isinstance(text_content, str) and text_content.strip():
                parts.append(text_content.strip())
        return "\n".join(parts).strip()
    return ""


class EmbeddingProvider:
    """Turns text into a fixed-length vector, or None when unavailable."""

    def __init__(self, settings: Settings):
        self._backend = settings.embedding_backend
        self._model = settings.embedding_model
        self._dim = settings.embedding_dim
        self._api_base = settings.embedding_api_base
        self._api_key = settings.embedding_api_key
        self.timeout_sec = settings.provider_timeout_sec

    @property
    def available(self) -> bool:
        if self._backend in _LOCAL_EMBEDDING_BACKENDS:
            return True
        if self._backend in _REMOTE_EMBEDDING_BACKENDS:
            return bool(self._api_base and self._model)
        return False

    @property
    def model(self) -> str:
        return self._model

    async def embed(self, text: str) -> Optional[List[float]]:
        content = (text or "").strip()
        if not content or not self.available:
            return None
        if self._backend in _LOCAL_EMBEDDING_BACKENDS:
            return hash_embedding(content, self._dim)

        response = await _post_json(
            self._api_base,
            "/embeddings",
            {"model": self._model, "input": content},
            self._api_key,
            self.timeout_sec,
        )
        if response is None:
            return None
        embedding = _extract_embedding_from_response(response)
        if embedding is None:
            logger.warning("embedding_response_invalid", model=self._model)
        return embedding


class SummaryProvider:
    """Chat-completion summarizer used for consolidation records."""

    _SYSTEM_PROMPT = (
        "You compress engineering knowledge. Summarize the given items into a "
        "short paragraph that keeps every concrete fact, name and constraint."
    )

    def __init__(self, settings: Settings):
        self._enabled = settings.summary_llm_enabled
        self._api_base = settings.summary_llm_api_base
        self._api_key = settings.summary_llm_api_key
        self._model = settings.summary_llm_model
        self.timeout_sec = settings.provider_timeout_sec

    @property
    def available(self) -> bool:
        return bool(self._enabled and self._api_base and self._model)

    async def summarize(self, prompt: str) -> Optional[str]:
        if not self.available or not (prompt or "").strip():
            return None
        payload = {
            "model": self._model,
            "temperature": 0.1,
            "messages": [
                {"role": "system", "content": self._SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }
        response = await _post_json(
            self._api_base,
            "/chat/completions",
            payload,
            self._api_key,
            self.timeout_sec,
        )
        if response is None:
            return None
        text = _extract_chat_message_text(response)
        return text or None
