"""
Runtime configuration for the knowledge ledger.

Values come from the process environment, optionally seeded from a `.env`
file discovered from the working directory. Contract constants that callers
and tests rely on live here as module-level names.
"""

import os
from dataclasses import dataclass
from typing import List

from dotenv import load_dotenv, find_dotenv

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)


# Lifecycle contract
COLD_SESSION_THRESHOLD = 10
MIN_COLD_FOR_CONSOLIDATION = 10
CONSOLIDATION_BATCH_SIZE = 10
CONSOLIDATION_DEFAULT_CONFIDENCE = 0.8

# Retrieval contract
SEARCH_RESULT_CAP = 10
FTS_PER_TYPE_LIMIT = 5
HEATING_TOP_N = 5
DEFAULT_VECTOR_MIN_SIMILARITY = 0.3

# Composition contract
DEFAULT_TOKEN_BUDGET = 2000

ENTITY_TYPES = ("files", "decisions", "issues", "learnings")
SEARCH_MODES = ("fts", "vector", "hybrid", "auto")
INTENTS = ("edit", "read", "debug", "explore", "plan")

_DISABLED_BACKENDS = {"", "none", "off", "disabled", "false", "0"}


def env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on", "enabled"}


def first_env(names: List[str], default: str = "") -> str:
    for name in names:
        value = os.getenv(name)
        if value is None:
            continue
        candidate = value.strip()
        if candidate:
            return candidate
    return default


def _normalize_api_base(base: str, suffixes: tuple) -> str:
    normalized = (base or "").strip().rstrip("/")
    if not normalized:
        return ""
    lowered = normalized.lower()
    for suffix in suffixes:
        if lowered.endswith(suffix):
            return normalized[: -len(suffix)]
    return normalized


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite+aiosqlite:///memory_ledger.db"
    embedding_backend: str = "none"
    embedding_model: str = "hash-v1"
    embedding_dim: int = 64
    embedding_api_base: str = ""
    embedding_api_key: str = ""
    summary_llm_enabled: bool = False
    summary_llm_api_base: str = ""
    summary_llm_api_key: str = ""
    summary_llm_model: str = ""
    provider_timeout_sec: float = 8.0
    vector_min_similarity: float = DEFAULT_VECTOR_MIN_SIMILARITY
    context_token_budget: int = DEFAULT_TOKEN_BUDGET
    heating_queue_maxsize: int = 256
    consolidation_interval_seconds: int = 1800

    @property
    def embedding_enabled(self) -> bool:
        return self.embedding_backend not in _DISABLED_BACKENDS

    @classmethod
    def from_env(cls) -> "Settings":
        backend = (os.getenv("EMBEDDING_BACKEND") or "none").strip().lower()
        if backend == "openai":
            base_names = ["OPENAI_BASE_URL", "OPENAI_API_BASE", "EMBEDDING_API_BASE"]
            key_names = ["OPENAI_API_KEY", "EMBEDDING_API_KEY"]
        elif backend == "router":
            base_names = ["ROUTER_API_BASE", "EMBEDDING_API_BASE"]
            key_names = ["ROUTER_API_KEY", "EMBEDDING_API_KEY"]
        else:
            base_names = ["EMBEDDING_API_BASE", "ROUTER_API_BASE", "OPENAI_BASE_URL"]
            key_names = ["EMBEDDING_API_KEY", "ROUTER_API_KEY", "OPENAI_API_KEY"]

        return cls(
            database_url=first_env(
                ["DATABASE_URL"], default="sqlite+aiosqlite:///memory_ledger.db"
            ),
            embedding_backend=backend,
            embedding_model=first_env(
                ["EMBEDDING_MODEL", "OPENAI_EMBEDDING_MODEL"], default="hash-v1"
            ),
            embedding_dim=env_int("EMBEDDING_DIM", 64, minimum=16),
            embedding_api_base=_normalize_api_base(
                first_env(base_names), ("/embeddings",)
            ),
            embedding_api_key=first_env(key_names),
            summary_llm_enabled=env_bool("SUMMARY_LLM_ENABLED", False),
            summary_llm_api_base=_normalize_api_base(
                first_env(["SUMMARY_LLM_API_BASE", "OPENAI_BASE_URL"]),
                ("/chat/completions", "/responses"),
            ),
            summary_llm_api_key=first_env(["SUMMARY_LLM_API_KEY", "OPENAI_API_KEY"]),
            summary_llm_model=first_env(["SUMMARY_LLM_MODEL"]),
            provider_timeout_sec=max(0.1, env_float("PROVIDER_TIMEOUT_SEC", 8.0)),
            vector_min_similarity=min(
                1.0,
                max(0.0, env_float("VECTOR_MIN_SIMILARITY", DEFAULT_VECTOR_MIN_SIMILARITY)),
            ),
            context_token_budget=env_int(
                "CONTEXT_TOKEN_BUDGET", DEFAULT_TOKEN_BUDGET, minimum=0
            ),
            heating_queue_maxsize=env_int("HEATING_QUEUE_MAXSIZE", 256, minimum=8),
            consolidation_interval_seconds=env_int(
                "CONSOLIDATION_INTERVAL_SECONDS", 1800, minimum=0
            ),
        )
