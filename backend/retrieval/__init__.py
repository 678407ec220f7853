from .search import (
    SearchHit,
    escape_fts_query,
    fts_search,
    merge_results,
    search,
    vector_search,
)

__all__ = [
    "SearchHit",
    "escape_fts_query",
    "fts_search",
    "merge_results",
    "search",
    "vector_search",
]
