"""FTS5/BM25 keyword scoring."""

from __future__ import annotations

from chatmem.storage.sqlite_store import SQLiteStore


def normalize_bm25(relevance: float) -> float:
    """Map a non-negative bm25 relevance onto [0, 1)."""
    r = max(0.0, float(relevance))
    return r / (1.0 + r)


class KeywordSearch:
    """Keyword search using SQLite FTS5."""

    def __init__(self, store: SQLiteStore) -> None:
        self.store = store

    def score_chunks(
        self,
        user_id: str,
        query: str,
        sources: list[str] | None = None,
        limit: int = 1000,
    ) -> dict[int, float]:
        """Text score per matching chunk row id. Non-matching chunks are absent."""
        hits = self.store.search_chunks_fts(user_id, query, sources=sources, limit=limit)
        return {rowid: normalize_bm25(rel) for rowid, rel in hits}
