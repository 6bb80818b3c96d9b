"""FAISS vector scoring over per-user partitions."""

from __future__ import annotations

import numpy as np

from chatmem.storage.faiss_store import FAISSStore
from chatmem.storage.sqlite_store import CHUNKS, FACTS, SQLiteStore


class VectorSearch:
    """Cosine similarity for a user's chunks and facts."""

    def __init__(self, faiss_store: FAISSStore, sqlite_store: SQLiteStore) -> None:
        self.faiss = faiss_store
        self.sqlite = sqlite_store

    def score_chunks(
        self,
        user_id: str,
        query_vector: np.ndarray,
        sources: list[str] | None = None,
        top_k: int | None = None,
    ) -> dict[int, float]:
        hits = self.faiss.search(
            (CHUNKS, user_id),
            self.sqlite.generation(CHUNKS, user_id),
            lambda: self.sqlite.load_chunk_vectors(user_id),
            query_vector,
            top_k=top_k,
        )
        allowed = set(sources) if sources else None
        return {
            rowid: score
            for rowid, source, score in hits
            if allowed is None or source in allowed
        }

    def similar_facts(
        self,
        user_id: str,
        vector: np.ndarray,
        threshold: float = 0.9,
        limit: int = 3,
        fact_type: str | None = None,
    ) -> list[tuple[int, float]]:
        """Stored facts with cosine similarity >= ``threshold``, most similar first."""
        hits = self.faiss.search(
            (FACTS, user_id),
            self.sqlite.generation(FACTS, user_id),
            lambda: self.sqlite.load_fact_vectors(user_id),
            vector,
            top_k=None if fact_type else max(limit, 1),
        )
        out: list[tuple[int, float]] = []
        for fact_id, ftype, score in hits:
            if score < threshold:
                break
            if fact_type and ftype != fact_type:
                continue
            out.append((fact_id, score))
            if len(out) >= limit:
                break
        return out

    def release_empty(self, user_id: str) -> None:
        """Drop in-memory partitions of ``user_id`` that no longer have stored vectors."""
        if self.faiss.holds((CHUNKS, user_id)) and self.sqlite.count_chunks(user_id) == 0:
            self.faiss.drop((CHUNKS, user_id))
        if self.faiss.holds((FACTS, user_id)) and self.sqlite.count_facts(user_id) == 0:
            self.faiss.drop((FACTS, user_id))
