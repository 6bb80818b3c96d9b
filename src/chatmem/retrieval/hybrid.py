"""Hybrid retrieval: weighted sum of vector and keyword scores."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from chatmem.retrieval.keyword import KeywordSearch
from chatmem.retrieval.vector import VectorSearch


def combine_scores(
    vector_score: float, text_score: float, vector_weight: float, text_weight: float
) -> float:
    return vector_weight * vector_score + text_weight * text_score


@dataclass
class HybridHit:
    chunk_rowid: int
    score: float
    vector_score: float
    text_score: float


def rank_hits(
    vector_scores: dict[int, float],
    text_scores: dict[int, float],
    vector_weight: float,
    text_weight: float,
    min_score: float,
    max_results: int,
) -> list[HybridHit]:
    """Combine component scores, drop those under ``min_score``, best first.

    A chunk missing from one side scores 0 on that side.
    """
    hits = []
    for rowid in set(vector_scores) | set(text_scores):
        v = vector_scores.get(rowid, 0.0)
        t = text_scores.get(rowid, 0.0)
        score = combine_scores(v, t, vector_weight, text_weight)
        if score >= min_score:
            hits.append(HybridHit(chunk_rowid=rowid, score=score, vector_score=v, text_score=t))
    hits.sort(key=lambda h: (-h.score, -h.vector_score, h.chunk_rowid))
    return hits[:max(0, max_results)]


class HybridSearch:
    """Scores every chunk of a user on both signals and keeps the best."""

    def __init__(self, keyword: KeywordSearch, vector: VectorSearch, candidate_k: int | None = None) -> None:
        self.keyword = keyword
        self.vector = vector
        # None scores every vector in the partition
        self.candidate_k = candidate_k

    def search(
        self,
        user_id: str,
        query: str,
        query_vector: np.ndarray | None,
        max_results: int = 6,
        min_score: float = 0.35,
        vector_weight: float = 0.7,
        text_weight: float = 0.3,
        sources: list[str] | None = None,
    ) -> list[HybridHit]:
        vector_scores: dict[int, float] = {}
        if query_vector is not None:
            vector_scores = self.vector.score_chunks(
                user_id, query_vector, sources=sources, top_k=self.candidate_k
            )
        text_scores = self.keyword.score_chunks(user_id, query, sources=sources)
        return rank_hits(
            vector_scores, text_scores,
            vector_weight=vector_weight,
            text_weight=text_weight,
            min_score=min_score,
            max_results=max_results,
        )
