"""Fact importance scoring."""

from __future__ import annotations

import math
from datetime import datetime

AGE_HALF_LIFE_DAYS = 30.0


def initial_importance(confidence: float) -> float:
    return min(1.0, max(0.0, confidence * 0.8 + 0.2))


def calculate_fact_importance(
    confidence: float,
    created_at: datetime,
    access_count: int,
    now: datetime,
) -> float:
    """Blend of confidence, recency and access frequency, in [0, 1].

    Pure: the same inputs always give the same score, so rescoring an
    unchanged fact set is idempotent.
    """
    age_days = max(0.0, (now - created_at).total_seconds() / 86400.0)
    recency = 0.5 ** (age_days / AGE_HALF_LIFE_DAYS)
    frequency = min(math.log1p(max(0, access_count)) / 5.0, 1.0)
    score = 0.5 * confidence + 0.3 * recency + 0.2 * frequency
    return min(1.0, max(0.0, score))
