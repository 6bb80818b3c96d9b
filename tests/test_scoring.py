from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from chatmem.consolidation.scoring import calculate_fact_importance, initial_importance

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def test_fresh_fact_without_access():
    assert calculate_fact_importance(1.0, NOW, 0, NOW) == pytest.approx(0.8)


def test_recency_halves_every_thirty_days():
    assert calculate_fact_importance(1.0, NOW - timedelta(days=30), 0, NOW) == pytest.approx(0.65)
    assert calculate_fact_importance(0.0, NOW - timedelta(days=60), 0, NOW) == pytest.approx(0.075)


def test_access_frequency_is_capped():
    capped = calculate_fact_importance(1.0, NOW, 10_000, NOW)
    assert capped == pytest.approx(1.0)
    assert calculate_fact_importance(0.5, NOW, 3, NOW) > calculate_fact_importance(0.5, NOW, 2, NOW)


def test_future_created_at_counts_as_new():
    assert calculate_fact_importance(1.0, NOW + timedelta(days=3), 0, NOW) == pytest.approx(0.8)


def test_initial_importance():
    assert initial_importance(0.8) == pytest.approx(0.84)
    assert initial_importance(0.0) == pytest.approx(0.2)
    assert initial_importance(1.0) == pytest.approx(1.0)
