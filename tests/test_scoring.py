"""
Tests for hybrid scoring helpers.
"""

import math

import pytest

from recall.scoring import (
    SECONDS_PER_DAY,
    emotion_score,
    hybrid_score,
    normalize_bm25,
    recency,
    validate_boost,
)

NOW = 1_760_000_000.0


def test_recency_now_is_one():
    assert recency(NOW, NOW) == 1.0


def test_recency_decays_exponentially():
    assert recency(NOW - 30 * SECONDS_PER_DAY, NOW) == pytest.approx(math.exp(-1))
    assert recency(NOW - 1 * SECONDS_PER_DAY, NOW) == pytest.approx(math.exp(-1 / 30))
    assert recency(NOW - 10 * SECONDS_PER_DAY, NOW, decay_days=10) == pytest.approx(math.exp(-1))


def test_recency_future_counts_as_now():
    assert recency(NOW + 5 * SECONDS_PER_DAY, NOW) == 1.0


def test_hybrid_score_blend():
    assert hybrid_score(0.8, 0.2, 0.0) == pytest.approx(0.8)
    assert hybrid_score(0.8, 0.2, 1.0) == pytest.approx(0.2)
    assert hybrid_score(1.0, 0.5, 0.3) == pytest.approx(0.7 + 0.15)


@pytest.mark.parametrize("boost", [-0.1, 1.5])
def test_validate_boost_rejects_out_of_range(boost):
    with pytest.raises(ValueError):
        validate_boost(boost)


def test_validate_boost_accepts_bounds():
    assert validate_boost(0.0) == 0.0
    assert validate_boost(1.0) == 1.0


def test_normalize_bm25():
    assert normalize_bm25(0.0) == 1.0
    assert normalize_bm25(-3.0) == pytest.approx(0.25)
    assert normalize_bm25(3.0) == pytest.approx(0.25)


def test_emotion_score_weights():
    assert emotion_score(1.0, 1.0) == pytest.approx(1.0)
    assert emotion_score(0.5, 0.0) == pytest.approx(0.35)
    assert emotion_score(0.0, 1.0) == pytest.approx(0.3)
