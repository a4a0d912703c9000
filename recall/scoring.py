"""
Hybrid scoring shared by similarity and lexical search.

Both search paths blend a relevance signal with the same recency decay,
so their scores are comparable:

    score = (1 - boost) * relevance + boost * recency
    recency = exp(-age_days / decay_days)
"""

import math

SECONDS_PER_DAY = 86400.0
DEFAULT_DECAY_DAYS = 30.0

# Emotion search weights: confidence dominates, recency breaks ties
EMOTION_CONFIDENCE_WEIGHT = 0.7
EMOTION_RECENCY_WEIGHT = 0.3


def recency(timestamp: float, now: float, decay_days: float = DEFAULT_DECAY_DAYS) -> float:
    """
    Exponential recency score in (0, 1].

    Timestamps in the future count as age zero.
    """
    age_days = max(0.0, (now - timestamp) / SECONDS_PER_DAY)
    return math.exp(-age_days / decay_days)


def validate_boost(boost: float) -> float:
    if not 0.0 <= boost <= 1.0:
        raise ValueError(f"recency_boost must be in [0, 1], got {boost}")
    return boost


def hybrid_score(relevance: float, recency_score: float, boost: float) -> float:
    """Blend relevance and recency with weight ``boost`` on recency."""
    return (1.0 - boost) * relevance + boost * recency_score


def normalize_bm25(raw: float) -> float:
    """Map an unbounded BM25 rank value into (0, 1]: 1 / (1 + |raw|)."""
    return 1.0 / (1.0 + abs(raw))


def emotion_score(confidence: float, recency_score: float) -> float:
    return EMOTION_CONFIDENCE_WEIGHT * confidence + EMOTION_RECENCY_WEIGHT * recency_score
