"""
Tests for chunk-level similarity search aggregated to entries.
"""

import math

import pytest

from recall.errors import InvalidDimension, SearchFailure
from recall.scoring import recency
from recall.types import EMBEDDING_DIM, ChunkMatch
from recall.vector_store import VectorStore

DAY = 86400.0


def _unit2(c: float) -> list[float]:
    """2-d unit vector whose cosine with [1, 0] is c."""
    return [c, math.sqrt(1.0 - c * c)]


def _basis(i: int, dim: int = EMBEDDING_DIM) -> list[float]:
    v = [0.0] * dim
    v[i] = 1.0
    return v


@pytest.fixture
def plane(db):
    """A 2-dimensional store, for hand-computed cosines."""
    return VectorStore(db, dimension=2)


class TestRanking:

    def test_identical_vector_scores_one(self, vector_store, make_doc, make_chunk, now):
        doc = make_doc("e1")
        vector_store.put(make_chunk(doc), _basis(3))
        matches = vector_store.search(_basis(3), k=5, recency_boost=0.0, now=now)
        assert matches == [ChunkMatch("e1", pytest.approx(1.0), "e1_chunk-0")]

    def test_orders_by_similarity(self, plane, make_doc, make_chunk, now):
        for name, c in [("low", 0.2), ("high", 0.9), ("mid", 0.5)]:
            plane.put(make_chunk(make_doc(name)), _unit2(c))
        matches = plane.search([1.0, 0.0], k=5, recency_boost=0.0, now=now)
        assert [m.parent_id for m in matches] == ["high", "mid", "low"]
        assert [m.score for m in matches] == pytest.approx([0.9, 0.5, 0.2])

    def test_k_truncates(self, plane, make_doc, make_chunk, now):
        for i in range(6):
            plane.put(make_chunk(make_doc(f"e{i}")), _unit2(0.1 * (i + 1)))
        matches = plane.search([1.0, 0.0], k=2, recency_boost=0.0, now=now)
        assert [m.parent_id for m in matches] == ["e5", "e4"]

    def test_query_is_normalized(self, plane, make_doc, make_chunk, now):
        plane.put(make_chunk(make_doc("e1")), _unit2(0.6))
        matches = plane.search([25.0, 0.0], recency_boost=0.0, now=now)
        assert matches[0].score == pytest.approx(0.6)

    def test_stored_vectors_are_normalized(self, plane, make_doc, make_chunk, now):
        plane.put(make_chunk(make_doc("e1")), [3.0, 4.0])
        matches = plane.search([1.0, 0.0], recency_boost=0.0, now=now)
        assert matches[0].score == pytest.approx(0.6)

    def test_ties_break_by_id(self, plane, make_doc, make_chunk, now):
        for name in ["b", "c", "a"]:
            plane.put(make_chunk(make_doc(name)), _unit2(0.7))
        matches = plane.search([1.0, 0.0], k=3, recency_boost=0.0, now=now)
        assert [m.parent_id for m in matches] == ["a", "b", "c"]


class TestAggregation:

    def test_best_chunk_represents_entry(self, plane, make_doc, make_chunk, now):
        doc = make_doc("entry-1", "long entry")
        plane.put(make_chunk(doc, 0, "first part"), _unit2(0.9))
        plane.put(make_chunk(doc, 1, "second part"), _unit2(0.95))

        matches = plane.search([1.0, 0.0], k=5, recency_boost=0.0, now=now)

        assert len(matches) == 1
        assert matches[0].parent_id == "entry-1"
        assert matches[0].chunk_id == "entry-1_chunk-1"
        assert matches[0].score == pytest.approx(0.95)

    def test_one_result_per_entry(self, plane, make_doc, make_chunk, now):
        a = make_doc("a")
        b = make_doc("b")
        for i in range(4):
            plane.put(make_chunk(a, i, f"a{i}"), _unit2(0.9 - 0.01 * i))
        plane.put(make_chunk(b), _unit2(0.5))
        matches = plane.search([1.0, 0.0], k=5, chunk_k=10, recency_boost=0.0, now=now)
        assert [m.parent_id for m in matches] == ["a", "b"]

    def test_chunk_k_limits_candidates(self, plane, make_doc, make_chunk, now):
        a = make_doc("a")
        b = make_doc("b")
        for i in range(3):
            plane.put(make_chunk(a, i, f"a{i}"), _unit2(0.9 - 0.01 * i))
        plane.put(make_chunk(b), _unit2(0.5))

        # Only a's three chunks make the candidate window
        matches = plane.search([1.0, 0.0], k=5, chunk_k=3, recency_boost=0.0, now=now)
        assert [m.parent_id for m in matches] == ["a"]

        matches = plane.search([1.0, 0.0], k=5, chunk_k=4, recency_boost=0.0, now=now)
        assert [m.parent_id for m in matches] == ["a", "b"]


class TestRecency:

    def test_recent_entry_wins_with_high_boost(self, vector_store, make_doc, make_chunk, now):
        old = make_doc("old", days_ago=30)
        new = make_doc("new", days_ago=1)
        vector_store.put(make_chunk(old), _basis(0))
        vector_store.put(make_chunk(new), _basis(0))

        matches = vector_store.search(_basis(0), k=2, recency_boost=0.8, now=now)

        assert [m.parent_id for m in matches] == ["new", "old"]
        assert matches[0].score == pytest.approx(0.2 + 0.8 * recency(now - DAY, now))
        assert matches[1].score == pytest.approx(0.2 + 0.8 * recency(now - 30 * DAY, now))

    def test_relevance_wins_without_boost(self, plane, make_doc, make_chunk, now):
        plane.put(make_chunk(make_doc("old", days_ago=90)), _unit2(0.95))
        plane.put(make_chunk(make_doc("new")), _unit2(0.6))
        matches = plane.search([1.0, 0.0], recency_boost=0.0, now=now)
        assert [m.parent_id for m in matches] == ["old", "new"]

    def test_full_boost_is_pure_recency(self, plane, make_doc, make_chunk, now):
        plane.put(make_chunk(make_doc("old", days_ago=90)), _unit2(0.95))
        plane.put(make_chunk(make_doc("new")), _unit2(0.1))
        matches = plane.search([1.0, 0.0], recency_boost=1.0, now=now)
        assert [m.parent_id for m in matches] == ["new", "old"]
        assert matches[0].score == pytest.approx(1.0)

    def test_uses_entry_timestamp_not_embedding_time(self, plane, make_doc, make_chunk, now):
        # Embedded just now, but authored 30 days ago
        plane.put(make_chunk(make_doc("e1", days_ago=30)), _unit2(1.0))
        matches = plane.search([1.0, 0.0], recency_boost=1.0, now=now)
        assert matches[0].score == pytest.approx(math.exp(-1))


class TestEdgeCases:

    def test_empty_store(self, vector_store):
        assert vector_store.search(_basis(0)) == []

    def test_k_zero(self, vector_store, make_doc, make_chunk):
        vector_store.put(make_chunk(make_doc("e1")), _basis(0))
        assert vector_store.search(_basis(0), k=0) == []
        assert vector_store.search(_basis(0), chunk_k=0) == []

    def test_query_dimension_checked_first(self, vector_store):
        with pytest.raises(InvalidDimension):
            vector_store.search([1.0] * 128, k=0)

    def test_boost_out_of_range(self, vector_store):
        with pytest.raises(ValueError):
            vector_store.search(_basis(0), recency_boost=1.5)

    def test_zero_vectors_score_zero(self, plane, make_doc, make_chunk, now):
        plane.put(make_chunk(make_doc("e1")), [0.0, 0.0])
        matches = plane.search([0.0, 0.0], recency_boost=0.0, now=now)
        assert len(matches) == 1
        assert math.isfinite(matches[0].score)
        assert matches[0].score == 0.0

    def test_mismatched_rows_skipped(self, db, plane, make_doc, make_chunk, now):
        plane.put(make_chunk(make_doc("good")), _unit2(0.8))
        wide = VectorStore(db, dimension=3)
        wide.put(make_chunk(make_doc("wide")), [1.0, 0.0, 0.0])
        matches = plane.search([1.0, 0.0], recency_boost=0.0, now=now)
        assert [m.parent_id for m in matches] == ["good"]

    def test_corrupt_rows_skipped(self, db, plane, make_doc, make_chunk, now, caplog):
        plane.put(make_chunk(make_doc("good")), _unit2(0.8))
        plane.put(make_chunk(make_doc("bad")), _unit2(0.9))
        db.conn.execute(
            "UPDATE chunk_embeddings SET vector = ? WHERE id = ?", (b"\x00\x01\x02", "bad_chunk-0")
        )
        with caplog.at_level("WARNING", logger="recall.vector_store"):
            matches = plane.search([1.0, 0.0], recency_boost=0.0, now=now)
        assert [m.parent_id for m in matches] == ["good"]
        assert "bad_chunk-0" in caplog.text

    def test_scan_failure(self, db, vector_store):
        db.conn.execute("DROP TABLE chunk_embeddings")
        with pytest.raises(SearchFailure):
            vector_store.search(_basis(0))
