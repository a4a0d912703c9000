"""
Schema migration tests.

Verifies all migration paths: v0→v2, v1→v2, a fresh database, and the
no-op path for a current database. Each test builds a database at a
specific schema version using raw SQL, then opens it via Database and
verifies the migration result.
"""

import json
import sqlite3
from pathlib import Path

import pytest

from recall.chunking import estimate_tokens
from recall.database import Database
from recall.lexical import LexicalSearch
from recall.migrations import (
    SCHEMA_VERSION,
    _create_version_table,
    _migrate_v1,
    get_schema_version,
)
from recall.vector_store import VectorStore, encode_vector

DIM = 462
VECTOR = [0.5, -0.25, 1.0, 0.0, 2.0, -8.0] * 77

# (id, timestamp, text, label, confidence, valence, arousal, prosody_json, tags, duration)
DOCS = [
    ("e1", 1_700_000_000.0, "Slept badly again. Worried about the deadline.",
     "anxious", 0.8, -0.4, 0.7,
     json.dumps({"pitch_mean": 190.0, "energy_mean": 0.4, "speaking_rate": 3.5}),
     "work", 31.0),
    ("e2", 1_700_086_400.0, "A quiet walk by the lake.",
     "positive", 0.6, 0.5, 0.3, "{}", "", None),
]


def _create_documents(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE documents (
            id TEXT PRIMARY KEY NOT NULL,
            timestamp REAL NOT NULL,
            text TEXT NOT NULL,
            emotion_label TEXT NOT NULL,
            emotion_confidence REAL NOT NULL,
            emotion_valence REAL NOT NULL,
            emotion_arousal REAL NOT NULL,
            prosody_json TEXT NOT NULL DEFAULT '{}',
            tags TEXT NOT NULL DEFAULT '',
            duration REAL,
            created_at REAL NOT NULL,
            updated_at REAL NOT NULL
        )
    """)
    conn.execute("""
        CREATE TABLE embeddings (
            entry_id TEXT PRIMARY KEY NOT NULL,
            embedding_type TEXT NOT NULL,
            vector BLOB NOT NULL,
            dimension INTEGER NOT NULL,
            created_at REAL NOT NULL,
            FOREIGN KEY (entry_id) REFERENCES documents(id) ON DELETE CASCADE
        )
    """)


def _insert_rows(conn: sqlite3.Connection, embedded: list[str]) -> None:
    for doc in DOCS:
        conn.execute(
            "INSERT INTO documents (id, timestamp, text, emotion_label, emotion_confidence, "
            "emotion_valence, emotion_arousal, prosody_json, tags, duration, "
            "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (*doc, doc[1], doc[1]),
        )
    for entry_id in embedded:
        conn.execute(
            "INSERT INTO embeddings (entry_id, embedding_type, vector, dimension, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (entry_id, "qwen3", encode_vector(VECTOR), DIM, 1_750_000_000.0),
        )


def _create_v0_db(path: Path, embedded: list[str] = None) -> None:
    """Create a v0 database (documents and embeddings, no schema_version)."""
    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA journal_mode=WAL")
    _create_documents(conn)
    _insert_rows(conn, embedded if embedded is not None else ["e1", "e2"])
    conn.commit()
    conn.close()


def _create_v1_db(path: Path, embedded: list[str] = None) -> None:
    """Create a v1 database (full v1 schema with its version marker)."""
    conn = sqlite3.connect(str(path), isolation_level=None)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("BEGIN")
    _migrate_v1(conn)
    _create_version_table(conn)
    conn.execute(
        "INSERT INTO schema_version (version, applied_at, description) VALUES (1, 0, 'v1')"
    )
    _insert_rows(conn, embedded if embedded is not None else ["e1", "e2"])
    conn.execute("COMMIT")
    conn.close()


def _tables(db: Database) -> set[str]:
    rows = db.conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table'"
    ).fetchall()
    return {row["name"] for row in rows}


def _indexes(db: Database) -> set[str]:
    rows = db.conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'index'"
    ).fetchall()
    return {row["name"] for row in rows}


class TestFreshDatabase:

    def test_creates_current_schema(self, tmp_path):
        db = Database(tmp_path / "recall.db", migrate=False)
        assert db.migrate() == [1, 2]
        assert get_schema_version(db.conn) == SCHEMA_VERSION
        tables = _tables(db)
        assert {"documents", "documents_fts", "chunk_embeddings", "schema_version"} <= tables
        assert "embeddings" not in tables
        assert {
            "idx_chunk_embeddings_parent",
            "idx_chunk_embeddings_emotion",
            "idx_chunk_embeddings_parent_chunk",
        } <= _indexes(db)
        db.close()

    def test_in_memory(self):
        with Database(":memory:") as db:
            assert get_schema_version(db.conn) == SCHEMA_VERSION

    def test_version_history_recorded(self, tmp_path):
        with Database(tmp_path / "recall.db") as db:
            rows = db.conn.execute(
                "SELECT version, description FROM schema_version ORDER BY version"
            ).fetchall()
        assert [row["version"] for row in rows] == [1, 2]
        assert all(row["description"] for row in rows)


class TestV0Migration:

    def test_v0_to_current(self, tmp_path):
        path = tmp_path / "recall.db"
        _create_v0_db(path)
        db = Database(path, migrate=False)
        assert get_schema_version(db.conn) == 0
        assert db.migrate() == [1, 2]
        assert get_schema_version(db.conn) == 2
        assert "embeddings" not in _tables(db)
        count = db.conn.execute("SELECT COUNT(*) FROM chunk_embeddings").fetchone()[0]
        assert count == 2
        db.close()

    def test_existing_documents_become_searchable(self, tmp_path):
        path = tmp_path / "recall.db"
        _create_v0_db(path)
        with Database(path) as db:
            matches = LexicalSearch(db).search("deadline")
        assert [m.entry_id for m in matches] == ["e1"]


class TestV1Migration:

    def test_v1_to_current(self, tmp_path):
        path = tmp_path / "recall.db"
        _create_v1_db(path)
        db = Database(path, migrate=False)
        assert get_schema_version(db.conn) == 1
        assert db.migrate() == [2]
        assert "embeddings" not in _tables(db)
        db.close()

    def test_chunk_zero_backfilled_from_document(self, tmp_path):
        path = tmp_path / "recall.db"
        _create_v1_db(path)
        with Database(path) as db:
            record = VectorStore(db).get_record("e1_chunk-0")

        text = DOCS[0][2]
        assert record.chunk.parent_id == "e1"
        assert record.chunk.chunk_index == 0
        assert record.chunk.text == text
        assert record.chunk.emotion_label.value == "anxious"
        assert record.chunk.emotion_confidence == 0.8
        assert record.chunk.valence == -0.4
        assert record.chunk.arousal == 0.7
        assert record.chunk.avg_pitch == 190.0
        assert record.chunk.avg_energy == 0.4
        assert record.chunk.avg_rate == 3.5
        assert record.chunk.token_count == estimate_tokens(text)
        assert record.chunk.timestamp == DOCS[0][1]
        assert record.chunk.start_time is None
        assert record.chunk.end_time is None
        assert record.created_at == 1_750_000_000.0
        assert record.dimension == DIM
        assert record.vector == VECTOR

    def test_missing_prosody_is_null(self, tmp_path):
        path = tmp_path / "recall.db"
        _create_v1_db(path)
        with Database(path) as db:
            record = VectorStore(db).get_record("e2_chunk-0")
        assert record.chunk.avg_pitch is None
        assert record.chunk.avg_energy is None
        assert record.chunk.avg_rate is None

    def test_entries_without_embeddings(self, tmp_path):
        path = tmp_path / "recall.db"
        _create_v1_db(path, embedded=["e1"])
        with Database(path) as db:
            store = VectorStore(db)
            assert store.chunk_ids_for_parent("e1") == ["e1_chunk-0"]
            assert store.chunk_ids_for_parent("e2") == []

    def test_orphan_embeddings_skipped(self, tmp_path, caplog):
        path = tmp_path / "recall.db"
        _create_v1_db(path, embedded=["e1", "ghost"])
        with caplog.at_level("WARNING", logger="recall.migrations"):
            with Database(path) as db:
                assert VectorStore(db).count() == 1
        assert "no parent document" in caplog.text

    def test_migrated_vectors_are_searchable(self, tmp_path):
        path = tmp_path / "recall.db"
        _create_v1_db(path)
        with Database(path) as db:
            matches = VectorStore(db).search(VECTOR, k=5, recency_boost=0.0)
        assert {m.parent_id for m in matches} == {"e1", "e2"}
        assert all(m.score == pytest.approx(1.0) for m in matches)


class TestIdempotence:

    def test_rerun_is_noop(self, tmp_path):
        path = tmp_path / "recall.db"
        _create_v1_db(path)
        Database(path).close()

        db = Database(path, migrate=False)
        assert db.migrate() == []
        assert db.conn.total_changes == 0
        assert VectorStore(db).count() == 2
        db.close()

    def test_reopen_keeps_data(self, tmp_path):
        path = tmp_path / "recall.db"
        _create_v0_db(path)
        Database(path).close()
        with Database(path) as db:
            assert VectorStore(db).count() == 2
            assert get_schema_version(db.conn) == 2


class TestFailure:

    def test_failed_step_rolls_back(self, tmp_path, monkeypatch):
        path = tmp_path / "recall.db"
        _create_v1_db(path)

        def boom(text):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr("recall.migrations.estimate_tokens", boom)
        with pytest.raises(RuntimeError):
            Database(path)

        conn = sqlite3.connect(str(path))
        conn.row_factory = sqlite3.Row
        assert get_schema_version(conn) == 1
        names = {row[0] for row in conn.execute("SELECT name FROM sqlite_master")}
        assert "embeddings" in names
        assert "chunk_embeddings" not in names
        assert conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0] == 2
        conn.close()

        # A later open completes the migration
        monkeypatch.undo()
        with Database(path) as db:
            assert get_schema_version(db.conn) == 2
            assert VectorStore(db).count() == 2
