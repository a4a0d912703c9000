"""
Versioned schema migrations.

Each migration runs in its own BEGIN IMMEDIATE transaction and records
its version in the ``schema_version`` marker table, so a failure rolls
back cleanly and re-running is a no-op. A database that is already
current is only read, never written.

Version 1: documents, full-text index, per-document ``embeddings``.
Version 2: per-chunk ``chunk_embeddings``. Every legacy embedding
becomes the ``{entry}_chunk-0`` row of its entry, with text, emotion
and prosody backfilled from the document.
"""

import json
import logging
import sqlite3
from typing import Callable

from .chunking import estimate_tokens
from .types import chunk_id_for, now_ts

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2


_V1_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS documents (
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
    """,
    "CREATE INDEX IF NOT EXISTS idx_documents_timestamp ON documents(timestamp DESC)",
    "CREATE INDEX IF NOT EXISTS idx_documents_emotion ON documents(emotion_label)",
    # External-content FTS5 index over document text, kept in sync by triggers
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS documents_fts USING fts5(
        id UNINDEXED,
        text,
        content='documents',
        content_rowid='rowid',
        tokenize='unicode61 remove_diacritics 0'
    )
    """,
    # Per-term document frequencies and occurrence counts for BM25
    "CREATE VIRTUAL TABLE IF NOT EXISTS documents_fts_vocab USING fts5vocab(documents_fts, row)",
    """
    CREATE TRIGGER IF NOT EXISTS documents_ai AFTER INSERT ON documents BEGIN
        INSERT INTO documents_fts(rowid, id, text) VALUES (new.rowid, new.id, new.text);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS documents_ad AFTER DELETE ON documents BEGIN
        INSERT INTO documents_fts(documents_fts, rowid, id, text)
        VALUES ('delete', old.rowid, old.id, old.text);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS documents_au AFTER UPDATE OF id, text ON documents BEGIN
        INSERT INTO documents_fts(documents_fts, rowid, id, text)
        VALUES ('delete', old.rowid, old.id, old.text);
        INSERT INTO documents_fts(rowid, id, text) VALUES (new.rowid, new.id, new.text);
    END
    """,
    # One embedding per document (superseded by chunk_embeddings in v2)
    """
    CREATE TABLE IF NOT EXISTS embeddings (
        entry_id TEXT PRIMARY KEY NOT NULL,
        embedding_type TEXT NOT NULL,
        vector BLOB NOT NULL,
        dimension INTEGER NOT NULL,
        created_at REAL NOT NULL,
        FOREIGN KEY (entry_id) REFERENCES documents(id) ON DELETE CASCADE
    )
    """,
]

CHUNK_EMBEDDINGS_DDL = """
    CREATE TABLE IF NOT EXISTS chunk_embeddings (
        id TEXT PRIMARY KEY NOT NULL,
        parent_id TEXT NOT NULL,
        chunk_index INTEGER NOT NULL,
        text TEXT NOT NULL,
        vector BLOB NOT NULL,
        dimension INTEGER NOT NULL,
        start_time REAL,
        end_time REAL,
        emotion_label TEXT NOT NULL,
        emotion_confidence REAL NOT NULL,
        emotion_valence REAL NOT NULL,
        emotion_arousal REAL NOT NULL,
        avg_pitch REAL,
        avg_energy REAL,
        avg_rate REAL,
        token_count INTEGER NOT NULL,
        entry_timestamp REAL NOT NULL,
        created_at REAL NOT NULL,
        FOREIGN KEY (parent_id) REFERENCES documents(id) ON DELETE CASCADE
    )
"""

_V2_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_chunk_embeddings_parent ON chunk_embeddings(parent_id)",
    "CREATE INDEX IF NOT EXISTS idx_chunk_embeddings_emotion ON chunk_embeddings(emotion_label)",
    "CREATE INDEX IF NOT EXISTS idx_chunk_embeddings_parent_chunk "
    "ON chunk_embeddings(parent_id, chunk_index)",
]


def _create_version_table(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY NOT NULL,
            applied_at REAL NOT NULL,
            description TEXT
        )
    """)


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Latest applied version, 0 for a database without a marker table."""
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'schema_version'"
    ).fetchone()
    if row is None:
        return 0
    version = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()[0]
    return int(version or 0)


def _migrate_v1(conn: sqlite3.Connection) -> None:
    for statement in _V1_STATEMENTS:
        conn.execute(statement)
    # Index rows that predate the full-text table
    conn.execute("INSERT INTO documents_fts(documents_fts) VALUES ('rebuild')")


def _migrate_v2(conn: sqlite3.Connection) -> None:
    conn.execute(CHUNK_EMBEDDINGS_DDL)

    legacy = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'embeddings'"
    ).fetchone()
    if legacy is not None:
        orphans = conn.execute("""
            SELECT COUNT(*) FROM embeddings e
            LEFT JOIN documents d ON d.id = e.entry_id
            WHERE d.id IS NULL
        """).fetchone()[0]
        if orphans:
            logger.warning("Skipping %d legacy embeddings with no parent document", orphans)

        rows = conn.execute("""
            SELECT e.entry_id, e.vector, e.dimension, e.created_at,
                   d.text, d.timestamp, d.emotion_label, d.emotion_confidence,
                   d.emotion_valence, d.emotion_arousal, d.prosody_json
            FROM embeddings e
            JOIN documents d ON d.id = e.entry_id
        """).fetchall()

        migrated = 0
        for row in rows:
            prosody = json.loads(row["prosody_json"] or "{}")
            cursor = conn.execute("""
                INSERT OR IGNORE INTO chunk_embeddings (
                    id, parent_id, chunk_index, text, vector, dimension,
                    start_time, end_time,
                    emotion_label, emotion_confidence, emotion_valence, emotion_arousal,
                    avg_pitch, avg_energy, avg_rate,
                    token_count, entry_timestamp, created_at
                )
                VALUES (?, ?, 0, ?, ?, ?, NULL, NULL, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                chunk_id_for(row["entry_id"], 0),
                row["entry_id"],
                row["text"],
                row["vector"],
                row["dimension"],
                row["emotion_label"],
                row["emotion_confidence"],
                row["emotion_valence"],
                row["emotion_arousal"],
                prosody.get("pitch_mean"),
                prosody.get("energy_mean"),
                prosody.get("speaking_rate"),
                estimate_tokens(row["text"]),
                row["timestamp"],
                row["created_at"],
            ))
            migrated += cursor.rowcount

        conn.execute("DROP TABLE embeddings")
        logger.info("Migrated %d legacy embeddings to chunk-0 rows", migrated)

    for statement in _V2_INDEXES:
        conn.execute(statement)


MIGRATIONS: list[tuple[int, str, Callable[[sqlite3.Connection], None]]] = [
    (1, "Documents, full-text index and per-document embeddings", _migrate_v1),
    (2, "Chunk-aware embeddings with emotion and prosody per chunk", _migrate_v2),
]


def migrate(db) -> list[int]:
    """
    Bring a Database up to SCHEMA_VERSION.

    Returns the versions applied by this call (empty if already current).
    """
    with db.reading() as conn:
        current = get_schema_version(conn)
    if current >= SCHEMA_VERSION:
        return []

    applied: list[int] = []
    for version, description, step in MIGRATIONS:
        if version <= current:
            continue
        with db.transaction() as conn:
            _create_version_table(conn)
            # Another process may have migrated since we looked
            if get_schema_version(conn) >= version:
                continue
            logger.info("Applying schema migration %d: %s", version, description)
            step(conn)
            conn.execute(
                "INSERT INTO schema_version (version, applied_at, description) VALUES (?, ?, ?)",
                (version, now_ts(), description),
            )
        applied.append(version)

    return applied
