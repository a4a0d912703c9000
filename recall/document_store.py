"""
Document store on the shared SQLite database.

The documents table is the source of truth for entries:
- Entry identity and authored timestamp
- Full text (indexed by documents_fts for lexical search)
- Aggregate emotion and prosody
- Tags and audio duration

Chunk embeddings reference documents by id and are deleted with them.
"""

import json
import logging
import sqlite3
from typing import Iterable, Optional

from .database import Database
from .types import Document, EmotionSignal, now_ts

logger = logging.getLogger(__name__)

TAG_SEPARATOR = ","

_COLUMNS = """
    id, timestamp, text, emotion_label, emotion_confidence,
    emotion_valence, emotion_arousal, prosody_json, tags, duration
"""


def encode_tags(tags: Iterable[str]) -> str:
    """Join tags into the stored comma-separated form."""
    cleaned = []
    for tag in tags:
        tag = tag.strip()
        if not tag:
            continue
        if TAG_SEPARATOR in tag:
            raise ValueError(f"Tag must not contain '{TAG_SEPARATOR}': {tag!r}")
        if tag not in cleaned:
            cleaned.append(tag)
    return TAG_SEPARATOR.join(cleaned)


def decode_tags(value: Optional[str]) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(t for t in value.split(TAG_SEPARATOR) if t)


def _row_to_document(row: sqlite3.Row) -> Document:
    emotion = EmotionSignal(
        label=row["emotion_label"],
        confidence=row["emotion_confidence"],
        valence=row["emotion_valence"],
        arousal=row["emotion_arousal"],
        prosody=json.loads(row["prosody_json"] or "{}"),
    )
    return Document(
        id=row["id"],
        text=row["text"],
        emotion=emotion,
        timestamp=row["timestamp"],
        tags=decode_tags(row["tags"]),
        duration=row["duration"],
    )


class DocumentStore:
    """
    SQLite-backed store for journal entries.

    Args:
        db: Shared Database (schema already migrated)
    """

    def __init__(self, db: Database):
        self._db = db

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def add(self, doc: Document) -> Document:
        """
        Insert or update a document.

        Preserves created_at on update. An update never deletes the row,
        so existing chunk embeddings survive until the caller replaces them.
        """
        now = now_ts()
        emotion = doc.emotion
        with self._db.transaction() as conn:
            conn.execute("""
                INSERT INTO documents (
                    id, timestamp, text, emotion_label, emotion_confidence,
                    emotion_valence, emotion_arousal, prosody_json, tags, duration,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    timestamp = excluded.timestamp,
                    text = excluded.text,
                    emotion_label = excluded.emotion_label,
                    emotion_confidence = excluded.emotion_confidence,
                    emotion_valence = excluded.emotion_valence,
                    emotion_arousal = excluded.emotion_arousal,
                    prosody_json = excluded.prosody_json,
                    tags = excluded.tags,
                    duration = excluded.duration,
                    updated_at = excluded.updated_at
            """, (
                doc.id, doc.timestamp, doc.text, emotion.label.value,
                emotion.confidence, emotion.valence, emotion.arousal,
                json.dumps(emotion.prosody), encode_tags(doc.tags), doc.duration,
                now, now,
            ))
        return doc

    def update_tags(self, id: str, tags: Iterable[str]) -> bool:
        """
        Replace a document's tags.

        Returns:
            True if the document exists
        """
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE documents SET tags = ?, updated_at = ? WHERE id = ?",
                (encode_tags(tags), now_ts(), id),
            )
        return cursor.rowcount > 0

    def delete(self, id: str) -> bool:
        """
        Delete a document and, by cascade, its chunk embeddings.

        Returns:
            True if the document existed
        """
        with self._db.transaction() as conn:
            cursor = conn.execute("DELETE FROM documents WHERE id = ?", (id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.debug("Deleted document %s", id)
        return deleted

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, id: str) -> Optional[Document]:
        with self._db.reading() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM documents WHERE id = ?", (id,)
            ).fetchone()
        return _row_to_document(row) if row is not None else None

    def get_many(self, ids: list[str]) -> dict[str, Document]:
        """Fetch several documents. Missing ids are left out of the result."""
        if not ids:
            return {}
        placeholders = ",".join("?" * len(ids))
        with self._db.reading() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM documents WHERE id IN ({placeholders})",
                list(ids),
            ).fetchall()
        return {row["id"]: _row_to_document(row) for row in rows}

    def exists(self, id: str) -> bool:
        with self._db.reading() as conn:
            row = conn.execute(
                "SELECT 1 FROM documents WHERE id = ?", (id,)
            ).fetchone()
        return row is not None

    def count(self) -> int:
        with self._db.reading() as conn:
            return conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]

    def list_ids(self, limit: Optional[int] = None) -> list[str]:
        """List document ids, oldest first."""
        sql = "SELECT id FROM documents ORDER BY timestamp ASC, id ASC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        with self._db.reading() as conn:
            return [row["id"] for row in conn.execute(sql, params)]

    def list_recent(self, limit: int = 10) -> list[Document]:
        """Most recently authored documents, newest first."""
        with self._db.reading() as conn:
            rows = conn.execute(f"""
                SELECT {_COLUMNS} FROM documents
                ORDER BY timestamp DESC, id ASC
                LIMIT ?
            """, (limit,)).fetchall()
        return [_row_to_document(row) for row in rows]

    def list_tags(self) -> list[str]:
        """All distinct tags, sorted."""
        with self._db.reading() as conn:
            rows = conn.execute(
                "SELECT tags FROM documents WHERE tags != ''"
            ).fetchall()
        tags: set[str] = set()
        for row in rows:
            tags.update(decode_tags(row["tags"]))
        return sorted(tags)
