"""
Pending embedding queue using SQLite.

Chunks whose embedding failed during ingestion, or that were ingested
with ``defer=True``, wait here until ``Recall.process_pending`` embeds
them. The storage and search core never retries; this queue is the
only place where retries happen.

Dequeue is atomic: items transition from 'pending' to 'processing' with
a PID claim inside a single IMMEDIATE transaction. Stale claims from
crashed processors are recovered automatically.

Failed items use exponential backoff before retry (30s, 60s, 120s, ...
up to 1h). Items that exhaust MAX_EMBED_ATTEMPTS are moved to 'failed'
status (dead letter) with their last error.
"""

import json
import logging
import os
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from .types import Chunk

logger = logging.getLogger(__name__)

# Claims older than this are considered stale (processor crashed)
STALE_CLAIM_SECONDS = 600

# Retry backoff: min(BASE * 2^(attempts-1), MAX) seconds
RETRY_BACKOFF_BASE = 30
RETRY_BACKOFF_MAX = 3600

MAX_EMBED_ATTEMPTS = 5


def retry_delay(attempts: int) -> int:
    """Seconds to wait before the next attempt."""
    return min(RETRY_BACKOFF_BASE * (2 ** (max(attempts, 1) - 1)), RETRY_BACKOFF_MAX)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PendingEmbedding:
    """A chunk awaiting its embedding."""
    chunk: Chunk
    queued_at: str
    attempts: int = 0
    last_error: Optional[str] = None

    @property
    def id(self) -> str:
        return self.chunk.id


class PendingEmbeddingQueue:
    """
    SQLite-backed queue of chunks to embed.

    Args:
        queue_path: Path to SQLite database file, or ":memory:"
    """

    def __init__(self, queue_path: Path | str):
        self._queue_path = queue_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        if str(self._queue_path) != ":memory:":
            Path(self._queue_path).parent.mkdir(parents=True, exist_ok=True)
        # Manual transaction control for BEGIN IMMEDIATE on dequeue
        self._conn = sqlite3.connect(
            str(self._queue_path), check_same_thread=False,
            isolation_level=None,
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS pending_embeddings (
                id TEXT PRIMARY KEY NOT NULL,
                parent_id TEXT NOT NULL,
                chunk_json TEXT NOT NULL,
                queued_at TEXT NOT NULL,
                attempts INTEGER DEFAULT 0,
                status TEXT DEFAULT 'pending',
                claimed_by TEXT,
                claimed_at TEXT,
                last_error TEXT,
                retry_after TEXT
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_pending_status
            ON pending_embeddings(status, queued_at)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_pending_parent
            ON pending_embeddings(parent_id)
        """)

    def _recover_stale_claims(self) -> int:
        """Reset items claimed by crashed processors back to pending."""
        cursor = self._conn.execute("""
            UPDATE pending_embeddings
            SET status = 'pending', claimed_by = NULL, claimed_at = NULL
            WHERE status = 'processing'
              AND claimed_at IS NOT NULL
              AND julianday(?) - julianday(claimed_at) > ? / 86400.0
        """, (_now().isoformat(), STALE_CLAIM_SECONDS))
        recovered = cursor.rowcount
        if recovered:
            logger.info("Recovered %d stale embedding claims", recovered)
        return recovered

    def enqueue(self, chunk: Chunk, error: Optional[str] = None) -> None:
        """
        Queue a chunk for embedding.

        Re-queueing the same chunk replaces it and resets its attempts.
        """
        with self._lock:
            self._conn.execute("""
                INSERT OR REPLACE INTO pending_embeddings
                (id, parent_id, chunk_json, queued_at, attempts, status,
                 claimed_by, claimed_at, last_error, retry_after)
                VALUES (?, ?, ?, ?, 0, 'pending', NULL, NULL, ?, NULL)
            """, (
                chunk.id, chunk.parent_id, json.dumps(chunk.to_dict()),
                _now().isoformat(), error,
            ))
        logger.debug("Queued %s for embedding", chunk.id)

    def dequeue(self, limit: int = 10) -> list[PendingEmbedding]:
        """
        Atomically claim the oldest ready items.

        Items move from 'pending' to 'processing' and their attempt count
        is incremented. Call complete() or fail() for each.
        """
        pid = str(os.getpid())
        now = _now().isoformat()

        with self._lock:
            self._recover_stale_claims()
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                rows = self._conn.execute("""
                    SELECT id, chunk_json, queued_at, attempts, last_error
                    FROM pending_embeddings
                    WHERE status = 'pending'
                      AND (retry_after IS NULL OR retry_after <= ?)
                    ORDER BY queued_at ASC, id ASC
                    LIMIT ?
                """, (now, limit)).fetchall()

                items = [
                    PendingEmbedding(
                        chunk=Chunk.from_dict(json.loads(row[1])),
                        queued_at=row[2],
                        attempts=row[3] + 1,
                        last_error=row[4],
                    )
                    for row in rows
                ]
                if items:
                    self._conn.executemany("""
                        UPDATE pending_embeddings
                        SET status = 'processing', claimed_by = ?, claimed_at = ?,
                            attempts = attempts + 1
                        WHERE id = ?
                    """, [(pid, now, item.id) for item in items])
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

        return items

    def complete(self, chunk_id: str) -> None:
        """Remove an item after its embedding was stored."""
        with self._lock:
            self._conn.execute(
                "DELETE FROM pending_embeddings WHERE id = ?", (chunk_id,)
            )

    def fail(self, chunk_id: str, error: Optional[str] = None) -> None:
        """Release a claimed item back to pending with exponential backoff."""
        with self._lock:
            row = self._conn.execute(
                "SELECT attempts FROM pending_embeddings WHERE id = ?", (chunk_id,)
            ).fetchone()
            attempts = row[0] if row else 1
            delay = retry_delay(attempts)
            retry_at = (_now() + timedelta(seconds=delay)).isoformat()
            self._conn.execute("""
                UPDATE pending_embeddings
                SET status = 'pending', claimed_by = NULL, claimed_at = NULL,
                    last_error = ?, retry_after = ?
                WHERE id = ?
            """, (error, retry_at, chunk_id))

        logger.info(
            "Embedding %s failed (attempt %d), retry after %ds: %s",
            chunk_id, attempts, delay, error or "unknown",
        )

    def abandon(self, chunk_id: str, error: Optional[str] = None) -> None:
        """Move an item to 'failed' status (dead letter)."""
        with self._lock:
            self._conn.execute("""
                UPDATE pending_embeddings
                SET status = 'failed', claimed_by = NULL, claimed_at = NULL,
                    last_error = ?
                WHERE id = ?
            """, (error, chunk_id))
        logger.warning("Abandoned embedding %s: %s", chunk_id, error or "max attempts")

    def discard_parent(self, parent_id: str) -> int:
        """Drop every queued chunk of an entry. Returns count removed."""
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM pending_embeddings WHERE parent_id = ?", (parent_id,)
            )
        return cursor.rowcount

    def count(self) -> int:
        """Count of pending items (excludes processing and failed)."""
        return self._conn.execute(
            "SELECT COUNT(*) FROM pending_embeddings WHERE status = 'pending'"
        ).fetchone()[0]

    def stats(self) -> dict:
        """Queue statistics including status breakdown."""
        by_status = {
            row[0]: row[1]
            for row in self._conn.execute(
                "SELECT status, COUNT(*) FROM pending_embeddings GROUP BY status"
            )
        }
        row = self._conn.execute("""
            SELECT COUNT(*), COUNT(DISTINCT parent_id), MAX(attempts), MIN(queued_at)
            FROM pending_embeddings
        """).fetchone()
        return {
            "pending": by_status.get("pending", 0),
            "processing": by_status.get("processing", 0),
            "failed": by_status.get("failed", 0),
            "total": row[0],
            "entries": row[1],
            "max_attempts": row[2] or 0,
            "oldest": row[3],
            "queue_path": str(self._queue_path),
        }

    def list_failed(self) -> list[dict]:
        """Items in failed (dead letter) status, oldest first."""
        rows = self._conn.execute("""
            SELECT id, parent_id, attempts, last_error, queued_at
            FROM pending_embeddings
            WHERE status = 'failed'
            ORDER BY queued_at ASC
        """).fetchall()
        return [
            {
                "id": row[0], "parent_id": row[1], "attempts": row[2],
                "last_error": row[3], "queued_at": row[4],
            }
            for row in rows
        ]

    def retry_failed(self) -> int:
        """Reset failed items to pending with fresh attempt counters."""
        with self._lock:
            cursor = self._conn.execute("""
                UPDATE pending_embeddings
                SET status = 'pending', attempts = 0, claimed_by = NULL,
                    claimed_at = NULL, last_error = NULL, retry_after = NULL
                WHERE status = 'failed'
            """)
        count = cursor.rowcount
        if count:
            logger.info("Reset %d failed embeddings back to pending", count)
        return count

    def clear(self) -> int:
        """Remove all items. Returns count cleared."""
        with self._lock:
            count = self._conn.execute(
                "SELECT COUNT(*) FROM pending_embeddings"
            ).fetchone()[0]
            self._conn.execute("DELETE FROM pending_embeddings")
        return count

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
