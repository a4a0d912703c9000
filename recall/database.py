"""
Shared SQLite database for documents, the full-text index and chunk
embeddings.

One connection per store, shared by DocumentStore, VectorStore and
LexicalSearch behind a lock. The connection runs in autocommit mode
(isolation_level=None) so writes use explicit BEGIN IMMEDIATE
transactions; sqlite3 errors are re-raised as classified recall errors.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .errors import StorageFailure

logger = logging.getLogger(__name__)

MEMORY = ":memory:"


class Database:
    """
    SQLite connection with schema migrations applied on open.

    Args:
        db_path: Path to the database file, or ":memory:"
        migrate: Apply pending migrations on open (default True)
    """

    def __init__(self, db_path: Path | str, *, migrate: bool = True):
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._open()
        if migrate:
            self.migrate()

    def _open(self) -> None:
        if str(self._db_path) != MEMORY:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(
                str(self._db_path), check_same_thread=False,
                isolation_level=None,
            )
            self._conn.row_factory = sqlite3.Row
            # WAL lets readers proceed while a writer holds the lock
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
            self._conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error as e:
            raise StorageFailure(f"cannot open {self._db_path}: {e}") from e

    @property
    def path(self) -> Path | str:
        return self._db_path

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageFailure("database is closed")
        return self._conn

    def migrate(self) -> list[int]:
        """Apply pending schema migrations. Returns applied versions."""
        from .migrations import migrate
        return migrate(self)

    @contextmanager
    def transaction(self, error_cls=StorageFailure) -> Iterator[sqlite3.Connection]:
        """
        Run a block inside BEGIN IMMEDIATE ... COMMIT.

        Any exception rolls back the whole block; sqlite3 errors are
        re-raised as ``error_cls``.
        """
        with self._lock:
            conn = self.conn
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise error_cls(str(e)) from e
            try:
                yield conn
            except sqlite3.Error as e:
                conn.rollback()
                raise error_cls(str(e)) from e
            except BaseException:
                conn.rollback()
                raise
            try:
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise error_cls(str(e)) from e

    @contextmanager
    def reading(self, error_cls=StorageFailure) -> Iterator[sqlite3.Connection]:
        """Serialize a read; sqlite3 errors are re-raised as ``error_cls``."""
        with self._lock:
            try:
                yield self.conn
            except sqlite3.Error as e:
                raise error_cls(str(e)) from e

    def table_exists(self, name: str) -> bool:
        with self.reading() as conn:
            row = conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type IN ('table', 'view') AND name = ?",
                (name,),
            ).fetchone()
        return row is not None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

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
