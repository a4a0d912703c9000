"""
Error taxonomy and error logging for recall.

Storage and search code raise these classified errors; the CLI logs full
stack traces to a file while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class RecallError(Exception):
    """Base class for all recall errors."""


class InvalidDimension(RecallError, ValueError):
    """A vector does not have the store's fixed embedding dimension."""

    def __init__(self, expected: int, got: int):
        self.expected = expected
        self.got = got
        super().__init__(
            f"Invalid embedding dimension: expected {expected}, got {got}"
        )


class StorageFailure(RecallError):
    """Storage I/O failed (disk full, corruption, locked database)."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Storage failure: {reason}")


class SearchFailure(RecallError):
    """A search query could not be executed."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Search failure: {reason}")


class EmptyQuery(RecallError):
    """Query text contained no searchable terms after sanitization."""

    def __init__(self, query: str = ""):
        self.query = query
        super().__init__(f"Query has no searchable terms: {query!r}")


def _error_log_path() -> Path:
    """Resolve error log path, respecting RECALL_STORE_PATH."""
    store = os.environ.get("RECALL_STORE_PATH")
    if store:
        return Path(store) / "recall-errors.log"
    return Path.home() / ".recall" / "recall-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}] {type(exc).__name__}")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write(traceback.format_exc())
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
