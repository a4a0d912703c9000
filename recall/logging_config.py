"""
Logging configuration for recall.

Quiet by default; RECALL_VERBOSE=1 or --verbose turns on debug output.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Library loggers that are noisy at INFO
_NOISY_LOGGERS = ("sentence_transformers", "transformers", "urllib3", "filelock")


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to suppress verbose library output.

    Args:
        quiet: If True, suppress verbose output. If False, show everything.
    """
    if quiet:
        warnings.filterwarnings("ignore", category=FutureWarning)
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.ERROR)
    else:
        warnings.filterwarnings("default")
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.NOTSET)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    logging.getLogger("recall").setLevel(logging.DEBUG)


def configure_ops_log(store_path) -> logging.Handler:
    """Configure a persistent operations log for a store.

    Writes to {store_path}/recall-ops.log using a rotating file handler
    (1MB max, 3 backups). Returns the handler so it can be removed on close().
    """
    log_path = Path(store_path) / "recall-ops.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    recall_logger = logging.getLogger("recall")
    recall_logger.addHandler(handler)
    # Let INFO through even in quiet mode
    if recall_logger.level == logging.NOTSET or recall_logger.level > logging.INFO:
        recall_logger.setLevel(logging.INFO)

    return handler
