"""
Error types and error logging for trove.

Single-item operations raise these; batch operations (scans, listing,
reconciliation) log and count instead. The CLI logs full stack traces to a
file while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class TroveError(Exception):
    """Base class for errors raised by the knowledge store."""


class NotFoundError(TroveError, KeyError):
    """A targeted operation named a note (or path) that does not exist."""

    def __init__(self, kind: str, id: str):
        self.kind = kind
        self.id = id
        super().__init__(f"{kind} not found: {id}")

    def __str__(self) -> str:
        # KeyError would repr() the message
        return self.args[0]


class ValidationError(TroveError, ValueError):
    """Caller input that cannot be stored or queried."""


class EmbeddingError(TroveError):
    """The embedding provider failed or timed out.

    Never fatal inside the engine: see ``embeddings.safe_embed``.
    """


def _error_log_path() -> Path:
    """Resolve error log path, respecting TROVE_STORE_PATH."""
    store = os.environ.get("TROVE_STORE_PATH")
    if store:
        return Path(store) / "trove-errors.log"
    return Path.home() / ".trove" / "trove-errors.log"


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
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
