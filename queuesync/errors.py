"""
Error types and error logging for queuesync.

Every failure that crosses a component boundary is one of the classes
below. The CLI logs full stack traces for debugging while showing clean
messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class SyncError(Exception):
    """Base class for all queuesync errors."""


class NotConfigured(SyncError):
    """Required credentials or target are missing. Raised before any network call."""


class ConflictError(SyncError):
    """The presented revision no longer matches the stored object.

    The proposed content was discarded; nothing was written.
    """

    def __init__(self, message: str = "Remote document has changed", *, revision: Optional[str] = None):
        super().__init__(message)
        self.revision = revision


class DuplicateRecord(ConflictError):
    """The destination already holds a record with this external id."""

    def __init__(self, message: str, *, app_id: Optional[int] = None):
        super().__init__(message)
        self.app_id = app_id


class NotFound(SyncError):
    """A remote object or record does not exist."""


class TransientNetworkError(SyncError):
    """Timeout, connection failure, or a 5xx response."""


class ValidationError(SyncError):
    """Malformed input to a mutation, raised by the transform before any write."""


class AuthError(SyncError):
    """Credentials were rejected (401/403)."""


class RemoteError(SyncError):
    """Any other non-success response from a remote API."""

    def __init__(self, message: str, *, status_code: int):
        super().__init__(message)
        self.status_code = status_code


def _error_log_path() -> Path:
    """Resolve error log path, respecting QUEUESYNC_HOME."""
    home = os.environ.get("QUEUESYNC_HOME")
    if home:
        return Path(home) / "queuesync-errors.log"
    return Path.home() / ".queuesync" / "queuesync-errors.log"


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
