"""
Error taxonomy for the history engine.

Correctness paths (dedup, diff, path safety, persistence) raise these.
Maintenance paths (batch delete, eviction sweeps, periodic cleanup) log
per-item failures and keep going, then report them in aggregate.
"""


class HistoryError(Exception):
    """Base class for all snaptrail errors."""


class SnapshotNotFound(HistoryError, LookupError):  # noqa: N818
    """Raised when a snapshot id is not present in the index."""

    def __init__(self, snapshot_id: str):
        super().__init__(f"Snapshot not found: {snapshot_id}")
        self.snapshot_id = snapshot_id


class PathViolation(HistoryError):  # noqa: N818
    """Raised when a content reference would resolve outside the storage root."""

    def __init__(self, path: str, reason: str = "path traversal detected"):
        super().__init__(f"Invalid path: {reason}. Path: {path}")
        self.path = path


class PersistFailure(HistoryError):  # noqa: N818
    """Raised when a blob or index write fails even after freeing space."""


class ValidationError(HistoryError, ValueError):
    """Raised for invalid arguments, before any I/O is attempted."""


class ContentTooLarge(ValidationError):  # noqa: N818
    """Raised when content exceeds the configured max file size."""

    def __init__(self, size: int, limit: int):
        super().__init__(f"Content size {size} bytes exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit


class BatchDeleteError(HistoryError):
    """Raised after a batch delete in which some items failed.

    Items that could be deleted were deleted; ``errors`` maps each failed
    snapshot id to its error message.
    """

    def __init__(self, errors: dict[str, str]):
        lines = "\n".join(f"Failed to delete snapshot {sid}: {msg}" for sid, msg in errors.items())
        super().__init__(f"Failed to delete some snapshots:\n{lines}")
        self.errors = errors
