"""
Snaptrail: Local Snapshot History

A per-file version history engine for editor integrations: every edit
or save is captured as an immutable content snapshot, deduplicated and
diffed against its predecessor, with storage bounded by TTL, per-file
count and total-size eviction, and an approve/discard workflow that
squashes a run of unapproved snapshots into one.
"""

__version__ = "0.1.0"

__all__ = [
    # Core
    "LocalHistory",
    "HistoryManager",
    "HistoryConfig",
    # Records
    "Snapshot",
    "SnapshotSource",
    "SnapshotFilters",
    "SnapshotPatch",
    # Errors
    "HistoryError",
    "SnapshotNotFound",
    "PathViolation",
    "PersistFailure",
    "ValidationError",
    # Squash
    "approve_all",
    "discard_all",
]


# Lazy imports: only resolve when accessed
def __getattr__(name):
    if name == "LocalHistory":
        from .history import LocalHistory

        return LocalHistory
    if name == "HistoryManager":
        from .manager import HistoryManager

        return HistoryManager
    if name == "HistoryConfig":
        from .config import HistoryConfig

        return HistoryConfig
    if name in ("Snapshot", "SnapshotSource", "SnapshotFilters", "SnapshotPatch"):
        from . import models

        return getattr(models, name)
    if name in ("HistoryError", "SnapshotNotFound", "PathViolation", "PersistFailure", "ValidationError"):
        from . import errors

        return getattr(errors, name)
    if name in ("approve_all", "discard_all"):
        from .squash import approve_all, discard_all

        return approve_all if name == "approve_all" else discard_all
    raise AttributeError(f"module 'snaptrail' has no attribute {name!r}")
