"""
Snapshot Records

A Snapshot is one captured version of a tracked file. Records are
immutable once written except for a small set of fields that the
approve/discard workflow and metadata patches may change: acceptance,
discard marker, metadata flags and the diff lineage.

Snapshots for one file form a chain, ordered newest-first by the index.
Each record carries a DiffInfo describing how it differs from its
predecessor in the chain; the chain root has none.
"""

import time
from dataclasses import dataclass, field
from enum import Enum

from .errors import ValidationError
from .serializable import Serializable


class SnapshotSource(str, Enum):
    TYPING = "typing"            # Debounced editor change
    SAVE = "save"                # Document saved
    FILESYSTEM = "filesystem"    # External change seen by a watcher
    MANUAL = "manual"            # Explicit user action


@dataclass
class SnapshotMetadata(Serializable):
    size: int = 0
    line_count: int = 0
    encoding: str | None = "utf-8"
    deleted: bool = False            # Tombstone for a file removal event
    compressed: bool = False
    created: bool = False            # File creation event
    restored_from: str | None = None


@dataclass
class DiffInfo(Serializable):
    added_lines: int = 0
    removed_lines: int = 0
    modified_lines: int = 0
    previous_snapshot_id: str | None = None


@dataclass
class Snapshot(Serializable):
    id: str
    file_id: str                     # URI/path string of the tracked file, not a filesystem path
    content_ref: str                 # Blob path relative to the storage root
    timestamp: float
    source: SnapshotSource
    content_hash: str
    metadata: SnapshotMetadata = field(default_factory=SnapshotMetadata)
    diff_info: DiffInfo | None = None
    accepted: bool = False
    accepted_timestamp: float | None = None
    discarded: bool = False

    @property
    def is_tombstone(self) -> bool:
        return bool(self.metadata.deleted)


_PATCHABLE_FIELDS = (
    "accepted",
    "accepted_timestamp",
    "discarded",
    "source",
    "timestamp",
    "content_hash",
)


@dataclass
class SnapshotPatch:
    """
    A partial update to a snapshot record.

    Top-level fields replace the record's values when set. ``metadata``
    and ``diff_info`` are merged key-by-key into the existing nested
    objects rather than replacing them; a patch that sets diff_info on a
    chain root creates one. ``clear_diff_info`` drops the lineage
    entirely (the snapshot becomes a chain root).
    """
    accepted: bool | None = None
    accepted_timestamp: float | None = None
    discarded: bool | None = None
    source: SnapshotSource | None = None
    timestamp: float | None = None
    content_hash: str | None = None
    metadata: dict | None = None
    diff_info: dict | None = None
    clear_diff_info: bool = False

    @classmethod
    def from_dict(cls, d: dict) -> "SnapshotPatch":
        unknown = set(d) - set(_PATCHABLE_FIELDS) - {"metadata", "diff_info", "clear_diff_info"}
        if unknown:
            raise ValidationError(f"Unknown snapshot fields in patch: {', '.join(sorted(unknown))}")
        patch = cls(**d)
        if patch.source is not None:
            try:
                patch.source = SnapshotSource(patch.source)
            except ValueError:
                raise ValidationError(f"Unknown snapshot source: {patch.source!r}") from None
        return patch

    def apply(self, snapshot: Snapshot) -> Snapshot:
        """Return a new Snapshot with this patch merged in."""
        data = snapshot.to_dict()
        for name in _PATCHABLE_FIELDS:
            value = getattr(self, name)
            if value is not None:
                data[name] = value.value if isinstance(value, Enum) else value

        if self.metadata:
            _reject_unknown(self.metadata, SnapshotMetadata, "metadata")
            data["metadata"] = {**data["metadata"], **self.metadata}

        if self.clear_diff_info:
            data["diff_info"] = None
        elif self.diff_info:
            _reject_unknown(self.diff_info, DiffInfo, "diff_info")
            data["diff_info"] = {**(data.get("diff_info") or {}), **self.diff_info}

        return Snapshot.from_dict(data)


def _reject_unknown(values: dict, cls, label: str):
    known = set(cls.__dataclass_fields__)
    unknown = set(values) - known
    if unknown:
        raise ValidationError(f"Unknown {label} fields in patch: {', '.join(sorted(unknown))}")


@dataclass
class SnapshotFilters:
    """Filters for listing a file's chain. Time range is [from_ts, to_ts)."""
    accepted: bool | None = None
    source: SnapshotSource | None = None
    from_ts: float | None = None
    to_ts: float | None = None
    limit: int | None = None
    cursor_id: str | None = None


@dataclass
class StorageMetadata(Serializable):
    version: str
    created: float = field(default_factory=time.time)
    last_cleanup: float = 0.0
    total_snapshots: int = 0
    total_size: int = 0


@dataclass
class LimitStatus(Serializable):
    """Read-only report of which storage limits are currently exceeded."""
    count_exceeded: bool
    size_exceeded: bool
    ttl_exceeded: bool
    files_with_count_exceeded: int
    current_size: int
    max_size: int
    snapshots_older_than_ttl: int


@dataclass
class CleanupReport(Serializable):
    deleted_by_ttl: int = 0
    deleted_by_size: int = 0
    deleted_by_count: int = 0
    errors: dict = field(default_factory=dict)    # policy name -> error message
    elapsed_ms: float = 0.0

    @property
    def total_deleted(self) -> int:
        return self.deleted_by_ttl + self.deleted_by_size + self.deleted_by_count


@dataclass
class SquashResult:
    file_id: str
    kept: Snapshot | None = None
    baseline: Snapshot | None = None
    deleted_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)
    restore_content: str | None = None

    def to_dict(self) -> dict:
        return {
            "file_id": self.file_id,
            "kept": self.kept.to_dict() if self.kept else None,
            "baseline": self.baseline.to_dict() if self.baseline else None,
            "deleted_ids": self.deleted_ids,
            "failed_ids": self.failed_ids,
        }
