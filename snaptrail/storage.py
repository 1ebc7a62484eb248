"""
Snapshot Storage

Joins the index (records) and the blob store (content) into the
operations both the lifecycle manager and the eviction service build
on: reading a snapshot's content and deleting a snapshot completely.

Deletion keeps diff lineage intact. A snapshot whose diff_info points at
the deleted one is relinked to the deleted snapshot's own predecessor,
with its line counts recomputed against that older content; if the
deleted snapshot was a chain root, its successor becomes the new root.
This is what keeps every previous_snapshot_id pointing at a snapshot
that still exists, whether the deletion came from a squash, an
explicit delete or an eviction policy.

Reads and deletes are reported through two hooks so the eviction
service can keep its last-access (LRU) bookkeeping current.

Storage also owns the per-file locks. Anything that reads a chain head
and writes after it (create, squash, content rewrite) and every delete
holds the file's lock, so a head cannot vanish between being diffed
against and gaining its successor. Lock order is file lock, then index
lock. A lock is dropped from the registry once nobody holds or waits
on it.
"""

import logging
import threading
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path

from .blobs import BlobStore
from .diff import compute_diff
from .errors import PathViolation
from .index import SnapshotIndex
from .models import DiffInfo, Snapshot, SnapshotPatch

logger = logging.getLogger(__name__)


class SnapshotStorage:
    def __init__(self, index: SnapshotIndex, blobs: BlobStore):
        self.index = index
        self.blobs = blobs
        self._on_access: Callable[[str], None] | None = None
        self._on_delete: Callable[[str], None] | None = None
        # file_id -> [lock, number of threads holding or waiting on it]
        self._file_locks: dict[str, list] = {}
        self._file_locks_guard = threading.Lock()

    @property
    def root(self) -> Path:
        return self.blobs.root

    def set_on_access(self, callback: Callable[[str], None] | None):
        self._on_access = callback

    def set_on_delete(self, callback: Callable[[str], None] | None):
        self._on_delete = callback

    def _accessed(self, snapshot_id: str):
        if self._on_access is not None:
            self._on_access(snapshot_id)

    @contextmanager
    def file_lock(self, file_id: str):
        """Serialize head-dependent writes and deletes for one file. Re-entrant."""
        with self._file_locks_guard:
            entry = self._file_locks.get(file_id)
            if entry is None:
                entry = self._file_locks[file_id] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._file_locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._file_locks[file_id]

    # ── Reads ─────────────────────────────────────────────────────

    def get(self, snapshot_id: str) -> Snapshot | None:
        snapshot = self.index.get(snapshot_id)
        if snapshot is not None:
            self._accessed(snapshot_id)
        return snapshot

    def chain(self, file_id: str) -> list[Snapshot]:
        snapshots = self.index.by_file(file_id)
        for snapshot in snapshots:
            self._accessed(snapshot.id)
        return snapshots

    def read_content(self, snapshot: Snapshot) -> str:
        content = self.blobs.get(snapshot.content_ref, compressed=snapshot.metadata.compressed)
        self._accessed(snapshot.id)
        return content

    # ── Sizes ─────────────────────────────────────────────────────

    def total_size(self) -> int:
        return self.blobs.total_size()

    def blob_size(self, snapshot: Snapshot) -> int:
        """Bytes the snapshot occupies on disk, falling back to its recorded size."""
        size = self.blobs.size_of(snapshot.content_ref)
        return size if size > 0 else snapshot.metadata.size

    # ── Delete ────────────────────────────────────────────────────

    def delete(self, snapshot: Snapshot):
        """
        Remove a snapshot's blob and record, relinking its successors.

        A blob that cannot be removed is logged and left behind; a path
        violation is never tolerated.
        """
        with self.file_lock(snapshot.file_id):
            # The record may have been rewritten since the caller read it
            snapshot = self.index.get(snapshot.id) or snapshot
            try:
                self.blobs.delete(snapshot.content_ref)
            except PathViolation:
                raise
            except OSError as e:
                logger.error("Failed to delete snapshot content %s: %s", snapshot.content_ref, e)

            with self.index.transaction():
                removed = self.index.remove(snapshot.id)
                if removed is not None:
                    self._relink_successors(removed)

        if self._on_delete is not None:
            self._on_delete(snapshot.id)
        logger.debug("Deleted snapshot %s for file: %s", snapshot.id, snapshot.file_id)

    def _relink_successors(self, removed: Snapshot):
        predecessor_id = removed.diff_info.previous_snapshot_id if removed.diff_info else None
        predecessor = self.index.get(predecessor_id) if predecessor_id else None

        for successor in self.index.by_file(removed.file_id):
            if not successor.diff_info or successor.diff_info.previous_snapshot_id != removed.id:
                continue
            if predecessor is None:
                patch = SnapshotPatch(clear_diff_info=True)
            else:
                patch = SnapshotPatch(diff_info=self._rediff(predecessor, successor).to_dict())
            self.index.upsert(patch.apply(successor))
            logger.debug(
                "Relinked snapshot %s from %s to %s", successor.id, removed.id, predecessor_id or "chain root"
            )

    def rediff(self, older: Snapshot, newer: Snapshot) -> DiffInfo:
        """DiffInfo for ``newer`` measured against ``older``."""
        counts = compute_diff(self.read_content(older), self.read_content(newer))
        return DiffInfo(
            added_lines=counts.added_lines,
            removed_lines=counts.removed_lines,
            modified_lines=counts.modified_lines,
            previous_snapshot_id=older.id,
        )

    def _rediff(self, older: Snapshot, newer: Snapshot) -> DiffInfo:
        try:
            return self.rediff(older, newer)
        except OSError as e:
            # Content unreadable: keep the old counts, fix the link
            logger.warning("Could not recompute diff for %s against %s: %s", newer.id, older.id, e)
            old = newer.diff_info or DiffInfo()
            return DiffInfo(
                added_lines=old.added_lines,
                removed_lines=old.removed_lines,
                modified_lines=old.modified_lines,
                previous_snapshot_id=older.id,
            )
