"""
History Manager

The lifecycle of snapshots: create, read, list, patch, delete, plus the
short-lived suppression controls editor glue uses around programmatic
edits.

Creating a snapshot is the hot path. For one file it runs, in order:

    1. suppression checks (paused file, one-shot ignored content hash)
    2. hash the content
    3. dedup against the chain head (same hash -> return the head)
    4. diff against the head's content
    5. write the content blob
    6. upsert the record into the index
    7. check limits and evict (errors logged, never fatal)
    8. notify the change callback (errors logged, never fatal)

Steps 3-6 read the chain head and append after it, so they run under
the file's lock (see SnapshotStorage.file_lock). Deletes take the same
lock, so neither a racing create nor an eviction can move the head
between the diff and the append. Different files proceed in parallel.

If writing the blob or the record fails (typically a full disk), the
manager releases the file lock, asks the eviction service to free space
by size, and retries exactly once before giving up with PersistFailure.
The retry re-reads the head under the lock and diffs against it again
if cleanup (or another writer) moved it.
"""

import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterable

from .config import HistoryConfig
from .diff import compute_diff, compute_hash, count_lines
from .errors import (
    BatchDeleteError,
    ContentTooLarge,
    PathViolation,
    PersistFailure,
    SnapshotNotFound,
    ValidationError,
)
from .eviction import EvictionService
from .models import (
    DiffInfo,
    Snapshot,
    SnapshotFilters,
    SnapshotMetadata,
    SnapshotPatch,
    SnapshotSource,
)
from .storage import SnapshotStorage

logger = logging.getLogger(__name__)

DEFAULT_PAUSE_MS = 2000
IGNORE_HASH_WINDOW_MS = 5000

# Metadata flags a caller may set when creating a snapshot
_CREATE_METADATA_KEYS = frozenset({"deleted", "created", "restored_from", "encoding"})


class HistoryManager:
    def __init__(
        self,
        storage: SnapshotStorage,
        eviction: EvictionService,
        config: HistoryConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.storage = storage
        self.eviction = eviction
        self.config = config or HistoryConfig()
        self.clock = clock
        self._on_change: Callable[[], None] | None = None

        # Suppression state: key -> monotonic deadline
        self._paused: dict[str, float] = {}
        self._ignored_hashes: dict[str, float] = {}
        self._suppression_lock = threading.Lock()

    def set_on_change_callback(self, callback: Callable[[], None] | None):
        self._on_change = callback

    def _notify_change(self, context: str):
        if self._on_change is None:
            return
        try:
            self._on_change()
        except Exception:
            logger.exception("Error in on-change callback (%s)", context)

    def file_lock(self, file_id: str):
        return self.storage.file_lock(file_id)

    # ── Suppression ───────────────────────────────────────────────

    def pause_snapshot_creation(self, file_id: str, duration_ms: float = DEFAULT_PAUSE_MS):
        """Skip snapshots for a file until resumed, or until duration_ms passes."""
        if duration_ms is None or duration_ms < 0:
            raise ValidationError(f"duration_ms must be non-negative, got {duration_ms}")
        with self._suppression_lock:
            self._paused[file_id] = self.clock() + duration_ms / 1000.0
        logger.debug("Snapshot creation paused for file: %s", file_id)

    def resume_snapshot_creation(self, file_id: str):
        with self._suppression_lock:
            if self._paused.pop(file_id, None) is not None:
                logger.debug("Snapshot creation resumed (manual) for file: %s", file_id)

    def is_paused(self, file_id: str) -> bool:
        with self._suppression_lock:
            deadline = self._paused.get(file_id)
            if deadline is None:
                return False
            if self.clock() >= deadline:
                del self._paused[file_id]
                logger.debug("Snapshot creation resumed (timeout) for file: %s", file_id)
                return False
            return True

    def ignore_content_hash(self, content_hash: str, window_ms: float = IGNORE_HASH_WINDOW_MS):
        """Skip the next snapshot whose content has this hash (one shot, self-expiring)."""
        with self._suppression_lock:
            self._ignored_hashes[content_hash] = self.clock() + window_ms / 1000.0

    def _consume_ignored(self, content_hash: str) -> bool:
        with self._suppression_lock:
            now = self.clock()
            for h in [h for h, deadline in self._ignored_hashes.items() if now >= deadline]:
                del self._ignored_hashes[h]
            return self._ignored_hashes.pop(content_hash, None) is not None

    # ── Create ────────────────────────────────────────────────────

    def create_snapshot(
        self,
        file_id: str,
        content: str,
        source: SnapshotSource | str = SnapshotSource.MANUAL,
        metadata: dict | None = None,
    ) -> Snapshot | None:
        """
        Capture content as the new head of file_id's chain.

        Returns the new snapshot, or the existing head when the content
        is a duplicate or creation is suppressed. Returns None only when
        creation is paused for a file that has no history yet.
        """
        try:
            source = SnapshotSource(source)
        except ValueError:
            raise ValidationError(f"Unknown snapshot source: {source!r}") from None
        extra = dict(metadata or {})
        unknown = set(extra) - _CREATE_METADATA_KEYS
        if unknown:
            raise ValidationError(f"Unsupported snapshot metadata: {', '.join(sorted(unknown))}")

        size = len(content.encode("utf-8"))
        if size > self.config.max_file_size:
            raise ContentTooLarge(size, self.config.max_file_size)

        logger.debug("Creating snapshot for file: %s, source: %s", file_id, source.value)
        tombstone = bool(extra.get("deleted", False))
        failure = None

        with self.file_lock(file_id):
            if self.is_paused(file_id):
                logger.debug("Snapshot creation skipped (paused) for file: %s", file_id)
                return self.storage.index.head(file_id)

            content_hash = compute_hash(content)

            if self._consume_ignored(content_hash):
                head = self.storage.index.head(file_id)
                if head is not None:
                    logger.debug("Snapshot creation skipped (ignored hash) for file: %s", file_id)
                    return head

            head = self.storage.index.head(file_id)
            if self._is_duplicate(head, content_hash, tombstone):
                return head

            diff_info = self._diff_against(head, content)
            try:
                snapshot = self._persist_new(file_id, content, content_hash, source, size, diff_info, extra)
            except (PathViolation, ValidationError):
                raise
            except Exception as e:
                failure = e

        if failure is not None:
            logger.warning("Failed to save snapshot for file: %s, attempting to free space: %s", file_id, failure)
            snapshot = self._retry_after_cleanup(file_id, content, content_hash, source, size, extra)

        self._enforce_limits(file_id)
        self._notify_change("create")
        logger.info(
            "Snapshot created: %s for file: %s, source: %s, size: %s bytes",
            snapshot.id, file_id, source.value, size,
        )
        return snapshot

    def record_deletion(self, file_id: str, source: SnapshotSource | str = SnapshotSource.FILESYSTEM):
        """Append a tombstone snapshot (empty content) for a removed file."""
        return self.create_snapshot(file_id, "", source, metadata={"deleted": True})

    def _is_duplicate(self, head: Snapshot | None, content_hash: str, tombstone: bool) -> bool:
        if head is None or head.content_hash != content_hash or head.is_tombstone != tombstone:
            return False
        logger.debug("Snapshot creation skipped (duplicate): %s for file: %s", head.id, head.file_id)
        self.eviction.touch(head.id)
        return True

    def _diff_against(self, head: Snapshot | None, content: str) -> DiffInfo | None:
        if head is None:
            return None
        try:
            previous = self.storage.read_content(head)
        except PathViolation:
            raise
        except OSError as e:
            logger.warning("Failed to read previous snapshot for diff: %s", e)
            return None
        counts = compute_diff(previous, content)
        return DiffInfo(
            added_lines=counts.added_lines,
            removed_lines=counts.removed_lines,
            modified_lines=counts.modified_lines,
            previous_snapshot_id=head.id,
        )

    def _persist_new(self, file_id, content, content_hash, source, size, diff_info, extra) -> Snapshot:
        """Write the blob, then the record. A failed record write removes the blob."""
        snapshot_id = str(uuid.uuid4())
        content_ref = self.storage.blobs.put(snapshot_id, content, file_id)
        snapshot = Snapshot(
            id=snapshot_id,
            file_id=file_id,
            content_ref=content_ref,
            timestamp=time.time(),
            source=source,
            content_hash=content_hash,
            metadata=SnapshotMetadata(
                size=size,
                line_count=count_lines(content),
                encoding=extra.get("encoding", "utf-8"),
                deleted=bool(extra.get("deleted", False)),
                compressed=content_ref.endswith(".gz"),
                created=bool(extra.get("created", False)),
                restored_from=extra.get("restored_from"),
            ),
            diff_info=diff_info,
        )
        try:
            self.storage.index.upsert(snapshot)
        except Exception:
            self._discard_blob(content_ref)
            raise
        return snapshot

    def _retry_after_cleanup(self, file_id, content, content_hash, source, size, extra) -> Snapshot:
        # Runs without the file lock: cleanup takes file locks of its own
        try:
            self.eviction.cleanup_by_size(self.config.max_storage_size)
        except Exception:
            logger.error("Cleanup before retry failed", exc_info=True)

        with self.file_lock(file_id):
            # Cleanup or another writer may have moved the head since the first diff
            head = self.storage.index.head(file_id)
            if self._is_duplicate(head, content_hash, bool(extra.get("deleted", False))):
                return head
            diff_info = self._diff_against(head, content)
            try:
                snapshot = self._persist_new(file_id, content, content_hash, source, size, diff_info, extra)
            except (PathViolation, ValidationError):
                raise
            except Exception as e:
                logger.error("Failed to save snapshot for file: %s after cleanup attempt: %s", file_id, e)
                raise PersistFailure(f"Failed to save snapshot for file {file_id}: {e}") from e
        logger.info("Successfully saved snapshot %s after cleanup", snapshot.id)
        return snapshot

    def _discard_blob(self, content_ref: str):
        try:
            self.storage.blobs.delete(content_ref)
        except OSError as e:
            logger.error("Failed to remove orphaned content %s: %s", content_ref, e)

    def _enforce_limits(self, file_id: str):
        try:
            status = self.eviction.check_limits()
            if status.count_exceeded and self.eviction.file_count_exceeded(file_id):
                self.eviction.cleanup_by_count(file_id, self.config.max_snapshots_per_file)
            if status.size_exceeded:
                self.eviction.cleanup_by_size(self.config.max_storage_size)
        except Exception:
            logger.exception("Error during cleanup after snapshot creation")

    # ── Read ──────────────────────────────────────────────────────

    def get_snapshot(self, snapshot_id: str) -> Snapshot | None:
        return self.storage.get(snapshot_id)

    def _require(self, snapshot_id: str) -> Snapshot:
        snapshot = self.storage.get(snapshot_id)
        if snapshot is None:
            raise SnapshotNotFound(snapshot_id)
        return snapshot

    def get_snapshot_content(self, snapshot: Snapshot | str) -> str:
        if isinstance(snapshot, str):
            snapshot = self._require(snapshot)
        return self.storage.read_content(snapshot)

    def get_snapshots_for_file(
        self, file_id: str, filters: SnapshotFilters | None = None
    ) -> list[Snapshot]:
        """A file's chain, newest first, optionally filtered and paginated."""
        snapshots = self.storage.chain(file_id)
        if filters is None:
            return snapshots

        if filters.accepted is not None:
            snapshots = [s for s in snapshots if s.accepted == filters.accepted]
        if filters.source is not None:
            source = SnapshotSource(filters.source)
            snapshots = [s for s in snapshots if s.source == source]
        if filters.from_ts is not None:
            snapshots = [s for s in snapshots if s.timestamp >= filters.from_ts]
        if filters.to_ts is not None:
            snapshots = [s for s in snapshots if s.timestamp < filters.to_ts]
        if filters.cursor_id is not None:
            for i, s in enumerate(snapshots):
                if s.id == filters.cursor_id:
                    snapshots = snapshots[i + 1:]
                    break
        if filters.limit is not None and filters.limit > 0:
            snapshots = snapshots[: filters.limit]
        return snapshots

    def get_tracked_files(self) -> list[str]:
        """File ids with history, most recently changed first."""
        heads = []
        for file_id in self.storage.index.file_ids():
            head = self.storage.index.head(file_id)
            if head is not None:
                heads.append((head.timestamp, file_id))
        heads.sort(reverse=True)
        return [file_id for _, file_id in heads]

    # ── Update ────────────────────────────────────────────────────

    def update_snapshot(self, snapshot_id: str, patch: SnapshotPatch | dict) -> Snapshot:
        if isinstance(patch, dict):
            patch = SnapshotPatch.from_dict(patch)

        with self.storage.index.transaction():
            current = self.storage.index.get(snapshot_id)
            if current is None:
                raise SnapshotNotFound(snapshot_id)
            updated = patch.apply(current)
            self.storage.index.upsert(updated)

        self._notify_change("update")
        logger.debug("Snapshot updated: %s", snapshot_id)
        return updated

    def update_snapshot_content(self, snapshot_id: str, content: str) -> Snapshot:
        """
        Rewrite a snapshot's content in place.

        Only the approve flow uses this, to fold the final edits into
        the snapshot it keeps. Hash, size, line count and the
        compression flag are refreshed to match.
        """
        snapshot = self._require(snapshot_id)
        size = len(content.encode("utf-8"))
        if size > self.config.max_file_size:
            raise ContentTooLarge(size, self.config.max_file_size)

        with self.file_lock(snapshot.file_id):
            content_ref = self.storage.blobs.put(snapshot.id, content, snapshot.file_id)
            patch = SnapshotPatch(
                content_hash=compute_hash(content),
                metadata={
                    "size": size,
                    "line_count": count_lines(content),
                    "compressed": content_ref.endswith(".gz"),
                },
            )
            with self.storage.index.transaction():
                current = self.storage.index.get(snapshot_id)
                if current is None:
                    raise SnapshotNotFound(snapshot_id)
                updated = patch.apply(current)
                # Compression may have flipped, which renames the blob
                updated.content_ref = content_ref
                self.storage.index.upsert(updated)

        self._notify_change("update")
        logger.debug("Snapshot content rewritten: %s", snapshot_id)
        return updated

    # ── Delete ────────────────────────────────────────────────────

    def delete_snapshot(self, snapshot_id: str, notify: bool = True):
        logger.debug("Deleting snapshot: %s", snapshot_id)
        snapshot = self.storage.index.get(snapshot_id)
        if snapshot is None:
            logger.error("Snapshot not found: %s", snapshot_id)
            raise SnapshotNotFound(snapshot_id)
        self.storage.delete(snapshot)
        logger.info("Snapshot deleted: %s for file: %s", snapshot_id, snapshot.file_id)
        if notify:
            self._notify_change("delete")

    def delete_snapshots(self, snapshot_ids: Iterable[str]) -> int:
        """
        Delete many snapshots, continuing past individual failures.

        The change callback fires once at the end. Raises
        BatchDeleteError listing the failures, after every other id has
        been deleted.
        """
        errors: dict[str, str] = {}
        deleted = 0
        for snapshot_id in snapshot_ids:
            try:
                self.delete_snapshot(snapshot_id, notify=False)
                deleted += 1
            except Exception as e:
                logger.error("Failed to delete snapshot %s: %s", snapshot_id, e)
                errors[snapshot_id] = str(e)

        self._notify_change("delete batch")
        if errors:
            raise BatchDeleteError(errors)
        return deleted
