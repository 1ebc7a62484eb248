"""
Eviction

Keeps local history bounded. Three policies, each of which only ever
deletes snapshots that are not accepted; accepted snapshots are anchors
and survive every automatic cleanup regardless of age, count or size.

- TTL:   delete snapshots older than now - ttl_days.
- Count: per file, keep at most max_count non-accepted snapshots,
         deleting the oldest first.
- Size:  while the blobs on disk exceed the cap, delete snapshots in
         least-recently-accessed order (LRU), falling back to creation
         time for snapshots never read since startup.

Last-access times live in memory only. They are updated through the
storage read hook on every metadata or content read and forgotten when
a snapshot is deleted.

Cleanup is never forced on a caller: the lifecycle manager checks
limits after each create, and start_periodic_cleanup() runs all three
policies on a background thread.
"""

import logging
import threading
import time

from .config import HistoryConfig
from .errors import ValidationError
from .models import CleanupReport, LimitStatus, Snapshot
from .storage import SnapshotStorage

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


def _require_non_negative(name: str, value):
    if value is None or value < 0:
        raise ValidationError(f"{name} must be non-negative, got {value}")


class EvictionService:
    def __init__(self, storage: SnapshotStorage, config: HistoryConfig, clock=time.time):
        self.storage = storage
        self.config = config
        self.clock = clock
        self._last_access: dict[str, float] = {}
        self._access_lock = threading.Lock()
        self._periodic_thread: threading.Thread | None = None
        self._periodic_stop: threading.Event | None = None

        storage.set_on_access(self.touch)
        storage.set_on_delete(self.forget)

    # ── Access Tracking ───────────────────────────────────────────

    def touch(self, snapshot_id: str):
        with self._access_lock:
            self._last_access[snapshot_id] = self.clock()

    def forget(self, snapshot_id: str):
        with self._access_lock:
            self._last_access.pop(snapshot_id, None)

    def last_access(self, snapshot_id: str) -> float | None:
        with self._access_lock:
            return self._last_access.get(snapshot_id)

    def _lru_key(self, snapshot: Snapshot) -> float:
        accessed = self.last_access(snapshot.id)
        return accessed if accessed is not None else snapshot.timestamp

    # ── Limits ────────────────────────────────────────────────────

    def check_limits(self) -> LimitStatus:
        """Report which limits are exceeded. Reads only; never deletes or touches."""
        max_count = self.config.max_snapshots_per_file
        max_size = self.config.max_storage_size
        cutoff = self.clock() - self.config.ttl_days * SECONDS_PER_DAY

        current_size = self.storage.total_size()
        snapshots = self.storage.index.all_snapshots()

        counts: dict[str, int] = {}
        older_than_ttl = 0
        for snapshot in snapshots:
            if snapshot.accepted:
                continue
            counts[snapshot.file_id] = counts.get(snapshot.file_id, 0) + 1
            if snapshot.timestamp < cutoff:
                older_than_ttl += 1

        files_exceeded = sum(1 for c in counts.values() if c > max_count)
        return LimitStatus(
            count_exceeded=files_exceeded > 0,
            size_exceeded=current_size > max_size,
            ttl_exceeded=older_than_ttl > 0,
            files_with_count_exceeded=files_exceeded,
            current_size=current_size,
            max_size=max_size,
            snapshots_older_than_ttl=older_than_ttl,
        )

    def file_count_exceeded(self, file_id: str) -> bool:
        pending = [s for s in self.storage.index.by_file(file_id) if not s.accepted]
        return len(pending) > self.config.max_snapshots_per_file

    # ── Policies ──────────────────────────────────────────────────

    def cleanup_by_count(self, file_id: str, max_count: int) -> int:
        """Delete a file's oldest non-accepted snapshots beyond max_count."""
        _require_non_negative("max_count", max_count)

        pending = [s for s in self.storage.index.by_file(file_id) if not s.accepted]
        if len(pending) <= max_count:
            logger.debug("No cleanup needed for file: %s (%s <= %s)", file_id, len(pending), max_count)
            return 0

        pending.sort(key=lambda s: s.timestamp)
        deleted = self._delete_all(pending[: len(pending) - max_count])
        logger.info("Cleanup by count completed for file: %s, deleted: %s snapshots", file_id, deleted)
        return deleted

    def cleanup_by_ttl(self, ttl_days: float) -> int:
        """Delete every non-accepted snapshot older than ttl_days."""
        _require_non_negative("ttl_days", ttl_days)

        cutoff = self.clock() - ttl_days * SECONDS_PER_DAY
        expired = [
            s for s in self.storage.index.all_snapshots()
            if not s.accepted and s.timestamp < cutoff
        ]
        if not expired:
            logger.debug("No cleanup needed by TTL (no snapshots older than %s days)", ttl_days)
            return 0

        logger.info("Found %s snapshots older than TTL (%s days), starting cleanup", len(expired), ttl_days)
        deleted = self._delete_all(expired)
        logger.info("Cleanup by TTL completed, deleted: %s snapshots", deleted)
        return deleted

    def cleanup_by_size(self, max_size: int) -> int:
        """Delete least-recently-accessed non-accepted snapshots until under max_size."""
        _require_non_negative("max_size", max_size)

        current = self.storage.total_size()
        if current <= max_size:
            logger.debug("No cleanup needed by size (%s <= %s)", current, max_size)
            return 0

        logger.info("Storage size exceeded: %s > %s, starting cleanup", current, max_size)
        candidates = []
        for snapshot in self.storage.index.all_snapshots():
            if snapshot.accepted:
                continue
            try:
                candidates.append((snapshot, self.storage.blob_size(snapshot)))
            except OSError as e:
                logger.error("Failed to get size for snapshot %s: %s", snapshot.id, e)
        candidates.sort(key=lambda pair: self._lru_key(pair[0]))

        total = current
        deleted = 0
        for snapshot, size in candidates:
            if total <= max_size:
                break
            try:
                self.storage.delete(snapshot)
            except Exception as e:
                logger.error("Failed to delete snapshot %s: %s", snapshot.id, e)
                continue
            total -= size
            deleted += 1

        logger.info(
            "Cleanup by size completed, deleted: %s snapshots, freed: %s bytes", deleted, current - total
        )
        return deleted

    def _delete_all(self, snapshots: list[Snapshot]) -> int:
        deleted = 0
        for snapshot in snapshots:
            try:
                self.storage.delete(snapshot)
                deleted += 1
            except Exception as e:
                logger.error("Failed to delete snapshot %s: %s", snapshot.id, e)
        return deleted

    # ── Periodic Cleanup ──────────────────────────────────────────

    def run_periodic_cleanup(self) -> CleanupReport:
        """
        Run TTL, size and per-file count cleanup in sequence.

        A failing policy is logged and recorded in the report; the
        remaining policies still run.
        """
        start = time.monotonic()
        report = CleanupReport()
        logger.debug("Starting periodic cleanup")

        try:
            report.deleted_by_ttl = self.cleanup_by_ttl(self.config.ttl_days)
        except Exception as e:
            logger.error("Error in TTL cleanup during periodic cleanup", exc_info=True)
            report.errors["ttl"] = str(e)

        try:
            report.deleted_by_size = self.cleanup_by_size(self.config.max_storage_size)
        except Exception as e:
            logger.error("Error in size cleanup during periodic cleanup", exc_info=True)
            report.errors["size"] = str(e)

        try:
            for file_id in self.storage.index.file_ids():
                try:
                    report.deleted_by_count += self.cleanup_by_count(
                        file_id, self.config.max_snapshots_per_file
                    )
                except Exception as e:
                    logger.error("Failed to cleanup by count for file %s: %s", file_id, e)
                    report.errors[f"count:{file_id}"] = str(e)
        except Exception as e:
            logger.error("Error in count cleanup during periodic cleanup", exc_info=True)
            report.errors["count"] = str(e)

        try:
            self.storage.index.mark_cleanup(self.clock())
        except Exception as e:
            logger.warning("Failed to record cleanup time: %s", e)

        report.elapsed_ms = (time.monotonic() - start) * 1000
        logger.debug("Periodic cleanup completed, deleted: %s snapshots", report.total_deleted)
        return report

    def start_periodic_cleanup(self, interval_hours: float | None = None) -> bool:
        """
        Run cleanup now and then every interval_hours on a daemon thread.

        Returns False (and does nothing) if periodic cleanup is already
        running.
        """
        if interval_hours is None:
            interval_hours = self.config.cleanup_interval_hours
        if interval_hours is None or interval_hours <= 0:
            raise ValidationError(f"interval_hours must be positive, got {interval_hours}")
        if self.is_periodic_cleanup_running():
            return False

        interval = interval_hours * 3600
        stop = threading.Event()
        self._periodic_stop = stop

        def _loop():
            while not stop.is_set():
                try:
                    self.run_periodic_cleanup()
                except Exception:
                    logger.error("Error in periodic cleanup", exc_info=True)
                if stop.wait(interval):
                    break

        self._periodic_thread = threading.Thread(
            target=_loop, name="snaptrail-cleanup", daemon=True
        )
        self._periodic_thread.start()
        logger.info("Starting periodic cleanup with interval: %s hours", interval_hours)
        return True

    def stop_periodic_cleanup(self, timeout: float | None = 5.0):
        thread, stop = self._periodic_thread, self._periodic_stop
        if thread is None or stop is None:
            return
        stop.set()
        if thread is not threading.current_thread():
            thread.join(timeout)
        self._periodic_thread = None
        self._periodic_stop = None
        logger.info("Periodic cleanup stopped")

    def is_periodic_cleanup_running(self) -> bool:
        return self._periodic_thread is not None and self._periodic_thread.is_alive()
