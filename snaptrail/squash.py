"""
Squash

Approve-all and discard-all collapse a file's run of unapproved
snapshots into one. The chain is read newest-first:

    [kept] [deleted] [deleted] ... [baseline] [older history...]
     newest unapproved             newest accepted snapshot, or, when
                                   nothing was ever approved, the oldest
                                   snapshot of the run (preserved)

Intermediate snapshots are deleted through the manager, which relinks
the kept snapshot's lineage as each one goes; the kept snapshot's diff
is then recomputed once against the baseline directly. Approve marks it
accepted. Discard marks it discarded and hands back the baseline's
content so the caller can restore the file.
"""

import logging
import time

from .errors import HistoryError
from .manager import HistoryManager
from .models import Snapshot, SnapshotPatch, SquashResult

logger = logging.getLogger(__name__)


def _plan(chain: list[Snapshot]) -> tuple[Snapshot | None, Snapshot | None, list[Snapshot]]:
    """Split a newest-first chain into (kept, baseline, to_delete)."""
    anchor_index = next((i for i, s in enumerate(chain) if s.accepted), None)
    candidates = chain if anchor_index is None else chain[:anchor_index]
    anchor = None if anchor_index is None else chain[anchor_index]

    if not candidates:
        return None, anchor, []

    kept, rest = candidates[0], candidates[1:]
    if anchor is None and rest:
        return kept, rest[-1], rest[:-1]
    return kept, anchor, rest


def _delete_intermediates(manager: HistoryManager, result: SquashResult, doomed: list[Snapshot]):
    for snapshot in doomed:
        try:
            manager.delete_snapshot(snapshot.id, notify=False)
            result.deleted_ids.append(snapshot.id)
        except Exception as e:
            logger.error("Failed to delete intermediate snapshot %s: %s", snapshot.id, e)
            result.failed_ids.append(snapshot.id)


def _lineage_patch(manager: HistoryManager, kept_id: str, baseline: Snapshot | None) -> SnapshotPatch:
    if baseline is None:
        return SnapshotPatch(clear_diff_info=True)
    kept = manager.storage.index.get(kept_id)
    try:
        diff_info = manager.storage.rediff(baseline, kept)
    except OSError as e:
        logger.error("Failed to recompute diff for %s against %s: %s", kept_id, baseline.id, e)
        return SnapshotPatch()
    return SnapshotPatch(diff_info=diff_info.to_dict())


def approve_all(manager: HistoryManager, file_id: str, final_content: str | None = None) -> SquashResult:
    """
    Squash the unapproved run into its newest snapshot and accept it.

    ``final_content``, when given, replaces the kept snapshot's content
    before the diff is recomputed. Returns an empty result (kept is None)
    when the newest snapshot is already accepted or the file has no
    history.
    """
    result = SquashResult(file_id=file_id)
    with manager.file_lock(file_id):
        kept, baseline, doomed = _plan(manager.storage.index.by_file(file_id))
        result.baseline = baseline
        if kept is None:
            logger.info("Nothing to approve for file: %s", file_id)
            return result

        _delete_intermediates(manager, result, doomed)
        if final_content is not None:
            manager.update_snapshot_content(kept.id, final_content)

        patch = _lineage_patch(manager, kept.id, baseline)
        patch.accepted = True
        patch.accepted_timestamp = time.time()
        result.kept = manager.update_snapshot(kept.id, patch)

    logger.info(
        "Approved and squashed snapshots for %s. Kept: %s, deleted: %s, failed: %s",
        file_id, kept.id, len(result.deleted_ids), len(result.failed_ids),
    )
    return result


def discard_all(manager: HistoryManager, file_id: str) -> SquashResult:
    """
    Squash the unapproved run into its newest snapshot and mark it discarded.

    ``restore_content`` on the result is the baseline's content (the
    last approved version, or the oldest version when nothing was
    approved). Writing it back to the file is left to the caller.
    """
    result = SquashResult(file_id=file_id)
    with manager.file_lock(file_id):
        kept, baseline, doomed = _plan(manager.storage.index.by_file(file_id))
        result.baseline = baseline
        target = baseline or kept
        if target is None:
            logger.info("No snapshots found to revert to for file: %s", file_id)
            return result

        if kept is not None:
            _delete_intermediates(manager, result, doomed)
            patch = _lineage_patch(manager, kept.id, baseline)
            patch.discarded = True
            result.kept = manager.update_snapshot(kept.id, patch)

        try:
            result.restore_content = manager.get_snapshot_content(target.id)
        except (OSError, HistoryError) as e:
            logger.error("Failed to read content of %s for restore: %s", target.id, e)
            raise

    logger.info(
        "Discarded changes for %s, restore target: %s, deleted: %s",
        file_id, target.id, len(result.deleted_ids),
    )
    return result
