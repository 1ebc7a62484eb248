"""Approve-all / discard-all squashing."""

import pytest

from snaptrail.diff import compute_hash

FILE = "file:///project/app.py"


def chain_ids(history):
    return [s.id for s in history.get_snapshots_for_file(FILE)]


@pytest.fixture
def run(history):
    """Four unapproved snapshots, oldest first."""
    return [history.create_snapshot(FILE, "\n".join(["line"] * (i + 1))) for i in range(4)]


class TestApproveAll:
    def test_without_anchor_keeps_newest_and_baseline(self, history, run):
        result = history.approve_all(FILE)

        assert result.kept.id == run[3].id
        assert result.baseline.id == run[0].id
        assert sorted(result.deleted_ids) == sorted([run[1].id, run[2].id])
        assert result.failed_ids == []
        assert chain_ids(history) == [run[3].id, run[0].id]

        kept = history.get_snapshot(run[3].id)
        assert kept.accepted
        assert kept.accepted_timestamp is not None
        assert kept.diff_info.previous_snapshot_id == run[0].id
        assert kept.diff_info.added_lines == 3

    def test_with_anchor_diffs_against_anchor(self, history):
        anchor = history.create_snapshot(FILE, "a")
        history.approve_all(FILE)
        s1 = history.create_snapshot(FILE, "a\nb")
        s2 = history.create_snapshot(FILE, "a\nb\nc")
        s3 = history.create_snapshot(FILE, "a\nB\nc")

        result = history.approve_all(FILE)
        assert result.kept.id == s3.id
        assert result.baseline.id == anchor.id
        assert sorted(result.deleted_ids) == sorted([s1.id, s2.id])
        assert chain_ids(history) == [s3.id, anchor.id]

        kept = history.get_snapshot(s3.id)
        assert kept.diff_info.previous_snapshot_id == anchor.id
        assert kept.diff_info.added_lines == 2
        assert kept.diff_info.modified_lines == 0

    def test_single_snapshot_becomes_root(self, history):
        only = history.create_snapshot(FILE, "x")
        result = history.approve_all(FILE)
        assert result.kept.id == only.id
        assert result.baseline is None
        assert result.deleted_ids == []
        kept = history.get_snapshot(only.id)
        assert kept.accepted
        assert kept.diff_info is None

    def test_nothing_to_approve(self, history, run):
        history.approve_all(FILE)
        result = history.approve_all(FILE)
        assert result.kept is None
        assert result.deleted_ids == []

    def test_empty_history(self, history):
        result = history.approve_all(FILE)
        assert result.kept is None
        assert result.baseline is None

    def test_final_content_folded_in(self, history, run):
        result = history.approve_all(FILE, final_content="final\nversion")
        kept = history.get_snapshot(result.kept.id)
        assert history.get_snapshot_content(kept) == "final\nversion"
        assert kept.content_hash == compute_hash("final\nversion")
        assert kept.metadata.line_count == 2
        assert kept.diff_info.previous_snapshot_id == run[0].id

    def test_approved_snapshot_survives_eviction(self, history, run):
        history.approve_all(FILE)
        history.eviction.cleanup_by_size(0)
        history.eviction.cleanup_by_count(FILE, 0)
        assert run[3].id in chain_ids(history)

    def test_next_snapshot_diffs_against_approved(self, history, run):
        history.approve_all(FILE)
        nxt = history.create_snapshot(FILE, "fresh")
        assert nxt.diff_info.previous_snapshot_id == run[3].id

    def test_delete_failure_is_partial(self, history, run, monkeypatch):
        real_delete = history.manager.delete_snapshot

        def flaky(snapshot_id, notify=True):
            if snapshot_id == run[1].id:
                raise OSError("locked")
            return real_delete(snapshot_id, notify=notify)

        monkeypatch.setattr(history.manager, "delete_snapshot", flaky)
        result = history.approve_all(FILE)
        assert result.failed_ids == [run[1].id]
        assert result.deleted_ids == [run[2].id]
        assert history.get_snapshot(run[3].id).accepted


class TestDiscardAll:
    def test_restores_anchor_content(self, history):
        anchor = history.create_snapshot(FILE, "approved text")
        history.approve_all(FILE)
        s1 = history.create_snapshot(FILE, "draft 1")
        s2 = history.create_snapshot(FILE, "draft 2")

        result = history.discard_all(FILE)
        assert result.restore_content == "approved text"
        assert result.baseline.id == anchor.id
        assert result.kept.id == s2.id
        assert result.deleted_ids == [s1.id]

        kept = history.get_snapshot(s2.id)
        assert kept.discarded
        assert not kept.accepted
        assert kept.diff_info.previous_snapshot_id == anchor.id

    def test_without_anchor_restores_oldest(self, history, run):
        result = history.discard_all(FILE)
        assert result.restore_content == "line"
        assert result.baseline.id == run[0].id
        assert chain_ids(history) == [run[3].id, run[0].id]

    def test_nothing_pending_restores_head(self, history):
        history.create_snapshot(FILE, "approved")
        history.approve_all(FILE)
        result = history.discard_all(FILE)
        assert result.kept is None
        assert result.restore_content == "approved"

    def test_empty_history(self, history):
        result = history.discard_all(FILE)
        assert result.kept is None
        assert result.restore_content is None
