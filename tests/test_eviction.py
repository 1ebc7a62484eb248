"""Eviction policies: count, TTL, LRU-by-size, and periodic cleanup."""

import logging
import time

import pytest

from snaptrail.errors import ValidationError
from snaptrail.eviction import SECONDS_PER_DAY

FILE = "file:///project/app.py"


def days_ago(days):
    return time.time() - days * SECONDS_PER_DAY


def chain_ids(history, file_id=FILE):
    return [s.id for s in history.index.by_file(file_id)]


def assert_lineage_intact(history):
    ids = {s.id for s in history.index.all_snapshots()}
    for s in history.index.all_snapshots():
        if s.diff_info is not None and s.diff_info.previous_snapshot_id is not None:
            assert s.diff_info.previous_snapshot_id in ids


class TestCountPolicy:
    def test_enforced_on_create(self, make_history):
        h = make_history(max_snapshots_per_file=3)
        snaps = [h.create_snapshot(FILE, f"v{i}") for i in range(5)]
        assert chain_ids(h) == [s.id for s in reversed(snaps[2:])]
        assert h.get_snapshot(snaps[2].id).diff_info is None
        assert_lineage_intact(h)

    def test_accepted_snapshots_not_counted_or_deleted(self, make_history):
        h = make_history(max_snapshots_per_file=2)
        anchor = h.create_snapshot(FILE, "base")
        h.update_snapshot(anchor.id, {"accepted": True})
        s1 = h.create_snapshot(FILE, "v1")
        s2 = h.create_snapshot(FILE, "v2")
        s3 = h.create_snapshot(FILE, "v3")
        assert chain_ids(h) == [s3.id, s2.id, anchor.id]
        assert h.get_snapshot(s1.id) is None
        assert h.get_snapshot(s2.id).diff_info.previous_snapshot_id == anchor.id

    def test_direct_cleanup(self, history):
        for i in range(4):
            history.create_snapshot(FILE, f"v{i}")
        assert history.eviction.cleanup_by_count(FILE, 1) == 3
        assert len(chain_ids(history)) == 1
        assert history.eviction.cleanup_by_count(FILE, 1) == 0

    def test_zero_keeps_only_accepted(self, history):
        a = history.create_snapshot(FILE, "a")
        history.update_snapshot(a.id, {"accepted": True})
        history.create_snapshot(FILE, "b")
        assert history.eviction.cleanup_by_count(FILE, 0) == 1
        assert chain_ids(history) == [a.id]

    def test_negative_rejected(self, history):
        with pytest.raises(ValidationError):
            history.eviction.cleanup_by_count(FILE, -1)

    def test_completion_logged_with_lazy_arguments(self, history, caplog):
        for i in range(3):
            history.create_snapshot(FILE, f"v{i}")
        with caplog.at_level(logging.INFO, logger="snaptrail.eviction"):
            history.eviction.cleanup_by_count(FILE, 1)
        record = next(r for r in caplog.records if r.msg.startswith("Cleanup by count completed"))
        assert record.args == (FILE, 2)
        assert FILE in record.getMessage()


class TestTtlPolicy:
    def test_old_unaccepted_deleted(self, history):
        old = history.create_snapshot(FILE, "old")
        old_accepted = history.create_snapshot("file:///other", "anchor")
        fresh = history.create_snapshot(FILE, "fresh")
        history.update_snapshot(old.id, {"timestamp": days_ago(100)})
        history.update_snapshot(old_accepted.id, {"timestamp": days_ago(100), "accepted": True})

        assert history.eviction.cleanup_by_ttl(90) == 1
        assert history.get_snapshot(old.id) is None
        assert history.get_snapshot(old_accepted.id) is not None
        assert history.get_snapshot(fresh.id).diff_info is None

    def test_nothing_expired(self, history):
        history.create_snapshot(FILE, "x")
        assert history.eviction.cleanup_by_ttl(1) == 0

    def test_negative_rejected(self, history):
        with pytest.raises(ValidationError):
            history.eviction.cleanup_by_ttl(-1)


class TestSizePolicy:
    def test_least_recently_accessed_goes_first(self, history, clock):
        a = history.create_snapshot("file:///a", "a" * 100)
        b = history.create_snapshot("file:///b", "b" * 100)
        c = history.create_snapshot("file:///c", "c" * 100)

        clock.now = time.time() + 1000
        history.eviction.clock = clock
        history.get_snapshot_content(a)

        assert history.storage.total_size() == 300
        assert history.eviction.cleanup_by_size(250) == 1
        assert history.get_snapshot(b.id) is None
        assert history.get_snapshot(a.id) is not None
        assert history.get_snapshot(c.id) is not None
        assert history.storage.total_size() == 200

    def test_stops_once_under_cap(self, history):
        for i in range(5):
            history.create_snapshot(f"file:///{i}", "x" * 100)
        assert history.eviction.cleanup_by_size(300) == 2
        assert history.storage.total_size() == 300

    def test_accepted_survive_even_over_cap(self, history):
        anchor = history.create_snapshot(FILE, "a" * 100)
        history.update_snapshot(anchor.id, {"accepted": True})
        history.create_snapshot(FILE, "b" * 100)
        assert history.eviction.cleanup_by_size(0) == 1
        assert chain_ids(history) == [anchor.id]
        assert history.storage.total_size() == 100

    def test_under_cap_is_noop(self, history):
        history.create_snapshot(FILE, "x")
        assert history.eviction.cleanup_by_size(10_000) == 0

    def test_negative_rejected(self, history):
        with pytest.raises(ValidationError):
            history.eviction.cleanup_by_size(-5)

    def test_deletions_forget_access_times(self, history):
        s = history.create_snapshot(FILE, "x")
        history.get_snapshot_content(s)
        assert history.eviction.last_access(s.id) is not None
        history.delete_snapshot(s.id)
        assert history.eviction.last_access(s.id) is None


class TestCheckLimits:
    def test_reports_without_deleting(self, history):
        s1 = history.create_snapshot(FILE, "one")
        history.create_snapshot(FILE, "two")
        history.update_snapshot(s1.id, {"timestamp": days_ago(365)})

        history.config.max_snapshots_per_file = 1
        history.config.max_storage_size = 1
        status = history.check_limits()

        assert status.count_exceeded
        assert status.files_with_count_exceeded == 1
        assert status.size_exceeded
        assert status.current_size == 6
        assert status.ttl_exceeded
        assert status.snapshots_older_than_ttl == 1
        assert len(chain_ids(history)) == 2

    def test_within_limits(self, history):
        history.create_snapshot(FILE, "x")
        status = history.check_limits()
        assert not (status.count_exceeded or status.size_exceeded or status.ttl_exceeded)

    def test_accepted_excluded_from_count(self, history):
        for i in range(3):
            s = history.create_snapshot(FILE, f"v{i}")
            history.update_snapshot(s.id, {"accepted": True})
        history.config.max_snapshots_per_file = 1
        assert not history.check_limits().count_exceeded


class TestPeriodicCleanup:
    def test_run_reports_per_policy(self, history):
        old = history.create_snapshot(FILE, "old")
        history.create_snapshot(FILE, "new")
        history.update_snapshot(old.id, {"timestamp": days_ago(100)})

        report = history.run_cleanup()
        assert report.deleted_by_ttl == 1
        assert report.total_deleted == 1
        assert report.errors == {}
        assert history.index.metadata().last_cleanup > 0

    def test_failing_policy_isolated(self, history, monkeypatch):
        def broken(ttl_days):
            raise OSError("boom")

        monkeypatch.setattr(history.eviction, "cleanup_by_ttl", broken)
        for i in range(3):
            history.create_snapshot(FILE, f"v{i}")
        history.config.max_snapshots_per_file = 1

        report = history.run_cleanup()
        assert "ttl" in report.errors
        assert report.deleted_by_count == 2

    def test_start_runs_immediately_and_once(self, history):
        old = history.create_snapshot(FILE, "old")
        history.create_snapshot(FILE, "new")
        history.update_snapshot(old.id, {"timestamp": days_ago(100)})

        assert history.start_periodic_cleanup(interval_hours=1) is True
        assert history.start_periodic_cleanup(interval_hours=1) is False
        deadline = time.time() + 5
        while history.get_snapshot(old.id) is not None and time.time() < deadline:
            time.sleep(0.01)
        assert history.get_snapshot(old.id) is None

        history.stop_periodic_cleanup()
        assert not history.eviction.is_periodic_cleanup_running()

    def test_invalid_interval(self, history):
        with pytest.raises(ValidationError):
            history.start_periodic_cleanup(interval_hours=0)

    def test_close_stops_thread(self, make_history):
        h = make_history()
        h.start_periodic_cleanup(interval_hours=1)
        h.close()
        assert not h.eviction.is_periodic_cleanup_running()
