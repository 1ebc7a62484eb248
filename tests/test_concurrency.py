"""
Concurrent access to one history.

Creates for the same file must serialize so every snapshot diffs
against the snapshot that really precedes it; different files and
metadata updates must not lose each other's writes.
"""

import threading

import pytest

from snaptrail import manager as manager_module

FILE = "file:///shared.txt"


def run_threads(target, count):
    errors = []

    def wrapper(i):
        try:
            target(i)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=wrapper, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return errors


@pytest.mark.parametrize("store", ["json", "sqlite"])
class TestConcurrentCreates:
    def test_same_file_forms_linear_chain(self, make_history, store):
        h = make_history(store=store)

        def worker(i):
            for j in range(5):
                h.create_snapshot(FILE, f"writer {i} edit {j}\n")

        assert run_threads(worker, 8) == []

        chain = h.get_snapshots_for_file(FILE)
        assert len(chain) == 40
        assert chain[-1].diff_info is None
        for newer, older in zip(chain, chain[1:]):
            assert newer.diff_info.previous_snapshot_id == older.id

    def test_different_files_all_recorded(self, make_history, store):
        h = make_history(store=store)

        def worker(i):
            for j in range(5):
                h.create_snapshot(f"file:///f{i}.txt", f"content {j}")

        assert run_threads(worker, 8) == []
        assert len(h.get_tracked_files()) == 8
        assert len(h.index) == 40

    def test_state_survives_reopen(self, make_history, store):
        h = make_history(store=store)

        def worker(i):
            h.create_snapshot(f"file:///f{i}.txt", "x")

        assert run_threads(worker, 10) == []
        h.close()
        assert len(make_history(store=store).index) == 10


class TestConcurrentUpdates:
    def test_no_lost_updates(self, history):
        snaps = [history.create_snapshot(f"file:///f{i}", str(i)) for i in range(20)]

        def worker(i):
            history.update_snapshot(snaps[i].id, {"accepted": True})

        assert run_threads(worker, 20) == []
        assert all(history.get_snapshot(s.id).accepted for s in snaps)

    def test_creates_during_cleanup(self, make_history):
        h = make_history(max_snapshots_per_file=3)

        def worker(i):
            for j in range(10):
                h.create_snapshot(FILE, f"{i}-{j}")
                if j % 3 == 0:
                    h.run_cleanup()

        assert run_threads(worker, 4) == []
        chain = h.get_snapshots_for_file(FILE)
        assert len([s for s in chain if not s.accepted]) <= 3
        ids = {s.id for s in chain}
        for s in chain:
            if s.diff_info is not None:
                assert s.diff_info.previous_snapshot_id in ids


class TestDeletesDuringCreate:
    @pytest.mark.parametrize(
        "remove",
        [
            lambda h, snap: h.delete_snapshot(snap.id),
            lambda h, snap: h.eviction.cleanup_by_count(FILE, 0),
        ],
        ids=["delete", "evict"],
    )
    def test_head_deleted_mid_create_relinks_new_snapshot(self, history, monkeypatch, remove):
        first = history.create_snapshot(FILE, "first\n")
        real_diff = manager_module.compute_diff
        seen = {}

        def diff_while_deleting(old, new):
            deleter = threading.Thread(target=remove, args=(history, first))
            deleter.start()
            deleter.join(timeout=0.2)
            seen["blocked"] = deleter.is_alive()
            seen["thread"] = deleter
            return real_diff(old, new)

        monkeypatch.setattr(manager_module, "compute_diff", diff_while_deleting)
        second = history.create_snapshot(FILE, "first\nsecond\n")
        seen["thread"].join(timeout=10)

        assert seen["blocked"]
        assert history.get_snapshot(first.id) is None
        stored = history.get_snapshot(second.id)
        assert stored.diff_info is None
        assert history.get_snapshots_for_file(FILE) == [stored]
