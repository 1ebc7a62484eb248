"""
Snapshot Index

The single source of truth for snapshot records. One document holds
every record plus, for each tracked file, the ordered list of its
snapshot ids (newest first). That per-file list is the authoritative
chain order and is kept consistent with record timestamps after every
mutation.

The document is persisted through a KeyValueDocumentStore. All
mutations run as one load-modify-store critical section under a single
lock, so concurrent writers cannot lose each other's updates. If the
store write fails, the in-memory copy is thrown away and reloaded on the
next access; a failed mutation is never visible.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field

from .docstore import KeyValueDocumentStore
from .migrations import INDEX_VERSION, migrate
from .models import Snapshot, StorageMetadata

logger = logging.getLogger(__name__)


@dataclass
class IndexDocument:
    version: str
    metadata: StorageMetadata
    snapshots: dict[str, Snapshot] = field(default_factory=dict)
    by_file: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "metadata": self.metadata.to_dict(),
            "snapshots": [s.to_dict() for s in self.snapshots.values()],
            "by_file": {k: list(v) for k, v in self.by_file.items()},
        }

    @classmethod
    def from_dict(cls, d: dict) -> "IndexDocument":
        snapshots = {}
        for raw in d.get("snapshots", []):
            snap = Snapshot.from_dict(raw)
            snapshots[snap.id] = snap
        return cls(
            version=d["version"],
            metadata=StorageMetadata.from_dict(d.get("metadata") or {"version": d["version"]}),
            snapshots=snapshots,
            by_file={k: list(v) for k, v in (d.get("by_file") or {}).items()},
        )


class SnapshotIndex:
    """Records and per-file chains, persisted as one versioned document."""

    def __init__(self, store: KeyValueDocumentStore):
        self.store = store
        self._lock = threading.RLock()
        self._doc: IndexDocument | None = None
        self._depth = 0

    # ── Load / Save ───────────────────────────────────────────────

    def load(self) -> IndexDocument:
        with self._lock:
            if self._doc is None:
                raw, changed = migrate(self.store.load(), INDEX_VERSION)
                doc = IndexDocument.from_dict(raw)
                self._repair_chains(doc)
                if changed:
                    self.store.save(doc.to_dict())
                self._doc = doc
            return self._doc

    def save(self, doc: IndexDocument | None = None):
        with self._lock:
            doc = doc or self.load()
            doc.metadata.total_snapshots = len(doc.snapshots)
            doc.metadata.total_size = sum(s.metadata.size for s in doc.snapshots.values())
            try:
                self.store.save(doc.to_dict())
            except Exception:
                self._doc = None
                raise
            self._doc = doc

    @contextmanager
    def transaction(self):
        """
        Load-modify-store critical section.

        Yields the live document; it is saved when the outermost block
        exits normally, so nested transactions commit once. Any exception
        (in the block or the save) discards the cached copy so the store
        stays authoritative.
        """
        with self._lock:
            doc = self.load()
            self._depth += 1
            try:
                yield doc
                if self._depth == 1:
                    self.save(doc)
            except BaseException:
                self._doc = None
                raise
            finally:
                self._depth -= 1

    @staticmethod
    def _repair_chains(doc: IndexDocument):
        """Drop dangling ids and restore timestamp order in loaded chains."""
        for file_id in list(doc.by_file):
            ids = [sid for sid in dict.fromkeys(doc.by_file[file_id]) if sid in doc.snapshots]
            ids.sort(key=lambda sid: doc.snapshots[sid].timestamp, reverse=True)
            if ids:
                doc.by_file[file_id] = ids
            else:
                del doc.by_file[file_id]
        for snap in doc.snapshots.values():
            chain = doc.by_file.setdefault(snap.file_id, [])
            if snap.id not in chain:
                _insert_ordered(doc, chain, snap)

    # ── Mutations ─────────────────────────────────────────────────

    def upsert(self, snapshot: Snapshot) -> Snapshot:
        """Insert or replace a record and keep its chain timestamp-ordered."""
        with self.transaction() as doc:
            previous = doc.snapshots.get(snapshot.id)
            if previous is not None and previous.file_id != snapshot.file_id:
                _discard_from_chain(doc, previous.file_id, snapshot.id)
            doc.snapshots[snapshot.id] = snapshot
            chain = doc.by_file.setdefault(snapshot.file_id, [])
            if snapshot.id in chain:
                chain.remove(snapshot.id)
            _insert_ordered(doc, chain, snapshot)
        return snapshot

    def remove(self, snapshot_id: str) -> Snapshot | None:
        """Delete a record. Returns it, or None if it was not indexed."""
        with self.transaction() as doc:
            snapshot = doc.snapshots.pop(snapshot_id, None)
            if snapshot is None:
                return None
            _discard_from_chain(doc, snapshot.file_id, snapshot_id)
        return snapshot

    def mark_cleanup(self, when: float | None = None):
        with self.transaction() as doc:
            doc.metadata.last_cleanup = when if when is not None else time.time()

    # ── Queries ───────────────────────────────────────────────────

    def get(self, snapshot_id: str) -> Snapshot | None:
        with self._lock:
            return self.load().snapshots.get(snapshot_id)

    def by_file(self, file_id: str) -> list[Snapshot]:
        """A file's chain, newest first."""
        with self._lock:
            doc = self.load()
            return [doc.snapshots[sid] for sid in doc.by_file.get(file_id, []) if sid in doc.snapshots]

    def head(self, file_id: str) -> Snapshot | None:
        chain = self.by_file(file_id)
        return chain[0] if chain else None

    def all_snapshots(self) -> list[Snapshot]:
        with self._lock:
            return list(self.load().snapshots.values())

    def file_ids(self) -> list[str]:
        with self._lock:
            return list(self.load().by_file)

    def metadata(self) -> StorageMetadata:
        with self._lock:
            return self.load().metadata

    def __len__(self) -> int:
        with self._lock:
            return len(self.load().snapshots)


def _insert_ordered(doc: IndexDocument, chain: list[str], snapshot: Snapshot):
    """Insert before the first entry that is not newer: ties go to the latest write."""
    pos = len(chain)
    for i, sid in enumerate(chain):
        other = doc.snapshots.get(sid)
        if other is None or other.timestamp <= snapshot.timestamp:
            pos = i
            break
    chain.insert(pos, snapshot.id)


def _discard_from_chain(doc: IndexDocument, file_id: str, snapshot_id: str):
    chain = doc.by_file.get(file_id)
    if chain is None:
        return
    if snapshot_id in chain:
        chain.remove(snapshot_id)
    if not chain:
        del doc.by_file[file_id]
