"""
Local History

The high-level API that editor glue and the CLI interact with. Wires
the blob store, document store, index, storage, eviction service and
lifecycle manager together under one storage root:

    <root>/
    ├── config.json      <- optional HistoryConfig overrides
    ├── index.json       <- index document (store="json")
    ├── index.db         <- index document (store="sqlite")
    └── snapshots/       <- content blobs, sharded per file

    with LocalHistory.open("/path/to/history") as history:
        snap = history.create_snapshot("file:///src/app.py", text, "save")
        for s in history.get_snapshots_for_file("file:///src/app.py"):
            ...
        history.approve_all("file:///src/app.py")

Every manager operation is available directly on LocalHistory.
"""

import logging
from pathlib import Path

from .blobs import BlobStore
from .config import CONFIG_FILE_NAME, HistoryConfig, load_config
from .docstore import JsonFileDocumentStore, KeyValueDocumentStore, SqliteDocumentStore
from .eviction import EvictionService
from .index import SnapshotIndex
from .manager import HistoryManager
from .models import SquashResult
from .squash import approve_all, discard_all
from .storage import SnapshotStorage

logger = logging.getLogger(__name__)

INDEX_JSON_NAME = "index.json"
INDEX_DB_NAME = "index.db"
STORE_KINDS = ("json", "sqlite")


class LocalHistory:
    """Per-file snapshot history rooted at one storage directory."""

    def __init__(
        self,
        root: Path,
        config: HistoryConfig | None = None,
        store: str | KeyValueDocumentStore = "json",
    ):
        self.root = Path(root).resolve()
        if not self.root.is_dir():
            raise ValueError(f"History root does not exist: {self.root}")

        self.config = config or load_config(self.root / CONFIG_FILE_NAME)
        self.document_store = self._make_store(store)
        self.blobs = BlobStore(
            self.root,
            enable_compression=self.config.enable_compression,
            compression_threshold=self.config.compression_threshold,
        )
        self.index = SnapshotIndex(self.document_store)
        self.storage = SnapshotStorage(self.index, self.blobs)
        self.eviction = EvictionService(self.storage, self.config)
        self.manager = HistoryManager(self.storage, self.eviction, self.config)

        self.index.load()
        logger.debug("Opened local history at %s (%s snapshots)", self.root, len(self.index))

    def _make_store(self, store) -> KeyValueDocumentStore:
        if isinstance(store, KeyValueDocumentStore):
            return store
        if store == "json":
            return JsonFileDocumentStore(self.root / INDEX_JSON_NAME)
        if store == "sqlite":
            return SqliteDocumentStore(self.root / INDEX_DB_NAME)
        raise ValueError(f"Unknown index store: {store!r} (expected one of {', '.join(STORE_KINDS)})")

    @classmethod
    def open(cls, root: Path, config: HistoryConfig | None = None, store="json") -> "LocalHistory":
        """Open a history root, creating the directory if needed."""
        root = Path(root)
        root.mkdir(parents=True, exist_ok=True)
        return cls(root, config=config, store=store)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    def close(self):
        self.eviction.stop_periodic_cleanup()
        self.document_store.close()

    # ── Squash ────────────────────────────────────────────────────

    def approve_all(self, file_id: str, final_content: str | None = None) -> SquashResult:
        return approve_all(self.manager, file_id, final_content)

    def discard_all(self, file_id: str) -> SquashResult:
        return discard_all(self.manager, file_id)

    # ── Maintenance ───────────────────────────────────────────────

    def check_limits(self):
        return self.eviction.check_limits()

    def run_cleanup(self):
        return self.eviction.run_periodic_cleanup()

    def start_periodic_cleanup(self, interval_hours: float | None = None) -> bool:
        return self.eviction.start_periodic_cleanup(interval_hours)

    def stop_periodic_cleanup(self):
        self.eviction.stop_periodic_cleanup()

    def stats(self) -> dict:
        metadata = self.index.metadata()
        return {
            "root": str(self.root),
            "version": metadata.version,
            "total_snapshots": len(self.index),
            "tracked_files": len(self.index.file_ids()),
            "total_size": self.storage.total_size(),
            "last_cleanup": metadata.last_cleanup,
        }

    # Everything else is the manager's
    def __getattr__(self, name):
        if name.startswith("_") or "manager" not in self.__dict__:
            raise AttributeError(name)
        return getattr(self.manager, name)
