"""
Document Stores

The snapshot index is persisted as one JSON-serializable document. The
editor host normally provides a small key-value store for this; here it
is abstracted as KeyValueDocumentStore with load/save over a single
document, and three backends:

- JsonFileDocumentStore: one JSON file, written atomically.
- SqliteDocumentStore: a key/value table in SQLite (WAL mode), useful
  when the index lives next to other host state in one database.
- MemoryDocumentStore: process-local, for tests and throwaway sessions.

Stores hold bytes only; they know nothing about snapshots. Locking
around load-modify-save is the index's job.
"""

import copy
import json
import logging
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path

from .fsutil import atomic_write

logger = logging.getLogger(__name__)


class KeyValueDocumentStore(ABC):
    """A durable slot holding one JSON-serializable document."""

    @abstractmethod
    def load(self) -> dict | None:
        """Return the stored document, or None if nothing was saved yet."""

    @abstractmethod
    def save(self, document: dict) -> None:
        """Replace the stored document."""

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class MemoryDocumentStore(KeyValueDocumentStore):
    def __init__(self, document: dict | None = None):
        self._document = copy.deepcopy(document)

    def load(self) -> dict | None:
        return copy.deepcopy(self._document)

    def save(self, document: dict) -> None:
        # Round-trip through JSON so anything unserializable fails here, like on disk
        self._document = json.loads(json.dumps(document))


class JsonFileDocumentStore(KeyValueDocumentStore):
    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> dict | None:
        if not self.path.exists():
            return None
        text = self.path.read_text(encoding="utf-8")
        if not text.strip():
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Corrupt index document {self.path}: {e}") from e

    def save(self, document: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write(self.path, json.dumps(document, indent=2).encode("utf-8"))


class SqliteDocumentStore(KeyValueDocumentStore):
    """
    SQLite-backed document slot.

    One row per key in a ``documents`` table. The connection is shared
    across threads behind a lock; the index already serializes writers,
    the lock only protects the connection object itself.
    """

    def __init__(self, db_path: Path, key: str = "snapshots"):
        self.db_path = Path(db_path)
        self.key = key
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout = 30000")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self._lock = threading.Lock()
        self._closed = False
        self._init_tables()

    def _init_tables(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS documents (
                key TEXT PRIMARY KEY,
                body TEXT NOT NULL,
                updated_at REAL NOT NULL
            );
        """)
        self.conn.commit()

    def load(self) -> dict | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT body FROM documents WHERE key = ?", (self.key,)
            ).fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    def save(self, document: dict) -> None:
        body = json.dumps(document)
        with self._lock:
            try:
                self.conn.execute(
                    """INSERT OR REPLACE INTO documents (key, body, updated_at)
                       VALUES (?, ?, ?)""",
                    (self.key, body, time.time()),
                )
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    def close(self):
        """Close the SQLite connection. Safe to call multiple times."""
        if self._closed:
            return
        self._closed = True
        try:
            self.conn.close()
        except sqlite3.Error as e:
            logger.debug("Error closing document store %s: %s", self.db_path, e)
