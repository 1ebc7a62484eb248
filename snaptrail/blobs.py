"""
Blob Store

Snapshot content lives as plain files under the storage root:

    <root>/
    └── snapshots/
        ├── 3f2a9c0d1e4b5a67/          <- shard: sha256(file_id)[:16]
        │   ├── <snapshot-id>.txt
        │   └── <snapshot-id>.txt.gz   <- large content, gzip-compressed
        └── ...

Each tracked file gets its own shard directory, created on first write
and pruned again when its last blob is deleted. The blob store holds
bytes only; which blob belongs to which snapshot, and whether it was
compressed, is recorded in the index.

Content references handed back by put() are paths relative to the
root. Every reference coming in is checked before any I/O: traversal
segments, home-directory shortcuts, absolute paths and symlinks that
lead outside the root are all rejected with PathViolation.
"""

import gzip
import logging
import os
import re
from pathlib import Path, PurePosixPath

from .diff import compute_hash
from .errors import PathViolation, ValidationError
from .fsutil import atomic_write, cleanup_empty_parents

logger = logging.getLogger(__name__)

SNAPSHOTS_DIR = "snapshots"
SHARD_PREFIX_LEN = 16

_UUID4 = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE
)


def is_valid_snapshot_id(snapshot_id) -> bool:
    return isinstance(snapshot_id, str) and bool(_UUID4.match(snapshot_id))


def validate_snapshot_id(snapshot_id):
    if not snapshot_id or not isinstance(snapshot_id, str):
        raise ValidationError("Snapshot ID is required and must be a string")
    if not is_valid_snapshot_id(snapshot_id):
        raise ValidationError(f"Invalid snapshot ID format: {snapshot_id}. Expected UUID v4 format.")


def shard_key(file_id: str) -> str:
    return compute_hash(file_id)[:SHARD_PREFIX_LEN]


class BlobStore:
    """Sharded, path-safe content files under a storage root."""

    DEFAULT_COMPRESSION_THRESHOLD = 10 * 1024 * 1024

    def __init__(
        self,
        root: Path,
        enable_compression: bool = True,
        compression_threshold: int = DEFAULT_COMPRESSION_THRESHOLD,
    ):
        self.root = Path(root).resolve()
        self.snapshots_dir = self.root / SNAPSHOTS_DIR
        self.enable_compression = enable_compression
        self.compression_threshold = compression_threshold
        self.snapshots_dir.mkdir(parents=True, exist_ok=True)

    # ── Path Safety ───────────────────────────────────────────────

    def resolve(self, content_ref: str) -> Path:
        """
        Map a content reference to an absolute path inside the root.

        Raises PathViolation without touching the filesystem beyond
        path resolution.
        """
        if not content_ref or not isinstance(content_ref, str):
            raise PathViolation(repr(content_ref), "empty content reference")
        if ".." in content_ref or "~" in content_ref:
            raise PathViolation(content_ref, "contains dangerous characters")
        if "\x00" in content_ref:
            raise PathViolation(content_ref, "contains NUL byte")

        ref = PurePosixPath(content_ref.replace("\\", "/"))
        if ref.is_absolute() or os.path.isabs(content_ref) or re.match(r"^[A-Za-z]:", content_ref):
            raise PathViolation(content_ref, "absolute paths are not allowed")

        candidate = (self.root / Path(*ref.parts)).resolve()
        try:
            rel = candidate.relative_to(self.root)
        except ValueError:
            raise PathViolation(content_ref) from None
        if not rel.parts:
            raise PathViolation(content_ref, "reference points at the storage root")
        return candidate

    def _ref_for(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    # ── Core Operations ───────────────────────────────────────────

    def should_compress(self, content: str) -> bool:
        return self.enable_compression and len(content.encode("utf-8")) > self.compression_threshold

    def put(self, snapshot_id: str, content: str, file_id: str) -> str:
        """
        Write content for a snapshot and return its content reference.

        Writing the same snapshot id again replaces its blob, which is
        how an approved snapshot's content is rewritten in place.
        """
        validate_snapshot_id(snapshot_id)
        shard_dir = self.snapshots_dir / shard_key(file_id)

        data = content.encode("utf-8")
        compress = self.should_compress(content)
        name = f"{snapshot_id}.txt"
        if compress:
            try:
                data = gzip.compress(data)
                name = f"{snapshot_id}.txt.gz"
            except (OSError, ValueError) as e:
                logger.warning("Failed to compress snapshot %s: %s", snapshot_id, e)
                data = content.encode("utf-8")

        target = self.resolve(f"{SNAPSHOTS_DIR}/{shard_dir.name}/{name}")
        shard_dir.mkdir(parents=True, exist_ok=True)
        atomic_write(target, data)

        # A rewrite may flip compression; drop the stale sibling
        stale = shard_dir / (f"{snapshot_id}.txt" if name.endswith(".gz") else f"{snapshot_id}.txt.gz")
        if stale.exists():
            stale.unlink()

        return self._ref_for(target)

    def get(self, content_ref: str, compressed: bool = False) -> str:
        """Read content back, decompressing when flagged or when the ref ends in .gz."""
        path = self.resolve(content_ref)
        if not path.is_file():
            raise FileNotFoundError(f"Snapshot content file not found: {content_ref}")
        data = path.read_bytes()
        if compressed or content_ref.endswith(".gz"):
            try:
                data = gzip.decompress(data)
            except (OSError, EOFError) as e:
                raise OSError(f"Failed to decompress snapshot content {content_ref}: {e}") from e
        return data.decode("utf-8")

    def delete(self, content_ref: str) -> None:
        """Delete a blob. Missing blobs are fine; empty shards are pruned."""
        path = self.resolve(content_ref)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        cleanup_empty_parents(path.parent, self.snapshots_dir)

    def size_of(self, content_ref: str) -> int:
        """Bytes on disk for a blob, 0 if it does not exist."""
        path = self.resolve(content_ref)
        try:
            return path.stat().st_size
        except FileNotFoundError:
            return 0

    def total_size(self) -> int:
        """Bytes of every blob under the snapshots directory."""
        if not self.snapshots_dir.exists():
            return 0
        total = 0
        for dirpath, _dirnames, filenames in os.walk(self.snapshots_dir):
            for name in filenames:
                try:
                    total += os.stat(os.path.join(dirpath, name)).st_size
                except FileNotFoundError:
                    continue
        return total
