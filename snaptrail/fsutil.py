"""Filesystem helpers shared by the blob store and the JSON document store."""

import os
import tempfile
import time
from pathlib import Path


def replace_with_retry(src: Path, dst: Path):
    """Replace dst with src, retrying on Windows PermissionError.

    On Windows, antivirus or indexing services can briefly lock files,
    causing ``PermissionError`` on rename.  We retry up to 5 times with
    exponential backoff.  On POSIX, any error is raised immediately.
    """
    if os.name == "nt":
        for attempt in range(5):
            try:
                src.replace(dst)
                return
            except PermissionError:
                if attempt == 4:
                    raise
                time.sleep(0.01 * (2 ** attempt))
    else:
        src.replace(dst)


def atomic_write(path: Path, data: bytes):
    """
    Write bytes to a file atomically via write-to-temp + rename.

    Readers never observe a half-written blob or index document, even if
    the process dies mid-write.
    """
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        replace_with_retry(Path(tmp_path), path)
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def cleanup_empty_parents(dir_path: Path, stop_at: Path):
    """Remove empty directories from dir_path upward, never touching stop_at."""
    current = dir_path
    stop_resolved = stop_at.resolve()
    while current.exists():
        try:
            resolved = current.resolve()
            if resolved == stop_resolved:
                break
            resolved.relative_to(stop_resolved)
        except ValueError:
            break
        try:
            if not any(current.iterdir()):
                current.rmdir()
                current = current.parent
            else:
                break
        except OSError:
            break
