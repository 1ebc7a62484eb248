"""
Index document migrations.

The persisted index carries a dotted version string. On load, the
document is brought up to INDEX_VERSION by running every registered
migration newer than its version, in ascending order. Each migration
takes the raw document and returns the upgraded one with its version
field bumped; migrations must be idempotent.

A document with no version (or a malformed one) is treated as
uninitialized: the current structure is built around whatever
snapshots and chains it already holds.
"""

import logging
import re
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)

INDEX_VERSION = "1.0"

_VERSION_PATTERN = re.compile(r"^\d+(\.\d+)+$")


class MigrationError(RuntimeError):
    """Raised when an index document cannot be brought to the current version."""


def is_valid_version(version) -> bool:
    return isinstance(version, str) and bool(_VERSION_PATTERN.match(version))


def compare_versions(v1: str, v2: str) -> int:
    """Return <0, 0 or >0 as v1 is older than, equal to or newer than v2."""
    if not is_valid_version(v1):
        raise ValueError(f"Invalid version format: {v1!r}. Expected format: X.Y or X.Y.Z")
    if not is_valid_version(v2):
        raise ValueError(f"Invalid version format: {v2!r}. Expected format: X.Y or X.Y.Z")
    parts1 = [int(p) for p in v1.split(".")]
    parts2 = [int(p) for p in v2.split(".")]
    for i in range(max(len(parts1), len(parts2))):
        a = parts1[i] if i < len(parts1) else 0
        b = parts2[i] if i < len(parts2) else 0
        if a != b:
            return -1 if a < b else 1
    return 0


def empty_document(version: str = INDEX_VERSION) -> dict:
    return {
        "version": version,
        "metadata": {
            "version": version,
            "created": time.time(),
            "last_cleanup": 0.0,
            "total_snapshots": 0,
            "total_size": 0,
        },
        "snapshots": [],
        "by_file": {},
    }


def migrate_to_1_0(doc: dict) -> dict:
    target = "1.0"
    meta = doc.get("metadata") or {}
    snapshots = doc.get("snapshots") or []
    total = meta.get("total_snapshots")
    return {
        **doc,
        "version": target,
        "metadata": {
            "version": target,
            "created": meta.get("created") or time.time(),
            "last_cleanup": meta.get("last_cleanup") or 0.0,
            "total_snapshots": total if total is not None else len(snapshots),
            "total_size": meta.get("total_size") or 0,
        },
        "snapshots": snapshots,
        "by_file": doc.get("by_file") or {},
    }


MIGRATIONS: dict[str, Callable[[dict], dict]] = {
    "1.0": migrate_to_1_0,
}


def migrate(doc: dict | None, target: str = INDEX_VERSION) -> tuple[dict, bool]:
    """
    Bring a raw index document up to ``target``.

    Returns (document, changed). ``changed`` tells the caller the
    document should be written back.
    """
    if doc is None:
        return empty_document(target), True

    version = doc.get("version")
    if not is_valid_version(version):
        if version:
            logger.warning("Invalid index version format: %r. Resetting to %s.", version, target)
        return MIGRATIONS[target]({**doc, "version": None}), True

    cmp = compare_versions(version, target)
    if cmp == 0:
        return doc, False
    if cmp > 0:
        logger.warning("Index version %s is newer than supported %s; loading as is", version, target)
        return doc, False

    pending = sorted(
        (v for v in MIGRATIONS if compare_versions(v, version) > 0 and compare_versions(v, target) <= 0),
        key=_version_key,
    )
    if not pending:
        raise MigrationError(
            f"No migration path found from version {version} to {target}. "
            f"Current version is not registered in migrations."
        )

    for step in pending:
        try:
            doc = MIGRATIONS[step](doc)
        except Exception as e:
            raise MigrationError(f"Migration to version {step} failed: {e}") from e
        if doc.get("version") != step:
            raise MigrationError(
                f"Migration to version {step} did not update version. "
                f"Expected: {step}, got: {doc.get('version')}"
            )
        logger.info("Migrated snapshot index to version %s", step)
    return doc, True


def _version_key(version: str) -> tuple[int, ...]:
    return tuple(int(p) for p in version.split("."))
