"""
History configuration.

Limits and thresholds are owned by the embedding editor integration and
handed to the engine. This module gives them documented defaults and
validates what comes in: a value that is missing, non-numeric or not
positive falls back to its default with a warning, so a bad setting can
never switch eviction off or make every snapshot oversized.

Settings can also be read from a JSON file (``config.json`` in the
storage root by convention).
"""

import json
import logging
from dataclasses import dataclass, fields
from pathlib import Path

from .serializable import Serializable

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "config.json"

MIB = 1024 * 1024


@dataclass
class HistoryConfig(Serializable):
    typing_debounce_ms: int = 2000
    filesystem_debounce_ms: int = 1000
    max_snapshots_per_file: int = 100
    max_storage_size: int = 500 * MIB
    ttl_days: float = 90
    max_file_size: int = 50 * MIB
    enable_compression: bool = True
    compression_threshold: int = 10 * MIB
    verbose_logging: bool = False
    cleanup_interval_hours: float = 24

    @classmethod
    def from_dict(cls, d: dict) -> "HistoryConfig":
        """Build a config, replacing invalid values with defaults."""
        known = {f.name: f for f in fields(cls)}
        unknown = set(d) - set(known)
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(sorted(unknown)))

        kwargs = {}
        for name, f in known.items():
            if name not in d:
                continue
            value = d[name]
            if isinstance(f.default, bool):
                if isinstance(value, bool):
                    kwargs[name] = value
                else:
                    logger.warning(
                        "Invalid value for setting %s: %r. Using default: %s", name, value, f.default
                    )
                continue
            kwargs[name] = _positive_number(name, value, f.default)
        return cls(**kwargs)


def _positive_number(name: str, value, default):
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        logger.warning("Invalid value for setting %s: %r. Using default: %s", name, value, default)
        return default
    if value != value or value in (float("inf"), float("-inf")):
        logger.warning("Invalid value for setting %s: %r. Using default: %s", name, value, default)
        return default
    if value <= 0:
        logger.warning(
            "Invalid value for setting %s: %s (must be positive). Using default: %s", name, value, default
        )
        return default
    return value


def load_config(path: Path) -> HistoryConfig:
    """Read a config file; a missing file yields the defaults."""
    path = Path(path)
    if not path.exists():
        return HistoryConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Invalid config file {path}: expected a JSON object")
    return HistoryConfig.from_dict(data)


def save_config(path: Path, config: HistoryConfig):
    Path(path).write_text(json.dumps(config.to_dict(), indent=2), encoding="utf-8")
