"""
Shared pytest configuration and fixtures.

On Windows CI runners, a spurious KeyboardInterrupt is delivered to the
main thread during long-running tests. All tests actually pass, but
pytest sees the KeyboardInterrupt and exits with code 1, so SIGINT is
ignored there.
"""

import os
import signal

import pytest

from snaptrail.config import HistoryConfig
from snaptrail.history import LocalHistory

_WINDOWS_CI = os.name == "nt" and os.environ.get("CI") == "true"


def pytest_configure(config):
    """Ignore SIGINT on Windows CI to prevent spurious KeyboardInterrupt."""
    if _WINDOWS_CI:
        try:
            signal.signal(signal.SIGINT, signal.SIG_IGN)
        except (OSError, ValueError):
            pass


class FakeClock:
    """Manually advanced clock for suppression windows and access times."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def history(tmp_path):
    h = LocalHistory.open(tmp_path / "history")
    yield h
    h.close()


@pytest.fixture
def make_history(tmp_path):
    """Factory for histories with custom config or index backend."""
    opened = []

    def _make(store="json", name="history", **overrides):
        config = HistoryConfig(**overrides) if overrides else None
        h = LocalHistory.open(tmp_path / name, config=config, store=store)
        opened.append(h)
        return h

    yield _make
    for h in opened:
        h.close()


@pytest.fixture
def manager(history):
    return history.manager
