"""Shared fixtures."""

import tempfile
from pathlib import Path

import pytest

from actionrail.storage.sqlite import SQLiteStore


class FakeClock:
    """A controllable clock returning seconds."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def store():
    """A file-backed SQLite store in a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db = SQLiteStore(Path(tmpdir) / "test.db")
        await db.initialize()
        yield db
        await db.close()
