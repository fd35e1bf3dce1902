"""Pytest configuration.

Settings are read from the environment at import time, so test defaults are
set here before anything from tmc_queue is imported. Logs go to a temporary
directory and Better Stack shipping is disabled.
"""
import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

os.environ["LOGS_DIR"] = tempfile.mkdtemp(prefix="tmc-queue-logs-")
os.environ["BETTERSTACK_SOURCE_TOKEN"] = ""
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("MAX_RETRIES", "3")
os.environ.setdefault("STUCK_THRESHOLD_MINUTES", "30")

from tmc_queue.queue.sqlite_queue import SqliteQueue  # noqa: E402

T0 = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock for the SQLite store."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "queue.db"


@pytest.fixture
def store(db_path, clock):
    queue = SqliteQueue(db_path, clock=clock)
    queue.ensure_schema()
    yield queue
    queue.close()
