from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from share_credits.config import Settings
from share_credits.db.memory import InMemoryDBManager
from share_credits.notifications.queue import InMemoryNotificationQueue
from share_credits.services.engine import build_engine

START = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Deterministic clock; tests move it forward explicitly."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        MONGO_URI=None,
        LEDGER_LOG_PATH=str(tmp_path / "ledger.log"),
        SCHEDULER_ENABLED=False,
    )


@pytest.fixture
def db() -> InMemoryDBManager:
    return InMemoryDBManager()


@pytest.fixture
def queue() -> InMemoryNotificationQueue:
    return InMemoryNotificationQueue()


@pytest.fixture
def engine(settings, db, queue, clock):
    return build_engine(settings, db=db, queue=queue, clock=clock)
