from datetime import datetime, timedelta, timezone

import pytest
from loguru import logger

from schedulectl import storage
from schedulectl.models import ScheduleConfiguration
from schedulectl.schedule import Schedule
from schedulectl.substrate import OperationBatch

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
MINUTE = timedelta(minutes=1)


class Clock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def quiet_logs():
    # CLI runs swap sinks onto streams that are closed afterwards
    logger.remove()
    yield
    logger.remove()


@pytest.fixture
def home(tmp_path, monkeypatch):
    monkeypatch.setenv("SCHEDULECTL_HOME", str(tmp_path))
    yield tmp_path
    storage.close_conn()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def batch():
    return OperationBatch()


@pytest.fixture
def config_factory():
    def make(**kwargs):
        kwargs.setdefault("orchestration_name", "report")
        kwargs.setdefault("schedule_id", "s1")
        kwargs.setdefault("interval", MINUTE)
        return ScheduleConfiguration(**kwargs)
    return make


@pytest.fixture
def schedule(batch, clock):
    return Schedule("s1", batch, clock=clock)


@pytest.fixture
def active(schedule, batch, config_factory):
    """A created schedule whose creation side effects have been cleared."""
    schedule.create(config_factory())
    batch.clear()
    return schedule
