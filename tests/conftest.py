from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator

import pytest
from sqlalchemy.engine import Engine

from kidgoals.config import Settings
from kidgoals.persistence import create_db_and_tables, create_db_engine
from kidgoals.service import GoalService


class FixedClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 2, 9, 30))


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'kidgoals.db'}"


@pytest.fixture
def settings(database_url: str) -> Settings:
    return Settings(database_url=database_url, lock_timeout_seconds=5.0, unit_of_work_timeout_seconds=10.0)


@pytest.fixture
def engine(database_url: str) -> Iterator[Engine]:
    engine = create_db_engine(database_url)
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def service(engine: Engine, settings: Settings, clock: FixedClock) -> GoalService:
    return GoalService(engine, settings=settings, clock=clock)
