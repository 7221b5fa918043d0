from __future__ import annotations

from datetime import datetime, timedelta

import pytest

pytest.importorskip("sqlmodel")
from sqlmodel import Session

from startracker.catalog import CatalogStore
from startracker.models import ActorContext, Role
from startracker.ops import StructuredLogger
from startracker.persistence import build_engine, create_db_and_tables
from startracker.service import StarTracker


class FakeClock:
    """Mutable clock; 2024-03-04 is a Monday."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 4, 9, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'stars.db'}")
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session(engine):
    with Session(engine, expire_on_commit=False) as session:
        yield session


@pytest.fixture()
def catalog(session) -> CatalogStore:
    return CatalogStore(session)


@pytest.fixture()
def logger() -> StructuredLogger:
    return StructuredLogger()


@pytest.fixture()
def tracker(engine, clock, logger) -> StarTracker:
    return StarTracker(engine, clock=clock, logger=logger)


@pytest.fixture()
def parent() -> ActorContext:
    return ActorContext(user_id="parent", role=Role.PARENT)


@pytest.fixture()
def as_child():
    def build(child_id: str) -> ActorContext:
        return ActorContext(user_id=f"child:{child_id}", role=Role.CHILD, child_id=child_id)

    return build
