from contextlib import contextmanager
from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from scheduler import SchedulerManager
from schemas import IncomeIn, SignupIn
from services import IncomeService, UserService


def test_run_now_generates_summaries_for_clock_month() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    @contextmanager
    def session_factory():
        with Session(engine) as session:
            yield session

    with Session(engine) as session:
        user = UserService(session).signup(
            SignupIn(name="Ada", email="ada@example.com", password="correct-horse")
        )
        income = IncomeService(session, user.id).create(
            IncomeIn(description="Salary", amount=100)
        )
        income.created_at = datetime(2024, 3, 10, 9, 0)
        session.commit()

    manager = SchedulerManager(
        session_factory=session_factory, clock=lambda: datetime(2024, 3, 31, 22, 0)
    )
    run = manager.run_now()

    assert run.month == "2024-03"
    assert run.start == datetime(2024, 3, 1)
    assert run.inserted == 1


def test_run_now_is_single_flight() -> None:
    calls = []

    @contextmanager
    def session_factory():
        calls.append(1)
        yield None

    manager = SchedulerManager(session_factory=session_factory)
    manager._lock.acquire()
    try:
        assert manager.run_now("cron") is None
    finally:
        manager._lock.release()

    assert calls == []


def test_run_now_propagates_failures_and_releases_lock() -> None:
    @contextmanager
    def session_factory():
        raise RuntimeError("store offline")
        yield

    manager = SchedulerManager(session_factory=session_factory)

    with pytest.raises(RuntimeError, match="store offline"):
        manager.run_now()
    assert not manager._lock.locked()
