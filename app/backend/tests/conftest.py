from __future__ import annotations

from collections.abc import Generator
from datetime import timedelta
from functools import partial

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import tracker.models.entities  # noqa: F401
from tracker.api.routes.performance import get_performance_dashboard
from tracker.core.config import get_settings
from tracker.db.base import Base
from tracker.main import create_app
from tracker.models.entities import (
    CacheRecord,
    Project,
    ProjectExpense,
    ProjectMember,
    Task,
    TaskAssignment,
    User,
)
from tracker.repositories.tracker_repository import repository_scope
from tracker.services.performance_cache import PerformanceCache, SqlCacheStore
from tracker.services.performance_dashboard import PerformanceDashboard

from tests.fakes import FakeClock, ManualTimer

TEST_TABLES = [
    User.__table__,
    Project.__table__,
    ProjectMember.__table__,
    ProjectExpense.__table__,
    Task.__table__,
    TaskAssignment.__table__,
    CacheRecord.__table__,
]


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine, tables=TEST_TABLES)
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    try:
        yield TestingSessionLocal
    finally:
        Base.metadata.drop_all(bind=engine, tables=TEST_TABLES)
        engine.dispose()


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def timer() -> ManualTimer:
    return ManualTimer()


@pytest.fixture()
def dashboard(session_factory: sessionmaker[Session], clock: FakeClock, timer: ManualTimer) -> PerformanceDashboard:
    cache = PerformanceCache(
        SqlCacheStore(session_factory),
        report_key="performance",
        ttl=timedelta(minutes=5),
        clock=clock,
    )
    return PerformanceDashboard(
        partial(repository_scope, session_factory),
        cache=cache,
        timer=timer,
        clock=clock,
    )


@pytest.fixture()
def client(
    dashboard: PerformanceDashboard,
    monkeypatch: pytest.MonkeyPatch,
) -> Generator[TestClient, None, None]:
    monkeypatch.setenv("PERFORMANCE_REFRESH_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("PERFORMANCE_CACHE_BACKEND", "memory")
    get_settings.cache_clear()
    app = create_app()

    app.dependency_overrides[get_performance_dashboard] = lambda: dashboard
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    get_settings.cache_clear()
