"""
Shared pytest fixtures for the route scoring engine tests

Provides fixtures for:
- Database setup/teardown with in-memory SQLite
- FastAPI test client
- A controllable clock
- Sample routes, reports and scores
"""

from datetime import datetime, timedelta
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from api.main import app, get_config, get_traffic_provider
from src.config import EngineConfig
from src.database import get_db
from src.models import Base, Report, Route, RouteStop, Score

# Tuesday, off-peak hour
NOW = datetime(2026, 3, 10, 12, 0, 0)


class FakeClock:
    """Callable clock that tests can move forward"""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(scope="session")
def test_engine():
    """
    Create an in-memory SQLite engine for testing

    Session-scoped so it's created once for all tests. StaticPool keeps a
    single connection so the TestClient worker threads see the same database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine) -> Generator[Session, None, None]:
    """
    Create a new database session for a test with transaction rollback

    Function-scoped so each test gets a clean database state
    """
    connection = test_engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(bind=connection)
    session = SessionLocal()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture
def config() -> EngineConfig:
    """Default configuration (no traffic API key: report-based traffic)"""
    return EngineConfig(database_url="sqlite:///:memory:")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class FakeTrafficProvider:
    """Stand-in for the external traffic-flow API"""

    name = "here"

    def __init__(self, jam_factors=None, error=None):
        self.jam_factors = jam_factors or []
        self.error = error
        self.calls = []

    def fetch_jam_factors(self, bbox):
        self.calls.append(bbox)
        if self.error is not None:
            raise self.error
        return list(self.jam_factors)


@pytest.fixture
def make_provider():
    """Factory for fake traffic providers: make_provider([jam, ...]) or make_provider(error=exc)"""
    return FakeTrafficProvider


@pytest.fixture(scope="function")
def client(db_session, config):
    """
    FastAPI TestClient with database dependency override

    All API requests will use the test database session
    """

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_config] = lambda: config
    app.dependency_overrides[get_traffic_provider] = lambda: None
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _build_route(route_id: str, name: str, fare: float = 50.0, stops=None) -> Route:
    if stops is None:
        stops = [
            ("Kencom", 36.8219, -1.2921),
            ("Ngara", 36.8233, -1.2750),
            ("Roysambu", 36.8830, -1.2190),
        ]
    route = Route(
        route_id=route_id,
        name=name,
        operator="KBS",
        fare=fare,
        operating_hours_start="05:00",
        operating_hours_end="22:00",
        is_active=True,
    )
    path = []
    for sequence, (stop_name, lng, lat) in enumerate(stops):
        route.stops.append(
            RouteStop(sequence=sequence, name=stop_name, longitude=lng, latitude=lat)
        )
        path.extend([lng, lat])
    route.path = path
    return route


@pytest.fixture
def sample_route(db_session) -> Route:
    """Create and return a sample Route with three stops"""
    route = _build_route("R42", "Route 42 - Thika Road")
    db_session.add(route)
    db_session.commit()
    db_session.refresh(route)
    return route


@pytest.fixture
def sample_routes(db_session) -> list[Route]:
    """Create and return multiple sample Routes"""
    routes = [
        _build_route(f"R{i}", f"Test Route {i}", fare=40.0 + i * 10) for i in range(1, 4)
    ]
    db_session.add_all(routes)
    db_session.commit()
    for route in routes:
        db_session.refresh(route)
    return routes


@pytest.fixture
def make_report(db_session):
    """Factory that adds a Report to the test database"""

    def _make_report(
        route_id: str,
        report_type: str = "delay",
        severity: str = "medium",
        created_at: datetime = None,
        fare: float = None,
        status: str = "pending",
    ) -> Report:
        report = Report(
            route_id=route_id,
            report_type=report_type,
            severity=severity,
            status=status,
            fare=fare,
            longitude=36.8219,
            latitude=-1.2921,
            device_fingerprint="10.0.0.1-pytest",
            created_at=created_at or NOW - timedelta(minutes=30),
        )
        db_session.add(report)
        db_session.commit()
        return report

    return _make_report


@pytest.fixture
def sample_score(db_session, sample_route) -> Score:
    """Create and return a Score built from 4 ratings"""
    score = Score(
        route_id=sample_route.route_id,
        reliability=4.0,
        safety=4.5,
        punctuality=3.5,
        comfort=3.0,
        overall=3.75,
        total_reports=4,
        last_calculated=NOW,
        version=4,
    )
    db_session.add(score)
    db_session.commit()
    db_session.refresh(score)
    return score


@pytest.fixture(autouse=True)
def mock_env_vars(monkeypatch):
    """
    Mock environment variables for tests

    autouse=True means this runs for every test automatically
    """
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    # No traffic API key: tests must never reach the real provider
    monkeypatch.delenv("TRAFFIC_API_KEY", raising=False)
