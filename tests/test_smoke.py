"""
Smoke tests for the Matatu route scoring engine

Quick tests that verify critical paths are working.
These should run fast (<10s) and fail fast if something is fundamentally broken.

Run with: pytest -m smoke
"""

import pytest
from sqlalchemy import text

from src.models import Route


@pytest.mark.smoke
def test_database_connection(db_session):
    """Test that database connection works"""
    result = db_session.execute(text("SELECT 1")).scalar()
    assert result == 1


@pytest.mark.smoke
def test_database_can_create_and_query_route(db_session):
    """Test basic database insert and query"""
    route = Route(route_id="SMOKE1", name="Smoke Test Route", fare=50)
    db_session.add(route)
    db_session.commit()

    queried_route = db_session.query(Route).filter_by(route_id="SMOKE1").first()
    assert queried_route is not None
    assert queried_route.name == "Smoke Test Route"


@pytest.mark.smoke
def test_api_server_responds(client):
    """Test that API server starts and responds"""
    response = client.get("/")
    assert response.status_code == 200


@pytest.mark.smoke
def test_rating_round_trip(client, sample_route):
    """Test a rating can be submitted and read back"""
    response = client.post(
        "/api/routes/R42/ratings",
        json={"overall": 4},
        headers={"X-Device-Fingerprint": "smoke-device"},
    )
    assert response.status_code == 200

    score = client.get("/api/routes/R42/score").json()
    assert score["overall"] == 4


@pytest.mark.smoke
def test_critical_modules_import():
    """Test that critical modules can be imported"""
    # Database
    from src.database import get_session
    from src.models import Report, Score

    # Engine
    from src.predictions import RoutePredictor
    from src.rate_limiter import RateLimiter
    from src.scoring import ScoreAggregator
    from src.traffic import TrafficResolver

    # API
    from api.main import app

    assert get_session is not None
    assert Report is not None
    assert Score is not None
    assert RoutePredictor is not None
    assert RateLimiter is not None
    assert ScoreAggregator is not None
    assert TrafficResolver is not None
    assert app is not None
