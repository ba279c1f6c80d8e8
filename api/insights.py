"""
Request-level engine calls for the dashboard API

Each function takes a database session and returns plain dictionaries ready
for JSON serialization. Domain errors (NotFound, ValidationError, RateLimited)
are raised for the HTTP layer to translate.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from src.config import EngineConfig
from src.errors import NotFound, RateLimited
from src.models import AnalyticsEvent, Route, Score
from src.predictions import DEFAULT_LOOKBACK_DAYS, RoutePredictor
from src.rate_limiter import RateLimiter
from src.scoring import PartialRating, ScoreAggregator, get_ranked_scores, get_scoring_stats
from src.traffic import TrafficProvider, TrafficResolver, get_traffic_summary

logger = logging.getLogger(__name__)


def get_route_or_404(db: Session, route_id: str) -> Route:
    route = db.query(Route).filter(Route.route_id == route_id).first()
    if route is None:
        raise NotFound(route_id)
    return route


def rate_route(
    db: Session,
    route_id: str,
    body: dict,
    fingerprint: str,
    user_id: Optional[str] = None,
    config: Optional[EngineConfig] = None,
    clock: Callable[[], datetime] = datetime.utcnow,
) -> dict:
    """
    Submit a rider rating: validate, rate-limit, then merge into the route score

    The body is validated before the rate limiter runs so malformed input never
    consumes a device's window.

    Args:
        db: Database session
        route_id: Route being rated
        body: Rating fields (reliability, safety, punctuality, comfort, overall)
        fingerprint: Device fingerprint
        user_id: Authenticated user, if any
        config: Engine configuration
        clock: Time source

    Returns:
        {"status": "accepted", "score": {...}}

    Raises:
        NotFound: unknown route
        ValidationError: malformed rating
        RateLimited: device window exceeded
    """
    get_route_or_404(db, route_id)
    rating = PartialRating.from_mapping(body)

    decision = RateLimiter(db, config=config, clock=clock).check_and_record(
        route_id, fingerprint, user_id
    )
    if not decision.allowed:
        raise RateLimited(decision.retry_after_seconds)

    score = ScoreAggregator(db, clock=clock).apply_rating(route_id, rating)

    db.add(
        AnalyticsEvent(
            event_type="route_rated",
            route_id=route_id,
            user_id=user_id,
            device_fingerprint=fingerprint,
            payload=rating.to_dict(),
            created_at=clock(),
        )
    )
    db.commit()

    return {"status": "accepted", "score": score.to_dict()}


def get_route_score(db: Session, route_id: str) -> dict:
    get_route_or_404(db, route_id)
    score = db.query(Score).filter(Score.route_id == route_id).first()
    if score is None:
        raise NotFound(route_id, f"Route {route_id} has no score yet")
    return score.to_dict()


def get_route_insights(
    db: Session,
    route_id: Optional[str] = None,
    days: int = DEFAULT_LOOKBACK_DAYS,
    limit: int = 10,
    config: Optional[EngineConfig] = None,
    clock: Callable[[], datetime] = datetime.utcnow,
):
    """
    Predictions for one route, or for the top-N routes by overall score

    Args:
        db: Database session
        route_id: Route to analyze; when omitted the top `limit` scored routes are used
        days: Lookback window for report history (default: 30)
        limit: Number of routes in top-N mode (default: 10)

    Returns:
        Insights dictionary (single route) or list of them (top-N)
    """
    predictor = RoutePredictor(db, config=config, clock=clock)

    if route_id is not None:
        route = get_route_or_404(db, route_id)
        return predictor.route_insights(route, days=days)

    top_ids = [score.route_id for score in get_ranked_scores(db, limit=limit)]
    routes = (
        db.query(Route)
        .filter(Route.route_id.in_(top_ids), Route.is_active.is_(True))
        .all()
        if top_ids
        else []
    )
    route_map = {route.route_id: route for route in routes}

    return [
        predictor.route_insights(route_map[rid], days=days)
        for rid in top_ids
        if rid in route_map
    ]


def get_route_efficiency(db: Session, route_id: str, config: Optional[EngineConfig] = None) -> dict:
    route = get_route_or_404(db, route_id)
    return RoutePredictor(db, config=config).calculate_efficiency(route)


def get_travel_time(
    db: Session,
    route_id: str,
    from_stop: Optional[str] = None,
    to_stop: Optional[str] = None,
    config: Optional[EngineConfig] = None,
) -> dict:
    route = get_route_or_404(db, route_id)
    return RoutePredictor(db, config=config).predict_travel_time(route, from_stop, to_stop)


def get_route_trends(db: Session, route_id: str, period: str = "weekly") -> dict:
    route = get_route_or_404(db, route_id)
    return RoutePredictor(db).analyze_trends(route, period)


def get_demand_forecast(db: Session, route_id: str, time_slot: str) -> dict:
    route = get_route_or_404(db, route_id)
    return RoutePredictor(db).forecast_demand(route, time_slot)


def get_alternatives(
    db: Session,
    from_stop: str,
    to_stop: str,
    max_time: Optional[int] = None,
    max_cost: Optional[float] = None,
    config: Optional[EngineConfig] = None,
) -> dict:
    alternatives = RoutePredictor(db, config=config).find_alternative_routes(
        from_stop, to_stop, max_time=max_time, max_cost=max_cost
    )
    return {"alternatives": alternatives, "count": len(alternatives)}


def get_score_ranking(db: Session, limit: int = 10, best_first: bool = True) -> list[dict]:
    return [score.to_dict() for score in get_ranked_scores(db, limit=limit, best_first=best_first)]


def get_stats(db: Session) -> dict:
    return get_scoring_stats(db)


def refresh_traffic(
    db: Session,
    config: Optional[EngineConfig] = None,
    provider: Optional[TrafficProvider] = None,
) -> dict:
    updated = TrafficResolver(db, config=config, provider=provider).refresh_all()
    logger.info("Traffic cache refreshed for %d routes", updated)
    return {"updated_count": updated}


def traffic_summary(db: Session) -> list[dict]:
    return get_traffic_summary(db)
