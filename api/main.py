"""
FastAPI application for the Matatu route scoring API

Serves rider ratings, route scores, predictive insights and the traffic cache
to the SACCO / authority / admin dashboards.
"""

from functools import lru_cache
from typing import Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from api.insights import (
    get_alternatives,
    get_demand_forecast,
    get_route_efficiency,
    get_route_insights,
    get_route_score,
    get_route_trends,
    get_score_ranking,
    get_stats,
    get_travel_time,
    rate_route,
    refresh_traffic,
    traffic_summary,
)
from src.config import EngineConfig, setup_logging
from src.database import get_db
from src.errors import NotFound, RateLimited, ValidationError
from src.rate_limiter import device_fingerprint

app = FastAPI(
    title="Matatu Route Scoring API",
    description="REST API for crowd-sourced route scores and predictive analytics",
    version="1.0.0",
)

# Enable CORS for frontend development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify your frontend domain
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_config() -> EngineConfig:
    """Engine configuration, read from the environment once per process"""
    return EngineConfig.from_env()


def get_traffic_provider():
    """External traffic provider override (None: built from configuration)"""
    return None


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(RateLimited)
async def rate_limited_handler(request: Request, exc: RateLimited):
    return JSONResponse(
        status_code=429,
        content={"detail": str(exc), "retry_after": exc.retry_after_seconds},
        headers={"Retry-After": str(exc.retry_after_seconds)},
    )


@app.get("/")
async def root():
    """API root - health check"""
    return {"status": "ok", "name": "Matatu Route Scoring API", "version": "1.0.0", "docs": "/docs"}


@app.post("/api/routes/{route_id}/ratings")
def post_rating(
    route_id: str,
    request: Request,
    body: dict = Body(...),
    x_device_fingerprint: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
    user_agent: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_config),
):
    """
    Submit a rating for a route

    Body fields (all optional, at least one required, each 0-5):
    reliability, safety, punctuality, comfort, overall.

    The device is identified by the X-Device-Fingerprint header, or by
    client IP + User-Agent when the header is missing.

    Returns:
        Acceptance status and the updated route score
    """
    fingerprint = x_device_fingerprint or device_fingerprint(
        request.client.host if request.client else None, user_agent
    )
    return rate_route(db, route_id, body, fingerprint, user_id=x_user_id, config=config)


@app.get("/api/routes/{route_id}/score")
def get_score(route_id: str, db: Session = Depends(get_db)):
    """Current crowd-sourced score for a route"""
    return get_route_score(db, route_id)


@app.get("/api/routes/{route_id}/insights")
def get_insights(
    route_id: str,
    days: int = 30,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_config),
):
    """
    Fare, safety, crowding, travel time and efficiency predictions for a route

    Args:
        route_id: Route identifier
        days: Report lookback window (default: 30)
    """
    return get_route_insights(db, route_id=route_id, days=days, config=config)


@app.get("/api/insights")
def get_top_insights(
    days: int = 30,
    limit: int = 10,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_config),
):
    """Insights for the top `limit` routes by overall score"""
    return get_route_insights(db, days=days, limit=limit, config=config)


@app.get("/api/routes/{route_id}/efficiency")
def get_efficiency(
    route_id: str, db: Session = Depends(get_db), config: EngineConfig = Depends(get_config)
):
    """Composite efficiency score with factor breakdown and recommendations"""
    return get_route_efficiency(db, route_id, config=config)


@app.get("/api/routes/{route_id}/travel-time")
def get_route_travel_time(
    route_id: str,
    from_stop: Optional[str] = None,
    to_stop: Optional[str] = None,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_config),
):
    """Predicted travel time between two stops (whole route by default)"""
    return get_travel_time(db, route_id, from_stop, to_stop, config=config)


@app.get("/api/routes/{route_id}/trends")
def get_trends(route_id: str, period: str = "weekly", db: Session = Depends(get_db)):
    """
    Report volume and safety trend versus the previous period

    Args:
        period: 'daily', 'weekly' or 'monthly'
    """
    if period not in ["daily", "weekly", "monthly"]:
        raise HTTPException(
            status_code=400, detail="Invalid period. Must be 'daily', 'weekly', or 'monthly'"
        )
    return get_route_trends(db, route_id, period)


@app.get("/api/routes/{route_id}/demand")
def get_demand(route_id: str, time_slot: str, db: Session = Depends(get_db)):
    """Demand forecast for an HH:MM time slot"""
    try:
        return get_demand_forecast(db, route_id, time_slot)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/api/alternatives")
def get_alternative_routes(
    from_stop: str,
    to_stop: str,
    max_time: Optional[int] = None,
    max_cost: Optional[float] = None,
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_config),
):
    """Routes serving both stops in order, most efficient first"""
    return get_alternatives(db, from_stop, to_stop, max_time, max_cost, config=config)


@app.get("/api/scores/top")
def get_top_scores(limit: int = 10, db: Session = Depends(get_db)):
    return get_score_ranking(db, limit=limit, best_first=True)


@app.get("/api/scores/worst")
def get_worst_scores(limit: int = 10, db: Session = Depends(get_db)):
    return get_score_ranking(db, limit=limit, best_first=False)


@app.get("/api/scores/stats")
def get_scores_stats(db: Session = Depends(get_db)):
    return get_stats(db)


@app.post("/api/traffic/refresh")
def post_traffic_refresh(
    db: Session = Depends(get_db),
    config: EngineConfig = Depends(get_config),
    provider=Depends(get_traffic_provider),
):
    """Recompute the traffic cache for all active routes"""
    return refresh_traffic(db, config=config, provider=provider)


@app.get("/api/traffic")
def get_traffic(db: Session = Depends(get_db)):
    """Cached congestion readings per route"""
    return traffic_summary(db)


if __name__ == "__main__":
    import uvicorn

    setup_logging(get_config().log_level)
    uvicorn.run(app, host="0.0.0.0", port=8000)
