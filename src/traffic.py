"""
Traffic factor resolution

Produces a congestion multiplier (0.8 - 1.5) and a congestion index (0 - 100)
for a route, either from an external traffic-flow provider (when an API key is
configured) or from the density of recent crowding/delay reports.

Resolution never raises to its caller. Internally every attempt yields a
TrafficResult that is either resolved or carries a ResolutionError; the public
resolve() converts errors to the neutral default at the boundary.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

import requests
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.config import EngineConfig
from src.geo import bounding_box, parse_path
from src.models import Report, Route, TrafficCache

logger = logging.getLogger(__name__)

MIN_FACTOR = 0.8
MAX_FACTOR = 1.5
BBOX_PAD_DEGREES = 0.005
REPORT_LOOKBACK = timedelta(hours=2)
CONGESTION_REPORT_TYPES = ("crowding", "delay")
REPORTS_PROVIDER = "reports"


@dataclass(frozen=True)
class TrafficFactor:
    traffic_factor: float
    congestion_index: int
    provider: str

    def to_dict(self) -> dict:
        return {
            "traffic_factor": self.traffic_factor,
            "congestion_index": self.congestion_index,
            "provider": self.provider,
        }


NEUTRAL_FACTOR = TrafficFactor(traffic_factor=1.0, congestion_index=0, provider="none")


@dataclass(frozen=True)
class ResolutionError:
    """Why a resolution fell back to the neutral factor"""

    kind: str  # no_geometry | provider_failed | provider_empty | store_failed | unexpected
    message: str
    provider: Optional[str] = None


@dataclass(frozen=True)
class TrafficResult:
    factor: Optional[TrafficFactor] = None
    error: Optional[ResolutionError] = None

    @property
    def resolved(self) -> bool:
        return self.error is None and self.factor is not None

    def or_default(self) -> TrafficFactor:
        """
        The resolved factor, or the neutral 1.0 / 0 factor

        Provider failures keep the provider name (the provider was asked and
        answered nothing useful); unexpected errors report provider 'none'.
        """
        if self.resolved:
            return self.factor
        provider = self.error.provider if self.error and self.error.provider else "none"
        return TrafficFactor(traffic_factor=1.0, congestion_index=0, provider=provider)


class TrafficProvider(Protocol):
    name: str

    def fetch_jam_factors(self, bbox: tuple[float, float, float, float]) -> list[float]:
        """Jam factors (0-10) for flow records inside (west, south, east, north)"""


class HereTrafficProvider:
    """HERE Traffic API v7 flow client"""

    name = "here"

    def __init__(self, api_key: str, url: str, timeout: float = 10.0, session=None):
        self.api_key = api_key
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch_jam_factors(self, bbox: tuple[float, float, float, float]) -> list[float]:
        west, south, east, north = bbox
        params = {
            "in": f"bbox:{west:.6f},{south:.6f},{east:.6f},{north:.6f}",
            "locationReferencing": "none",
            "apiKey": self.api_key,
        }
        response = self.session.get(self.url, params=params, timeout=self.timeout)
        response.raise_for_status()

        jam_factors = []
        for result in response.json().get("results", []):
            jam = (result.get("currentFlow") or {}).get("jamFactor")
            if isinstance(jam, (int, float)) and not isinstance(jam, bool):
                jam_factors.append(float(jam))
        return jam_factors


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def route_points(route: Route) -> list[tuple[float, float]]:
    """(lng, lat) points from a route's stops and path"""
    points = [
        (stop.longitude, stop.latitude)
        for stop in route.stops
        if stop.longitude is not None and stop.latitude is not None
    ]
    points.extend(parse_path(route.path))
    return points


class TrafficResolver:
    """Resolves and caches per-route traffic factors"""

    def __init__(
        self,
        db: Session,
        config: Optional[EngineConfig] = None,
        provider: Optional[TrafficProvider] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.config = config or EngineConfig()
        self.clock = clock

        if provider is None and self.config.has_traffic_provider:
            provider = HereTrafficProvider(
                api_key=self.config.traffic_api_key,
                url=self.config.traffic_api_url,
                timeout=self.config.traffic_timeout_seconds,
            )
        self.provider = provider

    def resolve(self, route: Route) -> TrafficFactor:
        """Traffic factor for a route; never raises"""
        return self.resolve_result(route).or_default()

    def resolve_result(self, route: Route) -> TrafficResult:
        """
        Resolve a route's traffic factor, keeping the reason when it defaults

        Args:
            route: Route to resolve

        Returns:
            TrafficResult (resolved factor or ResolutionError)
        """
        try:
            if self.provider is not None:
                result = self._resolve_from_provider(route)
            else:
                result = self._resolve_from_reports(route)
        except SQLAlchemyError as e:
            # A failed statement aborts the transaction on PostgreSQL
            self.db.rollback()
            result = TrafficResult(error=ResolutionError(kind="store_failed", message=str(e)))
        except Exception as e:
            logger.exception("Traffic resolution failed for route %s", getattr(route, "route_id", None))
            return TrafficResult(error=ResolutionError(kind="unexpected", message=str(e)))

        if not result.resolved:
            logger.warning(
                "Traffic factor defaulted for route %s: %s (%s)",
                route.route_id,
                result.error.kind,
                result.error.message,
            )
        return result

    def _resolve_from_provider(self, route: Route) -> TrafficResult:
        provider_name = getattr(self.provider, "name", self.config.traffic_provider)
        bbox = bounding_box(route_points(route), pad=BBOX_PAD_DEGREES)
        if bbox is None:
            return TrafficResult(
                error=ResolutionError(
                    kind="no_geometry", message="route has no coordinates", provider=provider_name
                )
            )

        try:
            jam_factors = self.provider.fetch_jam_factors(bbox)
        except (requests.RequestException, ValueError, AttributeError, TypeError) as e:
            return TrafficResult(
                error=ResolutionError(kind="provider_failed", message=str(e), provider=provider_name)
            )

        if not jam_factors:
            return TrafficResult(
                error=ResolutionError(
                    kind="provider_empty", message="no flow records in bbox", provider=provider_name
                )
            )

        avg_jam = sum(jam_factors) / len(jam_factors)
        return TrafficResult(
            factor=TrafficFactor(
                traffic_factor=_clamp(1.0 + avg_jam / 10 * 0.5, MIN_FACTOR, MAX_FACTOR),
                congestion_index=int(round(_clamp(avg_jam / 10 * 100, 0, 100))),
                provider=provider_name,
            )
        )

    def _resolve_from_reports(self, route: Route) -> TrafficResult:
        since = self.clock() - REPORT_LOOKBACK
        report_count = (
            self.db.query(Report)
            .filter(
                Report.route_id == route.route_id,
                Report.report_type.in_(CONGESTION_REPORT_TYPES),
                Report.created_at >= since,
            )
            .count()
        )

        traffic_factor = min(MAX_FACTOR, 1.0 + report_count / 20)
        congestion_index = min(100, int(round((traffic_factor - 1.0) / 0.5 * 100)))
        return TrafficResult(
            factor=TrafficFactor(
                traffic_factor=traffic_factor,
                congestion_index=congestion_index,
                provider=REPORTS_PROVIDER,
            )
        )

    def refresh_all(self, routes: Optional[list[Route]] = None) -> int:
        """
        Resolve every active route and upsert its TrafficCache row

        Args:
            routes: Routes to refresh (default: all active routes)

        Returns:
            Number of cache rows written (0 if the write failed)
        """
        try:
            if routes is None:
                routes = self.db.query(Route).filter(Route.is_active.is_(True)).all()

            # Resolve everything before writing: a failed read rolls the session back
            resolved = [(route, self.resolve(route)) for route in routes if route.is_active]

            updated = 0
            for route, factor in resolved:
                cache = self.db.get(TrafficCache, route.route_id)
                if cache is None:
                    cache = TrafficCache(route_id=route.route_id)
                    self.db.add(cache)

                cache.traffic_factor = factor.traffic_factor
                cache.congestion_index = factor.congestion_index
                cache.provider = factor.provider
                cache.updated_at = self.clock()
                updated += 1

            self.db.commit()
            return updated
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Traffic cache refresh failed")
            return 0


def get_cached_factor(db: Session, route_id: str) -> float:
    """Cached traffic factor for a route, 1.0 on cache miss or store error"""
    try:
        cache = db.get(TrafficCache, route_id)
    except SQLAlchemyError:
        logger.warning("Traffic cache lookup failed for route %s", route_id)
        return 1.0
    return cache.traffic_factor if cache is not None else 1.0


def get_traffic_summary(db: Session) -> list[dict]:
    """All cached traffic readings, most congested first"""
    rows = db.query(TrafficCache).order_by(TrafficCache.congestion_index.desc()).all()
    return [
        {
            "route_id": row.route_id,
            "congestion_index": row.congestion_index,
            "traffic_factor": row.traffic_factor,
            "provider": row.provider,
            "updated_at": row.updated_at.isoformat() if row.updated_at else None,
        }
        for row in rows
    ]
