"""
Predictive analytics for routes

Fare, safety, crowd density, efficiency and travel-time predictors built from
noisy historical rider reports. All predictors are read-only: they consume the
TrafficCache written by the traffic refresh job but never write anything.

Every predictor degrades to documented neutral defaults when there is no
history (or the store cannot be read) instead of raising.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Optional

import numpy as np
import pandas as pd
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.config import EngineConfig
from src.geo import segment_distance_km, stop_fractions, travel_time_minutes
from src.models import Report, Route, Score
from src.traffic import get_cached_factor

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_DAYS = 30
CROWD_LOOKBACK_DAYS = 7

# Fare
DEFAULT_FARE_VARIANCE = 5.0
MAX_CONFIDENCE = 0.95

# Safety
# Anything above medium counts as high
SAFETY_SEVERITY_VALUES = {"low": 1, "medium": 2, "high": 3, "critical": 3}
DEFAULT_INCIDENT_SCORE = 4.5
DEFAULT_SEVERITY_SCORE = 1.0

# Crowd density banding (percent full)
CROWD_PERCENTAGES = {"high": 85, "medium": 60, "low": 30}

# Efficiency
EFFICIENCY_WEIGHTS = {
    "reliability": 0.25,
    "safety": 0.25,
    "comfort": 0.15,
    "cost": 0.10,
    "frequency": 0.05,
    "punctuality": 0.20,
}

# Penalty mapping used when a route has no Score yet.
# Each entry: report types consulted, value per severity, default with no reports.
# "penalty" entries are subtracted from 100, "value" entries are averaged directly.
PENALTY_MAPPING = {
    "reliability": {
        "types": ("breakdown", "delay"),
        "penalty": {"low": 5, "medium": 15, "high": 25, "critical": 35},
        "default": 50,
    },
    "safety": {
        "types": ("safety", "accident"),
        "penalty": {"low": 5, "medium": 15, "high": 30, "critical": 30},
        "default": 80,
    },
    "punctuality": {
        "types": ("delay",),
        "value": {"low": 80, "medium": 60, "high": 40, "critical": 40},
        "default": 60,
    },
    "comfort": {
        "types": ("crowding",),
        "value": {"low": 90, "medium": 70, "high": 50, "critical": 50},
        "default": 70,
    },
}

TREND_PERIODS = {"daily": 1, "weekly": 7, "monthly": 30}


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def fare_time_multiplier(hour: int) -> float:
    """Fare surcharge by hour: morning peak x1.2, evening peak x1.15, night x1.3"""
    if 7 <= hour <= 9:
        return 1.2
    if 17 <= hour <= 19:
        return 1.15
    if hour >= 22 or hour <= 5:
        return 1.3
    return 1.0


def travel_time_multiplier(hour: int) -> float:
    """Slowdown applied to the base speed by hour of day"""
    if 7 <= hour <= 9:
        return 1.3
    if 17 <= hour <= 19:
        return 1.4
    if hour >= 22 or hour <= 5:
        return 0.8
    return 1.0


def fare_confidence(samples: int) -> float:
    """Confidence grows with observed fares: 0.6 + samples/20, capped at 0.95"""
    return min(MAX_CONFIDENCE, 0.6 + samples / 20)


def crowd_level_for_hour(hour: int) -> str:
    if 7 <= hour <= 9 or 17 <= hour <= 19:
        return "high"
    if 10 <= hour <= 16:
        return "medium"
    return "low"


def operating_hours_span(start: Optional[str], end: Optional[str]) -> int:
    """
    Service span in whole hours from HH:MM strings

    Overnight services (end before start) wrap past midnight. Missing or
    malformed hours count as a 12 hour day.
    """
    try:
        start_hour = int(start.split(":")[0])
        end_hour = int(end.split(":")[0])
    except (AttributeError, ValueError):
        return 12

    span = end_hour - start_hour
    if span < 0:
        span += 24
    return span


def _severity_bucket(severity: Optional[str]) -> str:
    return severity if severity in ("low", "medium", "high", "critical") else "medium"


class RoutePredictor:
    """Read-only predictors over a route's reports, score and cached traffic"""

    def __init__(
        self,
        db: Session,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.config = config or EngineConfig()
        self.clock = clock

    def _reports(
        self,
        route_id: str,
        days: Optional[float] = None,
        report_types: Optional[tuple] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[Report]:
        """Reports for a route, oldest first; empty list if the store is unavailable"""
        if start is None and days is not None:
            start = self.clock() - timedelta(days=days)

        try:
            query = self.db.query(Report).filter(Report.route_id == route_id)
            if start is not None:
                query = query.filter(Report.created_at >= start)
            if end is not None:
                query = query.filter(Report.created_at < end)
            if report_types:
                query = query.filter(Report.report_type.in_(report_types))
            return query.order_by(Report.created_at).all()
        except SQLAlchemyError:
            logger.warning("Report query failed for route %s, using defaults", route_id)
            self.db.rollback()
            return []

    def _score(self, route_id: str) -> Optional[Score]:
        try:
            return self.db.query(Score).filter(Score.route_id == route_id).first()
        except SQLAlchemyError:
            logger.warning("Score lookup failed for route %s", route_id)
            self.db.rollback()
            return None

    def _base_fare(self, route: Route) -> float:
        return route.fare if route.fare else self.config.default_fare

    # Fare

    def predict_fare(
        self, route: Route, days: int = DEFAULT_LOOKBACK_DAYS, at: Optional[datetime] = None
    ) -> dict:
        """
        Predict the fare a rider will pay from recently observed fares

        Args:
            route: Route to predict for
            days: Lookback window for observed fares (default: 30)
            at: Time of travel (default: now)

        Returns:
            Dictionary with predicted fare, spread, confidence and trend
        """
        at = at or self.clock()
        fares = [r.fare for r in self._reports(route.route_id, days=days) if r.fare is not None]
        samples = len(fares)

        average_fare = float(np.mean(fares)) if fares else 0.0
        base = average_fare or self._base_fare(route)
        multiplier = fare_time_multiplier(at.hour)

        variance = float(np.std(fares)) if samples >= 2 else DEFAULT_FARE_VARIANCE

        trend = "stable"
        if samples > 3:
            # A flat first-to-last comparison reads as decreasing
            trend = "increasing" if fares[-1] > fares[0] else "decreasing"

        return {
            "route_id": route.route_id,
            "predicted_fare": round(base * multiplier, 2),
            "base_fare": base,
            "time_multiplier": multiplier,
            "variance": round(variance, 2),
            "confidence": fare_confidence(samples),
            "trend": trend,
            "samples": samples,
        }

    # Safety

    def predict_safety(self, route: Route, days: int = DEFAULT_LOOKBACK_DAYS) -> dict:
        """
        Safety score (1-5) from safety reports in the lookback window

        With no safety reports the route scores 4.5 on incidents and is treated
        as having only low-severity history.
        """
        reports = self._reports(route.route_id, days=days, report_types=("safety",))

        if reports:
            incident_score = max(1.0, 5 - len(reports) * 0.2)
            severity_score = float(
                np.mean([SAFETY_SEVERITY_VALUES[_severity_bucket(r.severity)] for r in reports])
            )
        else:
            incident_score = DEFAULT_INCIDENT_SCORE
            severity_score = DEFAULT_SEVERITY_SCORE

        overall = clamp(5 - severity_score * 0.5, 1, 5)

        if overall >= 4:
            risk_level = "low"
        elif overall >= 3:
            risk_level = "moderate"
        else:
            risk_level = "high"

        return {
            "route_id": route.route_id,
            "incident_score": round(incident_score, 2),
            "severity_score": round(severity_score, 2),
            "overall_score": round(overall, 2),
            "incident_count": len(reports),
            "risk_level": risk_level,
        }

    # Crowding

    def predict_crowd_density(
        self, route: Route, at: Optional[datetime] = None, days: int = CROWD_LOOKBACK_DAYS
    ) -> dict:
        """
        Crowd level from the severity mix of recent crowding reports

        A strict majority of high (or critical) reports gives "high", a majority
        of medium gives "medium", anything else "low". Without reports the level
        comes from the hour of day.
        """
        at = at or self.clock()
        reports = self._reports(route.route_id, days=days, report_types=("crowding",))

        if reports:
            counts = Counter(
                "high" if r.severity == "critical" else _severity_bucket(r.severity)
                for r in reports
            )
            total = len(reports)
            if counts["high"] > total / 2:
                level = "high"
            elif counts["medium"] > total / 2:
                level = "medium"
            else:
                level = "low"
            source = "reports"
        else:
            level = crowd_level_for_hour(at.hour)
            source = "time_of_day"

        return {
            "route_id": route.route_id,
            "level": level,
            "percentage": CROWD_PERCENTAGES[level],
            "source": source,
            "reports": len(reports),
        }

    # Efficiency

    def _factors_from_reports(self, route: Route, days: int) -> dict:
        reports = self._reports(route.route_id, days=days)
        factors = {}
        for factor, mapping in PENALTY_MAPPING.items():
            relevant = [r for r in reports if r.report_type in mapping["types"]]
            if not relevant:
                factors[factor] = float(mapping["default"])
            elif "penalty" in mapping:
                penalty = np.mean([mapping["penalty"][_severity_bucket(r.severity)] for r in relevant])
                factors[factor] = clamp(100 - float(penalty), 0, 100)
            else:
                value = np.mean([mapping["value"][_severity_bucket(r.severity)] for r in relevant])
                factors[factor] = clamp(float(value), 0, 100)
        return factors

    def calculate_efficiency(self, route: Route, days: int = DEFAULT_LOOKBACK_DAYS) -> dict:
        """
        Composite 0-100 efficiency score

        Rating dimensions come from the route's Score (x20) when one exists,
        otherwise from the report penalty mapping. Cost and frequency come from
        the catalog fare and operating hours.

        Args:
            route: Route to score
            days: Report lookback used when there is no Score (default: 30)

        Returns:
            Dictionary with efficiency score, per-factor values and recommendations
        """
        score = self._score(route.route_id)

        if score is not None and score.total_reports:
            factors = {
                dimension: clamp((getattr(score, dimension) or 0.0) * 20, 0, 100)
                for dimension in ("reliability", "safety", "punctuality", "comfort")
            }
            source = "scores"
        else:
            factors = self._factors_from_reports(route, days)
            source = "reports"

        fare = self._base_fare(route)
        factors["cost"] = clamp(100 - max(0.0, fare - 30) * 2, 0, 100)
        factors["frequency"] = clamp(
            operating_hours_span(route.operating_hours_start, route.operating_hours_end) * 2,
            0,
            100,
        )

        efficiency = sum(factors[name] * weight for name, weight in EFFICIENCY_WEIGHTS.items())

        return {
            "route_id": route.route_id,
            "route_name": route.name,
            "efficiency_score": int(round(efficiency)),
            "factors": {name: int(round(value)) for name, value in factors.items()},
            "recommendations": efficiency_recommendations(factors),
            "source": source,
        }

    # Travel time

    def predict_travel_time(
        self,
        route: Route,
        from_stop: Optional[str] = None,
        to_stop: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> dict:
        """
        Travel time between two stops (whole route when stops are omitted)

        Distance comes from the route geometry; the effective speed is the base
        speed slowed by the cached traffic factor and the hour of day, floored
        at the minimum speed.
        """
        at = at or self.clock()
        stop_count = len(route.stops)

        from_index = route.stop_index(from_stop) if from_stop else 0
        to_index = route.stop_index(to_stop) if to_stop else max(stop_count - 1, 0)

        if (from_stop and from_index == -1) or (to_stop and to_index == -1):
            from_index, to_index = 0, max(stop_count - 1, 0)

        if stop_count >= 2:
            from_fraction, to_fraction = stop_fractions(from_index, to_index, stop_count)
            segment_count = abs(to_index - from_index)
        else:
            from_fraction, to_fraction = 0.0, 1.0
            segment_count = None

        distance = segment_distance_km(route.path, from_fraction, to_fraction, segment_count)

        traffic_factor = get_cached_factor(self.db, route.route_id)
        time_factor = travel_time_multiplier(at.hour)
        effective_speed = self.config.base_speed_kmh / traffic_factor / time_factor
        minutes = travel_time_minutes(distance, effective_speed, self.config.min_speed_kmh)

        delay_reports = self._reports(
            route.route_id, days=DEFAULT_LOOKBACK_DAYS, report_types=("delay",)
        )

        return {
            "route_id": route.route_id,
            "from_stop": from_stop,
            "to_stop": to_stop,
            "distance_km": round(distance, 2),
            "predicted_minutes": minutes,
            "confidence": min(MAX_CONFIDENCE, 0.5 + len(delay_reports) * 0.02),
            "factors": {
                "traffic": traffic_factor,
                "time_of_day": time_factor,
                "effective_speed_kmh": round(max(effective_speed, self.config.min_speed_kmh), 2),
            },
            "alternative_times": {
                "optimistic": int(round(minutes * 0.8)),
                "realistic": minutes,
                "pessimistic": int(round(minutes * 1.3)),
            },
        }

    # Alternatives

    def find_alternative_routes(
        self,
        from_stop: str,
        to_stop: str,
        max_time: Optional[int] = None,
        max_cost: Optional[float] = None,
    ) -> list[dict]:
        """
        Active routes that serve from_stop before to_stop, best efficiency first

        Args:
            from_stop: Boarding stop name
            to_stop: Alighting stop name
            max_time: Drop routes slower than this many minutes
            max_cost: Drop routes costing more than this

        Returns:
            List of alternatives with time, cost, efficiency and reasons
        """
        try:
            routes = self.db.query(Route).filter(Route.is_active.is_(True)).all()
        except SQLAlchemyError:
            logger.warning("Route query failed while searching alternatives")
            self.db.rollback()
            return []

        alternatives = []
        for route in routes:
            from_index = route.stop_index(from_stop)
            to_index = route.stop_index(to_stop)
            if from_index == -1 or to_index == -1 or from_index >= to_index:
                continue

            travel = self.predict_travel_time(route, from_stop, to_stop)
            cost = self._base_fare(route)
            if max_time is not None and travel["predicted_minutes"] > max_time:
                continue
            if max_cost is not None and cost > max_cost:
                continue

            efficiency = self.calculate_efficiency(route)["efficiency_score"]
            alternatives.append(
                {
                    "route_id": route.route_id,
                    "route_name": route.name,
                    "total_time": travel["predicted_minutes"],
                    "total_cost": cost,
                    "efficiency": efficiency,
                    "reasons": alternative_reasons(
                        len(route.stops), travel["predicted_minutes"], cost, efficiency
                    ),
                    "stops": [s.name for s in route.stops[from_index : to_index + 1]],
                }
            )

        alternatives.sort(key=lambda a: a["efficiency"], reverse=True)
        return alternatives

    # Trends

    def analyze_trends(self, route: Route, period: str = "weekly") -> dict:
        """
        Compare report volume and safety incidents with the previous period

        Args:
            route: Route to analyze
            period: 'daily', 'weekly' or 'monthly'

        Returns:
            Dictionary with per-metric current/previous/change/trend and insights
        """
        if period not in TREND_PERIODS:
            raise ValueError("Period must be daily, weekly, or monthly")

        now = self.clock()
        span = timedelta(days=TREND_PERIODS[period])
        start = now - span
        previous_start = start - span

        reports = self._reports(route.route_id, start=previous_start, end=now)
        df = pd.DataFrame(
            [{"created_at": r.created_at, "report_type": r.report_type} for r in reports],
            columns=["created_at", "report_type"],
        )

        current_mask = df["created_at"] >= start
        current_reports = int(current_mask.sum())
        previous_reports = int((~current_mask).sum())

        is_safety = df["report_type"] == "safety"
        current_safety = int((current_mask & is_safety).sum())
        previous_safety = int((~current_mask & is_safety).sum())

        volume_change = _percent_change(current_reports, previous_reports)
        safety_change = _percent_change(current_safety, previous_safety)

        insights = []
        if volume_change > 10:
            insights.append("Report volume is increasing significantly")
        elif volume_change < -10:
            insights.append("Report volume is declining")
        if safety_change < -10:
            insights.append("Safety incidents have decreased")
        elif safety_change > 10:
            insights.append("Safety concerns are increasing")

        return {
            "route_id": route.route_id,
            "period": period,
            "trends": {
                "reports": {
                    "current": current_reports,
                    "previous": previous_reports,
                    "change": round(volume_change, 2),
                    "trend": "increasing"
                    if volume_change > 5
                    else "decreasing"
                    if volume_change < -5
                    else "stable",
                },
                "safety": {
                    "current": current_safety,
                    "previous": previous_safety,
                    "change": round(safety_change, 2),
                    "trend": "safer"
                    if safety_change < -10
                    else "riskier"
                    if safety_change > 10
                    else "stable",
                },
            },
            "insights": insights,
        }

    # Demand

    def forecast_demand(self, route: Route, time_slot: str) -> dict:
        """
        Forecast relative demand (0-100) for an HH:MM time slot

        Base demand is report activity over the last 30 days (2 points per
        report, capped at 100), weighted by how busy the slot's hour is
        compared to an average hour, then scaled by season.
        """
        try:
            slot_hour = int(time_slot.split(":")[0]) % 24
        except (AttributeError, ValueError):
            raise ValueError("time_slot must be in HH:MM format")

        reports = self._reports(route.route_id, days=DEFAULT_LOOKBACK_DAYS)
        base_demand = min(100.0, len(reports) * 2.0)

        hour_weight = 1.0
        if reports:
            hours = pd.Series([r.created_at.hour for r in reports])
            hourly = hours.value_counts().reindex(range(24), fill_value=0)
            hour_weight = float(hourly[slot_hour] / hourly.mean())

        seasonality = seasonality_factor(self.clock().month)
        demand = clamp(base_demand * hour_weight * seasonality, 0, 100)

        recommendations = []
        if demand > 80:
            recommendations.append("Consider increasing frequency during this time")
        elif demand < 30:
            recommendations.append("Low demand period, consider reducing frequency")

        return {
            "route_id": route.route_id,
            "time_slot": time_slot,
            "predicted_demand": int(round(demand)),
            "confidence": min(MAX_CONFIDENCE, 0.6 + len(reports) * 0.015),
            "factors": {
                "historical": base_demand,
                "hour_weight": round(hour_weight, 2),
                "seasonality": seasonality,
            },
            "recommendations": recommendations,
        }

    # Combined

    def route_insights(
        self, route: Route, days: int = DEFAULT_LOOKBACK_DAYS, at: Optional[datetime] = None
    ) -> dict:
        """All predictors for one route, as served to the dashboards"""
        at = at or self.clock()
        travel = self.predict_travel_time(route, at=at)
        return {
            "route_id": route.route_id,
            "route_name": route.name,
            "fare_prediction": self.predict_fare(route, days=days, at=at),
            "safety_score": self.predict_safety(route, days=days),
            "crowd_density": self.predict_crowd_density(route, at=at),
            "travel_time_minutes": travel["predicted_minutes"],
            "distance_km": travel["distance_km"],
            "traffic_factor": travel["factors"]["traffic"],
            "efficiency": self.calculate_efficiency(route, days=days),
        }


def efficiency_recommendations(factors: dict) -> list[str]:
    """Advice strings for weak efficiency factors"""
    recommendations = []
    if factors.get("reliability", 100) < 70:
        recommendations.append("Improve on-time performance through better scheduling")
    if factors.get("punctuality", 100) < 60:
        recommendations.append("Optimize route to reduce travel time")
    if factors.get("safety", 100) < 80:
        recommendations.append("Address safety concerns and improve driver training")
    if factors.get("comfort", 100) < 70:
        recommendations.append("Upgrade vehicles and improve passenger comfort")
    if factors.get("cost", 100) < 60:
        recommendations.append("Review fare structure for better value proposition")
    if factors.get("frequency", 100) < 50:
        recommendations.append("Increase service frequency during peak hours")
    return recommendations


def alternative_reasons(stop_count: int, travel_time: int, cost: float, efficiency: int) -> list[str]:
    reasons = []
    if efficiency > 80:
        reasons.append("Highly efficient route")
    if travel_time < 20:
        reasons.append("Fast travel time")
    if cost < 40:
        reasons.append("Affordable fare")
    if stop_count > 5:
        reasons.append("Multiple stops available")
    return reasons


def seasonality_factor(month: int) -> float:
    """Demand scaling by calendar month (1-12)"""
    if 3 <= month <= 5:
        return 1.1
    if 10 <= month <= 12:
        return 1.05
    return 1.0


def _percent_change(current: int, previous: int) -> float:
    if previous <= 0:
        return 0.0
    return (current - previous) / previous * 100
