"""
Score aggregation for crowd-sourced route ratings

A route's Score is a streaming weighted mean of every accepted rating. Ratings
may be partial: a missing dimension falls back to the rating's overall value,
and a rating with neither leaves that dimension untouched.

Note that all dimensions are weighted by the same total_reports count even
when some ratings did not contribute to a given dimension. With inconsistent
partial submissions the per-dimension values drift from a true per-dimension
average.
"""

import logging
import math
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Callable, Mapping, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.errors import ValidationError
from src.locking import score_locks
from src.models import SCORE_DIMENSIONS, Report, Route, Score

logger = logging.getLogger(__name__)

MIN_SCORE = 0.0
MAX_SCORE = 5.0
NEUTRAL_SCORE = 3.0

# Report-based rebuild weights
SEVERITY_WEIGHTS = {"low": 1, "medium": 2, "high": 3, "critical": 4}
REPORT_TYPE_WEIGHTS = {
    "delay": {"reliability": 0.4, "punctuality": 0.6},
    "safety": {"safety": 1.0},
    "crowding": {"comfort": 0.8, "reliability": 0.2},
    "breakdown": {"reliability": 0.6, "safety": 0.4},
    "accident": {"safety": 0.7, "reliability": 0.3},
    "other": {"reliability": 0.3, "safety": 0.3, "comfort": 0.4},
}
EQUAL_WEIGHTS = {dimension: 0.25 for dimension in SCORE_DIMENSIONS}


def clamp(value: float, low: float = MIN_SCORE, high: float = MAX_SCORE) -> float:
    return max(low, min(high, value))


@dataclass(frozen=True)
class PartialRating:
    """A rating submission; any subset of the five fields may be given"""

    reliability: Optional[float] = None
    safety: Optional[float] = None
    punctuality: Optional[float] = None
    comfort: Optional[float] = None
    overall: Optional[float] = None

    def __post_init__(self):
        values = {f.name: getattr(self, f.name) for f in fields(self)}

        if all(v is None for v in values.values()):
            raise ValidationError("At least one rating field is required")

        for name, value in values.items():
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(f"{name} must be a number")
            if math.isnan(value) or not MIN_SCORE <= value <= MAX_SCORE:
                raise ValidationError(f"{name} must be between 0 and 5")

    @classmethod
    def from_mapping(cls, data: Mapping) -> "PartialRating":
        """Build from a request body, ignoring unrelated keys"""
        return cls(**{f.name: data.get(f.name) for f in fields(cls)})

    def incoming(self, dimension: str) -> Optional[float]:
        """Value this rating contributes to a sub-dimension (falls back to overall)"""
        value = getattr(self, dimension)
        return value if value is not None else self.overall

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


class ScoreAggregator:
    """
    Sole writer of Score rows.

    Callers must have passed the rating through RateLimiter.check_and_record
    (and been allowed) before calling apply_rating; rate limits are not
    re-checked here.
    """

    def __init__(self, db: Session, clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.clock = clock

    def apply_rating(self, route_id: str, rating: PartialRating) -> Score:
        """
        Merge one rating into the route's running Score

        Args:
            route_id: Route being rated
            rating: Validated partial rating

        Returns:
            The updated Score row

        Raises:
            SQLAlchemyError: if the score cannot be written
        """
        with score_locks.hold(route_id):
            score = self.db.query(Score).filter(Score.route_id == route_id).first()

            if score is None or not score.total_reports:
                if score is None:
                    score = Score(route_id=route_id, version=0)
                    self.db.add(score)
                self._apply_first(score, rating)
            else:
                self._apply_incremental(score, rating)

            score.last_calculated = self.clock()
            score.version = (score.version or 0) + 1
            self._commit()

            logger.debug(
                "Score for route %s now %.3f over %d ratings",
                route_id,
                score.overall,
                score.total_reports,
            )
            return score

    def _apply_first(self, score: Score, rating: PartialRating):
        for dimension in SCORE_DIMENSIONS:
            incoming = rating.incoming(dimension)
            setattr(score, dimension, clamp(incoming if incoming is not None else NEUTRAL_SCORE))

        if rating.overall is not None:
            overall = rating.overall
        else:
            overall = sum(getattr(score, d) for d in SCORE_DIMENSIONS) / len(SCORE_DIMENSIONS)

        score.overall = clamp(overall)
        score.total_reports = 1

    def _apply_incremental(self, score: Score, rating: PartialRating):
        n = score.total_reports

        for dimension in SCORE_DIMENSIONS:
            incoming = rating.incoming(dimension)
            if incoming is None:
                continue
            old = getattr(score, dimension) or 0.0
            setattr(score, dimension, clamp((old * n + incoming) / (n + 1)))

        if rating.overall is not None:
            overall = ((score.overall or 0.0) * n + rating.overall) / (n + 1)
        else:
            overall = sum(getattr(score, d) for d in SCORE_DIMENSIONS) / len(SCORE_DIMENSIONS)

        score.overall = clamp(overall)
        score.total_reports = n + 1

    def recalculate_from_reports(self, route_id: str) -> Score:
        """
        Rebuild a route's Score from its verified/resolved incident reports

        Every report pulls the dimensions its type affects down from a perfect 5,
        scaled by severity. Routes without moderated reports get an all-zero score.

        Args:
            route_id: Route to rebuild

        Returns:
            The rewritten Score row
        """
        with score_locks.hold(route_id):
            reports = (
                self.db.query(Report)
                .filter(
                    Report.route_id == route_id,
                    Report.status.in_(["verified", "resolved"]),
                )
                .all()
            )

            score = self.db.query(Score).filter(Score.route_id == route_id).first()
            if score is None:
                score = Score(route_id=route_id, version=0)
                self.db.add(score)

            if not reports:
                for dimension in SCORE_DIMENSIONS:
                    setattr(score, dimension, 0.0)
                score.overall = 0.0
                score.total_reports = 0
            else:
                impacts = {dimension: 0.0 for dimension in SCORE_DIMENSIONS}
                for report in reports:
                    severity_weight = SEVERITY_WEIGHTS.get(report.severity, 1)
                    type_weights = REPORT_TYPE_WEIGHTS.get(report.report_type, EQUAL_WEIGHTS)
                    impact = -severity_weight * 0.5
                    for dimension, weight in type_weights.items():
                        impacts[dimension] += impact * weight

                for dimension in SCORE_DIMENSIONS:
                    setattr(score, dimension, clamp(MAX_SCORE + impacts[dimension]))
                score.overall = clamp(
                    sum(getattr(score, d) for d in SCORE_DIMENSIONS) / len(SCORE_DIMENSIONS)
                )
                score.total_reports = len(reports)

            score.last_calculated = self.clock()
            score.version = (score.version or 0) + 1
            self._commit()
            return score

    def recalculate_all(self) -> list[Score]:
        """Rebuild scores for every active route"""
        routes = self.db.query(Route).filter(Route.is_active.is_(True)).all()
        return [self.recalculate_from_reports(route.route_id) for route in routes]

    def _commit(self):
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise


def get_ranked_scores(db: Session, limit: int = 10, best_first: bool = True) -> list[Score]:
    """Scores ordered by overall (best or worst first)"""
    order = Score.overall.desc() if best_first else Score.overall.asc()
    return db.query(Score).order_by(order).limit(limit).all()


def get_scoring_stats(db: Session) -> dict:
    """Catalog-wide scoring summary"""
    average = db.query(func.avg(Score.overall)).scalar()
    return {
        "total_routes": db.query(Route).filter(Route.is_active.is_(True)).count(),
        "scored_routes": db.query(Score).count(),
        "total_reports": db.query(Report)
        .filter(Report.status.in_(["verified", "resolved"]))
        .count(),
        "average_score": float(average) if average is not None else 0.0,
    }
