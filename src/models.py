from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

REPORT_TYPES = ("delay", "safety", "crowding", "breakdown", "accident", "other")
SEVERITIES = ("low", "medium", "high", "critical")
REPORT_STATUSES = ("pending", "verified", "resolved", "dismissed")
SCORE_DIMENSIONS = ("reliability", "safety", "punctuality", "comfort")


class Route(Base):
    """Matatu route from the catalog (read-only to the engine)"""

    __tablename__ = "routes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    route_id = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(String)
    operator = Column(String)

    # Flat polyline: [lng, lat, lng, lat, ...]
    path = Column(JSON, default=list)

    fare = Column(Float, nullable=False, default=0.0)
    operating_hours_start = Column(String, default="05:00")  # HH:MM
    operating_hours_end = Column(String, default="22:00")  # HH:MM
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    stops = relationship(
        "RouteStop",
        back_populates="route",
        order_by="RouteStop.sequence",
        cascade="all, delete-orphan",
    )

    def stop_index(self, stop_name: str) -> int:
        """Position of a stop by name, -1 when the route does not serve it"""
        for index, stop in enumerate(self.stops):
            if stop.name == stop_name:
                return index
        return -1


class RouteStop(Base):
    """Ordered stop along a route"""

    __tablename__ = "route_stops"

    id = Column(Integer, primary_key=True, autoincrement=True)
    route_id = Column(String, ForeignKey("routes.route_id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    name = Column(String, nullable=False)
    longitude = Column(Float, nullable=False)
    latitude = Column(Float, nullable=False)

    route = relationship("Route", back_populates="stops")

    __table_args__ = (Index("idx_route_stop_sequence", "route_id", "sequence"),)


class Report(Base):
    """
    Rider-submitted incident report.

    Reports are immutable input to every aggregation in the engine; only the
    moderation status changes after creation.
    """

    __tablename__ = "reports"

    id = Column(Integer, primary_key=True, autoincrement=True)
    route_id = Column(String, ForeignKey("routes.route_id"), nullable=False, index=True)
    user_id = Column(String, index=True)
    report_type = Column(String, nullable=False)  # one of REPORT_TYPES
    severity = Column(String, nullable=False, default="medium")  # one of SEVERITIES
    status = Column(String, nullable=False, default="pending")  # one of REPORT_STATUSES
    description = Column(String)

    # Observed fare paid by the rider, if given
    fare = Column(Float)

    longitude = Column(Float)
    latitude = Column(Float)
    device_fingerprint = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        Index("idx_report_route_created", "route_id", "created_at"),
        Index("idx_report_type_severity", "report_type", "severity"),
    )


class Score(Base):
    """
    Running crowd-sourced quality score for a route (one row per route).

    Every field is on a 0-5 scale. Written only by the score aggregator.
    """

    __tablename__ = "scores"

    route_id = Column(String, primary_key=True)
    reliability = Column(Float, nullable=False, default=0.0)
    safety = Column(Float, nullable=False, default=0.0)
    punctuality = Column(Float, nullable=False, default=0.0)
    comfort = Column(Float, nullable=False, default=0.0)
    overall = Column(Float, nullable=False, default=0.0, index=True)
    total_reports = Column(Integer, nullable=False, default=0)
    last_calculated = Column(DateTime, default=datetime.utcnow)

    # Incremented on every write
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "route_id": self.route_id,
            "reliability": self.reliability,
            "safety": self.safety,
            "punctuality": self.punctuality,
            "comfort": self.comfort,
            "overall": self.overall,
            "total_reports": self.total_reports,
            "last_calculated": self.last_calculated.isoformat()
            if self.last_calculated
            else None,
        }


class RateLimitRecord(Base):
    """Per (route, device) rating counter for the current window. Never deleted."""

    __tablename__ = "rate_limits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    route_id = Column(String, nullable=False)
    device_fingerprint = Column(String, nullable=False)
    user_id = Column(String)
    count = Column(Integer, nullable=False, default=1)
    last_rated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_rate_limit_key", "route_id", "device_fingerprint", unique=True),
    )


class TrafficCache(Base):
    """Latest congestion reading per route, rewritten by the traffic refresh job"""

    __tablename__ = "traffic_cache"

    route_id = Column(String, primary_key=True)
    traffic_factor = Column(Float, nullable=False, default=1.0)  # 0.8 - 1.5
    congestion_index = Column(Integer, nullable=False, default=0)  # 0 - 100
    provider = Column(String, nullable=False, default="none")
    updated_at = Column(DateTime, default=datetime.utcnow)


class AnalyticsEvent(Base):
    """Append-only event log (accepted ratings, rejected ratings, ...)"""

    __tablename__ = "analytics_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String, nullable=False, index=True)
    route_id = Column(String, index=True)
    user_id = Column(String)
    device_fingerprint = Column(String)
    payload = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
