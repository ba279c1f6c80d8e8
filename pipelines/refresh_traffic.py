"""
Traffic Cache Refresh Pipeline

Resolves the congestion factor for every active route and rewrites the
traffic_cache table read by the insights API. Run periodically (e.g. every
5 minutes via cron); it is safe to run while ratings are being submitted.

Usage:
    python pipelines/refresh_traffic.py [--route ROUTE_ID]

Options:
    --route ROUTE_ID Refresh a single route only (default: all active routes)
"""

import argparse
import time

from src.config import EngineConfig, setup_logging
from src.database import get_session
from src.models import Route
from src.traffic import TrafficResolver


def refresh_traffic(route_filter: str = None, config: EngineConfig = None, db=None) -> int:
    """
    Refresh the traffic cache

    Args:
        route_filter: Only refresh this route (default: all active routes)
        config: Engine configuration (default: from environment)
        db: Database session (default: new session, closed afterwards)

    Returns:
        Number of cache rows updated
    """
    config = config or EngineConfig.from_env()
    owns_session = db is None
    db = db or get_session()

    try:
        query = db.query(Route).filter(Route.is_active.is_(True))
        if route_filter:
            query = query.filter(Route.route_id == route_filter)
        routes = query.all()

        source = config.traffic_provider if config.has_traffic_provider else "reports"
        print(f"Refreshing traffic for {len(routes)} routes (source: {source})...")

        start = time.time()
        updated = TrafficResolver(db, config=config).refresh_all(routes)
        print(f"  ✓ Updated {updated} routes in {time.time() - start:.1f}s")
        return updated
    finally:
        if owns_session:
            db.close()


def main():
    parser = argparse.ArgumentParser(description="Refresh per-route traffic factors")
    parser.add_argument("--route", type=str, help="Specific route to refresh (default: all)")
    args = parser.parse_args()

    config = EngineConfig.from_env()
    setup_logging(config.log_level)
    refresh_traffic(route_filter=args.route, config=config)


if __name__ == "__main__":
    main()
