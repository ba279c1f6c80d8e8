"""
Score Recalculation Pipeline

Rebuilds route scores from verified/resolved incident reports. This replaces
the crowd-rating running average for the affected routes, so it is an admin
operation rather than a scheduled job.

Usage:
    python pipelines/recalculate_scores.py [--route ROUTE_ID]

Options:
    --route ROUTE_ID Rebuild a single route only (default: all active routes)
"""

import argparse

from src.config import EngineConfig, setup_logging
from src.database import get_session
from src.scoring import ScoreAggregator


def recalculate_scores(route_filter: str = None, db=None) -> list:
    """
    Rebuild scores from moderated reports

    Args:
        route_filter: Only rebuild this route (default: all active routes)
        db: Database session (default: new session, closed afterwards)

    Returns:
        List of rewritten Score rows
    """
    owns_session = db is None
    db = db or get_session()

    try:
        aggregator = ScoreAggregator(db)
        if route_filter:
            scores = [aggregator.recalculate_from_reports(route_filter)]
        else:
            scores = aggregator.recalculate_all()

        print(f"Score calculation completed for {len(scores)} routes")
        best = sorted(scores, key=lambda s: s.overall, reverse=True)[:5]
        for score in best:
            print(f"    ✓ {score.route_id}: {score.overall:.2f} ({score.total_reports} reports)")
        return scores
    finally:
        if owns_session:
            db.close()


def main():
    parser = argparse.ArgumentParser(description="Rebuild route scores from moderated reports")
    parser.add_argument("--route", type=str, help="Specific route to rebuild (default: all)")
    args = parser.parse_args()

    setup_logging(EngineConfig.from_env().log_level)
    recalculate_scores(route_filter=args.route)


if __name__ == "__main__":
    main()
