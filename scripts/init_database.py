"""
One-time database initialization script
Creates all tables and seeds a starter set of Nairobi matatu routes

Usage:
  python scripts/init_database.py              # Create tables and seed routes
  python scripts/init_database.py --no-seed    # Create tables only
"""

import argparse

from src.database import get_engine, get_session, init_db
from src.models import Route, RouteStop

SEED_ROUTES = [
    {
        "route_id": "42",
        "name": "Route 42 - Thika Road",
        "operator": "KBS",
        "fare": 50,
        "operating_hours": ("05:00", "22:00"),
        "stops": [
            ("Kencom", 36.8219, -1.2921),
            ("Ngara", 36.8233, -1.2750),
            ("Allsops", 36.8500, -1.2450),
            ("Roysambu", 36.8830, -1.2190),
        ],
    },
    {
        "route_id": "34",
        "name": "Route 34 - Ngong Road",
        "operator": "Citi Hoppa",
        "fare": 45,
        "operating_hours": ("05:30", "21:30"),
        "stops": [
            ("Kencom", 36.8219, -1.2921),
            ("Prestige", 36.7860, -1.2995),
            ("Junction", 36.7640, -1.2985),
            ("Ngong Road Terminus", 36.7500, -1.3100),
        ],
    },
    {
        "route_id": "111",
        "name": "Route 111 - Ngong Town",
        "operator": "Super Metro",
        "fare": 100,
        "operating_hours": ("05:00", "23:00"),
        "stops": [
            ("Railways", 36.8280, -1.2900),
            ("Karen", 36.7100, -1.3200),
            ("Ngong Town", 36.6600, -1.3600),
        ],
    },
]


def seed_routes(db) -> dict:
    """Insert or update the seed routes; path follows the stops in order"""
    created = updated = 0

    for seed in SEED_ROUTES:
        route = db.query(Route).filter(Route.route_id == seed["route_id"]).first()
        if route is None:
            route = Route(route_id=seed["route_id"])
            db.add(route)
            created += 1
        else:
            route.stops.clear()
            updated += 1

        route.name = seed["name"]
        route.operator = seed["operator"]
        route.description = "Seeded route"
        route.fare = seed["fare"]
        route.operating_hours_start, route.operating_hours_end = seed["operating_hours"]
        route.is_active = True

        path = []
        for sequence, (name, lng, lat) in enumerate(seed["stops"]):
            route.stops.append(RouteStop(sequence=sequence, name=name, longitude=lng, latitude=lat))
            path.extend([lng, lat])
        route.path = path

    db.commit()
    return {"created": created, "updated": updated}


def main():
    parser = argparse.ArgumentParser(description="Initialize the route scoring database")
    parser.add_argument("--no-seed", action="store_true", help="Create tables without seed routes")
    args = parser.parse_args()

    print("\n[1/2] Creating tables...")
    init_db(get_engine())

    if args.no_seed:
        return

    print("\n[2/2] Seeding routes...")
    db = get_session()
    try:
        result = seed_routes(db)
        print(f"  ✓ {result['created']} created, {result['updated']} updated")
    finally:
        db.close()


if __name__ == "__main__":
    main()
