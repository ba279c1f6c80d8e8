"""
Geospatial helpers for route distance and travel time estimates

Route paths are stored flat as [lng, lat, lng, lat, ...]. Pairs that do not
parse to finite numbers are skipped rather than treated as fatal.
"""

import math
from typing import Iterable, Optional

import numpy as np

EARTH_RADIUS_KM = 6371.0

# Empirical stop-to-stop hop length used when a route has no usable geometry
FALLBACK_HOP_KM = 0.8

MIN_SPEED_KMH = 8.0


def haversine_distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth
    Returns distance in kilometers
    """
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])

    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.asin(math.sqrt(a))

    return c * EARTH_RADIUS_KM


def _to_float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def parse_path(path: Optional[Iterable]) -> list[tuple[float, float]]:
    """
    Turn a stored path into a list of valid (lng, lat) points

    Accepts the flat [lng, lat, ...] form as well as a list of [lng, lat] pairs.
    Pairs with a NaN/unparseable coordinate are dropped; a trailing odd value
    is ignored.

    Args:
        path: Flat coordinate list or list of coordinate pairs

    Returns:
        List of (lng, lat) tuples with finite coordinates
    """
    if not path:
        return []

    values = list(path)
    if values and isinstance(values[0], (list, tuple)):
        flat = []
        for pair in values:
            if isinstance(pair, (list, tuple)) and len(pair) >= 2:
                flat.extend(pair[:2])
            else:
                flat.extend([math.nan, math.nan])
        values = flat

    points = []
    for i in range(0, len(values) - 1, 2):
        lng = _to_float(values[i])
        lat = _to_float(values[i + 1])
        if math.isnan(lng) or math.isnan(lat) or math.isinf(lng) or math.isinf(lat):
            continue
        points.append((lng, lat))
    return points


def _polyline_length_km(points: list[tuple[float, float]]) -> float:
    """Sum of haversine legs along consecutive points (vectorized)"""
    coords = np.radians(np.array(points, dtype=float))
    lon1, lat1 = coords[:-1, 0], coords[:-1, 1]
    lon2, lat2 = coords[1:, 0], coords[1:, 1]

    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2) ** 2
    c = 2 * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))

    return float(np.sum(c) * EARTH_RADIUS_KM)


def fallback_distance_km(segment_count: Optional[int] = None) -> float:
    """Distance estimate for routes without usable geometry"""
    return max(1, segment_count or 1) * FALLBACK_HOP_KM


def route_distance_km(path, segment_count: Optional[int] = None) -> float:
    """
    Full length of a route path in km

    Args:
        path: Flat [lng, lat, ...] coordinates
        segment_count: Number of stop-to-stop hops, used only for the fallback

    Returns:
        Distance in km (fallback estimate if fewer than 2 valid points)
    """
    points = parse_path(path)
    if len(points) < 2:
        return fallback_distance_km(segment_count)
    return _polyline_length_km(points)


def segment_distance_km(
    path,
    from_fraction: float = 0.0,
    to_fraction: float = 1.0,
    segment_count: Optional[int] = None,
) -> float:
    """
    Distance along a route path between two positions given as fractions of its length

    Args:
        path: Flat [lng, lat, ...] coordinates
        from_fraction: Start position (0 = first point, 1 = last point)
        to_fraction: End position
        segment_count: Stop hops between the two positions, used only for the fallback

    Returns:
        Distance in km
    """
    points = parse_path(path)
    if len(points) < 2:
        return fallback_distance_km(segment_count)

    start = min(max(from_fraction, 0.0), 1.0)
    end = min(max(to_fraction, 0.0), 1.0)
    return _polyline_length_km(points) * abs(end - start)


def stop_fractions(from_index: int, to_index: int, stop_count: int) -> tuple[float, float]:
    """Convert stop indices to fractions of route length (stops assumed evenly spread)"""
    if stop_count < 2:
        return 0.0, 1.0
    last = stop_count - 1
    return from_index / last, to_index / last


def travel_time_minutes(
    distance_km: float, effective_speed_kmh: float, min_speed_kmh: float = MIN_SPEED_KMH
) -> int:
    """
    Travel time for a distance at an effective speed

    The speed is floored at min_speed_kmh so heavy congestion never produces
    absurd estimates.
    """
    speed = max(effective_speed_kmh, min_speed_kmh)
    return int(round(distance_km / speed * 60))


def bounding_box(
    points: list[tuple[float, float]], pad: float = 0.005
) -> Optional[tuple[float, float, float, float]]:
    """
    Padded bounding box (west, south, east, north) around (lng, lat) points

    Returns:
        Tuple of box edges, or None when there are no points
    """
    if not points:
        return None
    lngs = [p[0] for p in points]
    lats = [p[1] for p in points]
    return (min(lngs) - pad, min(lats) - pad, max(lngs) + pad, max(lats) + pad)
