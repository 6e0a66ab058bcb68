from __future__ import annotations

import math
from typing import Iterable, List

from .interface import AmbulanceMatch

EARTH_RADIUS_KM = 6371.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two coordinates, in kilometres."""

    lat1, lon1, lat2, lon2 = map(math.radians, (lat1, lon1, lat2, lon2))
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(min(1.0, a)))


def estimate_eta_minutes(distance_km: float, average_speed_kmh: float) -> int:
    """Straight-line travel time at a constant speed, rounded up to whole minutes."""

    if average_speed_kmh <= 0:
        raise ValueError("average_speed_kmh must be positive")
    if distance_km <= 0:
        return 0
    return int(math.ceil(distance_km / average_speed_kmh * 60))


def sort_matches(matches: Iterable[AmbulanceMatch]) -> List[AmbulanceMatch]:
    """Order by ETA, then distance, then id so equal candidates rank deterministically."""

    return sorted(matches, key=lambda match: match.sort_key)
