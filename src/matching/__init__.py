from __future__ import annotations

from typing import Dict, Type

from .interface import AmbulanceCandidate, AmbulanceMatch, Matcher, MatchRequest
from .nearest import NearestAmbulanceMatcher
from .utils import estimate_eta_minutes, haversine_distance, sort_matches

__all__ = [
    "AmbulanceCandidate",
    "AmbulanceMatch",
    "MatchRequest",
    "Matcher",
    "NearestAmbulanceMatcher",
    "estimate_eta_minutes",
    "get_matcher",
    "haversine_distance",
    "sort_matches",
]


MATCHER_REGISTRY: Dict[str, Type[Matcher]] = {
    "nearest": NearestAmbulanceMatcher,
}


def get_matcher(name: str, **kwargs) -> Matcher:
    cls = MATCHER_REGISTRY.get(name.lower())
    if cls is None:
        raise ValueError(f"Unknown matcher '{name}'. Available: {', '.join(MATCHER_REGISTRY)}")
    return cls(**kwargs)
