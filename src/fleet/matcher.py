from __future__ import annotations

import logging
from typing import Collection, List, Optional

from matching import AmbulanceCandidate, AmbulanceMatch, Matcher, MatchRequest, get_matcher

from .ambulance import AmbulanceStatus
from .config import DispatchSettings
from .geo import GeoPoint
from .registry import AmbulanceRegistry

logger = logging.getLogger(__name__)


class DispatchMatcher:
    """Collects AVAILABLE ambulances and hands them to a ranking strategy.

    Read-only: nothing here takes a write lock or changes state, so it is safe
    to call as often as callers like.
    """

    def __init__(
        self,
        registry: AmbulanceRegistry,
        settings: Optional[DispatchSettings] = None,
        strategy: Optional[Matcher] = None,
    ) -> None:
        self.registry = registry
        self.settings = settings or DispatchSettings()
        self.strategy = strategy or get_matcher(self.settings.matcher)

    def candidates(self, provider_ids: Optional[Collection[str]] = None) -> List[AmbulanceCandidate]:
        positions = self.registry.geo_index.snapshot()
        found: List[AmbulanceCandidate] = []
        for ambulance in self.registry.list(status=AmbulanceStatus.AVAILABLE, include_retired=False):
            if provider_ids is not None and ambulance.provider_id not in provider_ids:
                continue
            point = positions.get(ambulance.ambulance_id)
            found.append(
                AmbulanceCandidate(
                    ambulance_id=ambulance.ambulance_id,
                    provider_id=ambulance.provider_id,
                    latitude=point.latitude if point else None,
                    longitude=point.longitude if point else None,
                )
            )
        return found

    def match(
        self,
        location: GeoPoint,
        provider_ids: Optional[Collection[str]] = None,
        max_distance_km: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[AmbulanceMatch]:
        request = MatchRequest(
            latitude=location.latitude,
            longitude=location.longitude,
            average_speed_kmh=self.settings.average_speed_kmh,
            max_distance_km=(
                max_distance_km if max_distance_km is not None else self.settings.max_match_distance_km
            ),
            limit=limit if limit is not None else self.settings.match_limit,
        )
        candidates = self.candidates(provider_ids)
        ranked = self.strategy.rank(candidates, request)
        logger.debug(
            "Matched %d of %d available ambulances near (%.5f, %.5f)",
            len(ranked),
            len(candidates),
            location.latitude,
            location.longitude,
        )
        return ranked
