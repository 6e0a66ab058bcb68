from __future__ import annotations

import logging
import math
from typing import Iterable, List

from .interface import AmbulanceCandidate, AmbulanceMatch, MatchRequest
from .utils import estimate_eta_minutes, haversine_distance, sort_matches

logger = logging.getLogger(__name__)


class NearestAmbulanceMatcher:
    """Ranks ambulances by straight-line ETA to the request location."""

    def rank(
        self,
        candidates: Iterable[AmbulanceCandidate],
        request: MatchRequest,
    ) -> List[AmbulanceMatch]:
        matches: List[AmbulanceMatch] = []
        for candidate in candidates:
            if not self._is_locatable(candidate):
                logger.debug("Skipping ambulance %s without a usable location", candidate.ambulance_id)
                continue
            distance = haversine_distance(
                request.latitude, request.longitude, candidate.latitude, candidate.longitude
            )
            if request.max_distance_km is not None and distance > request.max_distance_km:
                continue
            matches.append(
                AmbulanceMatch(
                    ambulance_id=candidate.ambulance_id,
                    provider_id=candidate.provider_id,
                    eta_minutes=estimate_eta_minutes(distance, request.average_speed_kmh),
                    distance_km=distance,
                )
            )
        ranked = sort_matches(matches)
        if request.limit is not None:
            ranked = ranked[: request.limit]
        return ranked

    def _is_locatable(self, candidate: AmbulanceCandidate) -> bool:
        if not candidate.has_location:
            return False
        try:
            lat = float(candidate.latitude)
            lon = float(candidate.longitude)
        except (TypeError, ValueError):
            return False
        if math.isnan(lat) or math.isnan(lon):
            return False
        return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0
