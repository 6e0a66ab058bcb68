from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol, Tuple


@dataclass(frozen=True)
class AmbulanceCandidate:
    """Lightweight view of an available ambulance for ranking decisions."""

    ambulance_id: str
    provider_id: str
    latitude: Optional[float]
    longitude: Optional[float]

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass(frozen=True)
class MatchRequest:
    """Where help is needed and how far the search may reach."""

    latitude: float
    longitude: float
    average_speed_kmh: float = 30.0
    max_distance_km: Optional[float] = None
    limit: Optional[int] = None

    @property
    def point(self) -> Tuple[float, float]:
        return (self.latitude, self.longitude)


@dataclass(frozen=True)
class AmbulanceMatch:
    """One ranked candidate."""

    ambulance_id: str
    provider_id: str
    eta_minutes: int
    distance_km: float

    @property
    def sort_key(self) -> Tuple[int, float, str]:
        return (self.eta_minutes, self.distance_km, self.ambulance_id)

    def to_dict(self) -> dict:
        return {
            "ambulanceId": self.ambulance_id,
            "providerId": self.provider_id,
            "eta": self.eta_minutes,
            "distance": round(self.distance_km, 3),
        }


class Matcher(Protocol):
    """Strategy interface for ranking ambulances against a request."""

    def rank(
        self,
        candidates: Iterable[AmbulanceCandidate],
        request: MatchRequest,
    ) -> List[AmbulanceMatch]:
        """
        Return candidates ordered best-first.

        Implementations never mutate state and may drop candidates that
        cannot be ranked (for instance, ones without a known location).
        """
        ...
