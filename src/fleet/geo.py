from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from matching import haversine_distance

from .errors import ValidationError


@dataclass(frozen=True)
class GeoPoint:
    """A latitude/longitude pair in decimal degrees."""

    latitude: float
    longitude: float

    @classmethod
    def parse(cls, latitude: object, longitude: object) -> "GeoPoint":
        try:
            lat = float(latitude)
            lon = float(longitude)
        except (TypeError, ValueError):
            raise ValidationError(
                "Coordinates must be numeric",
                {"latitude": latitude, "longitude": longitude},
            ) from None
        if math.isnan(lat) or math.isnan(lon) or math.isinf(lat) or math.isinf(lon):
            raise ValidationError("Coordinates must be finite", {"latitude": lat, "longitude": lon})
        if not -90.0 <= lat <= 90.0:
            raise ValidationError("Latitude must be within [-90, 90]", {"latitude": lat})
        if not -180.0 <= lon <= 180.0:
            raise ValidationError("Longitude must be within [-180, 180]", {"longitude": lon})
        return cls(lat, lon)

    @classmethod
    def from_dict(cls, value: Optional[Mapping[str, object]]) -> Optional["GeoPoint"]:
        if value is None:
            return None
        if not isinstance(value, Mapping):
            raise ValidationError("Location must be an object with latitude and longitude")
        return cls.parse(value.get("latitude"), value.get("longitude"))

    def distance_to(self, other: "GeoPoint") -> float:
        return haversine_distance(self.latitude, self.longitude, other.latitude, other.longitude)

    def to_dict(self) -> Dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}


class GeoIndex:
    """Last-known ambulance positions with copy-on-write snapshots.

    Writers serialize on a lock and swap in a fresh mapping; readers grab the
    current mapping without locking and never see a half-applied update.
    """

    def __init__(self) -> None:
        self._write_lock = threading.Lock()
        self._positions: Mapping[str, GeoPoint] = MappingProxyType({})

    def update(self, ambulance_id: str, point: GeoPoint) -> None:
        with self._write_lock:
            positions = dict(self._positions)
            positions[ambulance_id] = point
            self._positions = MappingProxyType(positions)

    def remove(self, ambulance_id: str) -> None:
        with self._write_lock:
            if ambulance_id not in self._positions:
                return
            positions = dict(self._positions)
            del positions[ambulance_id]
            self._positions = MappingProxyType(positions)

    def snapshot(self) -> Mapping[str, GeoPoint]:
        return self._positions

    def get(self, ambulance_id: str) -> Optional[GeoPoint]:
        return self._positions.get(ambulance_id)

    def nearby(self, origin: GeoPoint, radius_km: Optional[float] = None) -> List[Tuple[str, float]]:
        """Return ``(ambulance_id, distance_km)`` pairs, closest first."""

        found: List[Tuple[str, float]] = []
        for ambulance_id, point in self.snapshot().items():
            distance = origin.distance_to(point)
            if radius_km is None or distance <= radius_km:
                found.append((ambulance_id, distance))
        found.sort(key=lambda item: (item[1], item[0]))
        return found

    def __len__(self) -> int:  # pragma: no cover - convenience
        return len(self._positions)
