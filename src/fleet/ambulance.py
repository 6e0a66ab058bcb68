from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from .geo import GeoPoint


class AmbulanceStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    BUSY = "BUSY"
    OFFLINE = "OFFLINE"


@dataclass
class Ambulance:
    """A fleet vehicle owned by one provider."""

    ambulance_id: str
    provider_id: str
    name: str
    registration: str
    kind: str = "basic"
    capacity: int = 1
    equipment: List[str] = field(default_factory=list)
    driver: Dict[str, str] = field(default_factory=dict)
    status: AmbulanceStatus = AmbulanceStatus.OFFLINE
    location: Optional[GeoPoint] = None
    active_trip_id: Optional[str] = None
    retired: bool = False
    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None
    version: int = 0

    def copy(self) -> "Ambulance":
        return copy.deepcopy(self)

    def touch(self, now: datetime) -> None:
        self.last_updated = now
        self.version += 1

    def to_dict(self) -> dict:
        return {
            "id": self.ambulance_id,
            "providerId": self.provider_id,
            "name": self.name,
            "registration": self.registration,
            "type": self.kind,
            "capacity": self.capacity,
            "equipment": list(self.equipment),
            "driver": dict(self.driver),
            "status": self.status.value,
            "location": self.location.to_dict() if self.location else None,
            "activeTripId": self.active_trip_id,
            "retired": self.retired,
            "createdAt": _iso(self.created_at),
            "lastUpdated": _iso(self.last_updated),
            "version": self.version,
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
