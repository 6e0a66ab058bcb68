from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from .geo import GeoPoint


class TripStatus(str, Enum):
    REQUESTED = "REQUESTED"
    ACCEPTED = "ACCEPTED"
    ARRIVED = "ARRIVED"
    PICKED_UP = "PICKED_UP"
    AT_HOSPITAL = "AT_HOSPITAL"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class CompletionReason(str, Enum):
    DELIVERED = "delivered"
    FORCED = "forced"


HAPPY_PATH: List[TripStatus] = [
    TripStatus.REQUESTED,
    TripStatus.ACCEPTED,
    TripStatus.ARRIVED,
    TripStatus.PICKED_UP,
    TripStatus.AT_HOSPITAL,
    TripStatus.COMPLETED,
]

TERMINAL_STATUSES = frozenset({TripStatus.COMPLETED, TripStatus.CANCELLED})

TIMESTAMP_FIELDS: Dict[TripStatus, str] = {
    TripStatus.ACCEPTED: "accept_time",
    TripStatus.ARRIVED: "arrival_time",
    TripStatus.PICKED_UP: "pickup_time",
    TripStatus.AT_HOSPITAL: "hospital_arrival_time",
    TripStatus.COMPLETED: "completion_time",
    TripStatus.CANCELLED: "cancellation_time",
}


def can_transition(current: TripStatus, target: TripStatus) -> bool:
    """Forward one step along the happy path, or cancel from any open state."""

    if current.is_terminal:
        return False
    if target is TripStatus.CANCELLED:
        return True
    return HAPPY_PATH.index(target) == HAPPY_PATH.index(current) + 1


@dataclass
class Trip:
    """One emergency request and its progress."""

    trip_id: str
    requester_id: str
    request_location: GeoPoint
    request_time: datetime
    patient_details: Dict[str, object] = field(default_factory=dict)
    emergency_details: str = ""
    destination_location: Optional[GeoPoint] = None
    provider_id: Optional[str] = None
    ambulance_id: Optional[str] = None
    requested_ambulance_id: Optional[str] = None
    status: TripStatus = TripStatus.REQUESTED
    accept_time: Optional[datetime] = None
    arrival_time: Optional[datetime] = None
    pickup_time: Optional[datetime] = None
    hospital_arrival_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    cancellation_time: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    completion_reason: Optional[CompletionReason] = None
    last_actor_id: Optional[str] = None
    version: int = 0

    @property
    def is_open(self) -> bool:
        return not self.status.is_terminal

    def copy(self) -> "Trip":
        return copy.deepcopy(self)

    def apply(self, status: TripStatus, now: datetime, actor_id: Optional[str]) -> None:
        self.status = status
        setattr(self, TIMESTAMP_FIELDS[status], now)
        self.last_actor_id = actor_id
        self.version += 1

    def to_dict(self) -> dict:
        return {
            "id": self.trip_id,
            "requesterId": self.requester_id,
            "providerId": self.provider_id,
            "ambulanceId": self.ambulance_id,
            "requestedAmbulanceId": self.requested_ambulance_id,
            "status": self.status.value,
            "requestLocation": self.request_location.to_dict(),
            "destinationLocation": (
                self.destination_location.to_dict() if self.destination_location else None
            ),
            "patientDetails": copy.deepcopy(self.patient_details),
            "emergencyDetails": self.emergency_details,
            "requestTime": _iso(self.request_time),
            "acceptTime": _iso(self.accept_time),
            "arrivalTime": _iso(self.arrival_time),
            "pickupTime": _iso(self.pickup_time),
            "hospitalArrivalTime": _iso(self.hospital_arrival_time),
            "completionTime": _iso(self.completion_time),
            "cancellationTime": _iso(self.cancellation_time),
            "cancelledBy": self.cancelled_by,
            "cancellationReason": self.cancellation_reason,
            "completionReason": self.completion_reason.value if self.completion_reason else None,
            "version": self.version,
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
