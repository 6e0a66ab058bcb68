from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, List

from .ambulance import Ambulance
from .trip import Trip

NEW_TRIPS_TOPIC = "trips:new"


def trip_topic(trip_id: str) -> str:
    return f"trip:{trip_id}"


def provider_trips_topic(provider_id: str) -> str:
    return f"trips:provider:{provider_id}"


def ambulance_topic(ambulance_id: str) -> str:
    return f"ambulance:{ambulance_id}"


def provider_ambulances_topic(provider_id: str) -> str:
    return f"ambulances:provider:{provider_id}"


@dataclass(frozen=True)
class DomainEvent:
    """A committed change, carrying the full entity snapshot rather than a diff."""

    kind: ClassVar[str] = "DomainEvent"

    entity_key: str
    version: int
    snapshot: dict

    def topics(self) -> List[str]:
        raise NotImplementedError

    def to_message(self, topic: str) -> dict:
        return {
            "type": "event",
            "event": self.kind,
            "topic": topic,
            "version": self.version,
            "data": self.snapshot,
        }


@dataclass(frozen=True)
class _TripEvent(DomainEvent):
    @classmethod
    def of(cls, trip: Trip) -> "_TripEvent":
        return cls(entity_key=trip_topic(trip.trip_id), version=trip.version, snapshot=trip.to_dict())

    def topics(self) -> List[str]:
        topics = [self.entity_key]
        provider_id = self.snapshot.get("providerId")
        if provider_id:
            topics.append(provider_trips_topic(provider_id))
        else:
            topics.append(NEW_TRIPS_TOPIC)
        return topics


@dataclass(frozen=True)
class TripCreated(_TripEvent):
    kind: ClassVar[str] = "TripCreated"


@dataclass(frozen=True)
class TripUpdated(_TripEvent):
    kind: ClassVar[str] = "TripUpdated"


@dataclass(frozen=True)
class _AmbulanceEvent(DomainEvent):
    @classmethod
    def of(cls, ambulance: Ambulance) -> "_AmbulanceEvent":
        return cls(
            entity_key=ambulance_topic(ambulance.ambulance_id),
            version=ambulance.version,
            snapshot=ambulance.to_dict(),
        )

    def topics(self) -> List[str]:
        return [self.entity_key, provider_ambulances_topic(self.snapshot["providerId"])]


@dataclass(frozen=True)
class AmbulanceStatusChanged(_AmbulanceEvent):
    kind: ClassVar[str] = "AmbulanceStatusChanged"


@dataclass(frozen=True)
class AmbulanceLocationChanged(_AmbulanceEvent):
    kind: ClassVar[str] = "AmbulanceLocationChanged"
