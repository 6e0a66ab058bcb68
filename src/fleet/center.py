"""Command and query surface of the dispatch engine.

Wires the GeoIndex, registry, ledger, matcher and bus together and applies
role scoping before delegating. Transports call into this and nothing else.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Collection, Dict, List, Optional, Sequence, Tuple

from matching import AmbulanceMatch

from .ambulance import Ambulance, AmbulanceStatus
from .auth import Actor, Role
from .bus import ALL_TOPICS, EventFilter, NotificationBus
from .clock import Clock
from .config import DispatchSettings
from .errors import UnauthorizedError, ValidationError
from .events import NEW_TRIPS_TOPIC, DomainEvent
from .geo import GeoIndex, GeoPoint
from .ledger import TripLedger, coerce_trip_status
from .matcher import DispatchMatcher
from .registry import AmbulanceRegistry
from .trip import Trip, TripStatus

logger = logging.getLogger(__name__)


def parse_topic(topic: str) -> Tuple[str, Optional[str]]:
    """Split a topic into its kind and entity id."""

    if topic in (ALL_TOPICS, NEW_TRIPS_TOPIC):
        return topic, None
    for prefix in ("trips:provider:", "ambulances:provider:", "trip:", "ambulance:"):
        if topic.startswith(prefix) and len(topic) > len(prefix):
            return prefix.rstrip(":"), topic[len(prefix):]
    raise ValidationError(f"Unknown topic '{topic}'", {"topic": topic})


class DispatchCenter:
    def __init__(
        self,
        settings: Optional[DispatchSettings] = None,
        bus: Optional[NotificationBus] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings or DispatchSettings()
        self.bus = bus if bus is not None else NotificationBus()
        self.geo_index = GeoIndex()
        self.registry = AmbulanceRegistry(self.geo_index, self.bus, clock)
        self.ledger = TripLedger(
            self.registry,
            self.bus,
            duplicate_window=timedelta(seconds=self.settings.duplicate_request_window_seconds),
        )
        self.matcher = DispatchMatcher(self.registry, self.settings)

    # ------------------------------------------------------------------
    # Fleet
    # ------------------------------------------------------------------
    def register_ambulance(
        self,
        actor: Actor,
        name: str,
        registration: str,
        kind: str = "basic",
        capacity: int = 1,
        equipment: Optional[Sequence[str]] = None,
        driver: Optional[Dict[str, str]] = None,
        location: Optional[GeoPoint] = None,
        provider_id: Optional[str] = None,
    ) -> Ambulance:
        if actor.role is Role.PROVIDER:
            provider_id = provider_id or actor.actor_id
        self._require_provider(actor, provider_id)
        return self.registry.register(
            provider_id=provider_id,
            name=name,
            registration=registration,
            kind=kind,
            capacity=capacity,
            equipment=equipment,
            driver=driver,
            location=location,
        )

    def get_ambulance(self, actor: Actor, ambulance_id: str) -> Ambulance:
        ambulance = self.registry.get(ambulance_id)
        if actor.role is Role.PROVIDER:
            self._require_provider(actor, ambulance.provider_id)
        return ambulance

    def list_ambulances(self, actor: Actor, provider_id: Optional[str] = None) -> List[Ambulance]:
        if actor.role is Role.PROVIDER:
            provider_id = provider_id or actor.actor_id
        self._require_provider(actor, provider_id, allow_unscoped_admin=True)
        return self.registry.list(provider_id=provider_id)

    def update_ambulance(self, actor: Actor, ambulance_id: str, **fields) -> Ambulance:
        self._require_owner(actor, ambulance_id)
        return self.registry.update_details(ambulance_id, **fields)

    def retire_ambulance(self, actor: Actor, ambulance_id: str) -> Ambulance:
        self._require_owner(actor, ambulance_id)
        return self.registry.retire(ambulance_id)

    def set_ambulance_location(self, actor: Actor, ambulance_id: str, point: GeoPoint) -> Ambulance:
        self._require_owner(actor, ambulance_id)
        return self.registry.set_location(ambulance_id, point)

    def set_ambulance_status(
        self, actor: Actor, ambulance_id: str, status: object, force: bool = False
    ) -> Ambulance:
        self._require_owner(actor, ambulance_id)
        return self.registry.set_status(ambulance_id, status, force=force)

    def force_complete_trips(
        self,
        actor: Actor,
        ambulance_id: str,
        target_status: object = AmbulanceStatus.AVAILABLE,
    ) -> Tuple[Ambulance, List[str]]:
        self._require_owner(actor, ambulance_id)
        return self.registry.force_complete_active_trips_and_set_status(
            ambulance_id, target_status or AmbulanceStatus.AVAILABLE, actor_id=actor.actor_id
        )

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------
    def match_ambulances(
        self,
        actor: Actor,
        location: GeoPoint,
        max_distance_km: Optional[float] = None,
        limit: Optional[int] = None,
        provider_ids: Optional[Collection[str]] = None,
    ) -> List[AmbulanceMatch]:
        if max_distance_km is not None and max_distance_km < 0:
            raise ValidationError("maxDistanceKm cannot be negative")
        if limit is not None and limit < 0:
            raise ValidationError("limit cannot be negative")
        if actor.role is Role.PROVIDER:
            provider_ids = [actor.actor_id]
        return self.matcher.match(location, provider_ids, max_distance_km, limit)

    # ------------------------------------------------------------------
    # Trips
    # ------------------------------------------------------------------
    def create_trip_request(
        self,
        actor: Actor,
        request_location: GeoPoint,
        patient_details: Optional[Dict[str, object]] = None,
        emergency_details: str = "",
        destination_location: Optional[GeoPoint] = None,
        preferred_ambulance_id: Optional[str] = None,
        requester_id: Optional[str] = None,
    ) -> Trip:
        if actor.role is Role.PROVIDER:
            raise UnauthorizedError("Providers cannot request trips")
        if actor.role is Role.REQUESTER:
            requester_id = actor.actor_id
        return self.ledger.create(
            requester_id=requester_id or actor.actor_id,
            request_location=request_location,
            patient_details=patient_details,
            emergency_details=emergency_details,
            destination_location=destination_location,
            preferred_ambulance_id=preferred_ambulance_id,
        )

    def get_trip(self, actor: Actor, trip_id: str) -> Trip:
        trip = self.ledger.get(trip_id)
        self._require_trip_visible(actor, trip)
        return trip

    def list_trips(self, actor: Actor, statuses: Optional[Sequence[object]] = None) -> List[Trip]:
        wanted = [coerce_trip_status(s) for s in statuses] if statuses else None
        if actor.role is Role.REQUESTER:
            return self.ledger.list(requester_id=actor.actor_id, statuses=wanted)
        if actor.role is Role.PROVIDER:
            return self.ledger.list(provider_id=actor.actor_id, statuses=wanted)
        return self.ledger.list(statuses=wanted)

    def accept_trip(self, actor: Actor, trip_id: str, ambulance_id: str) -> Trip:
        if actor.role is Role.REQUESTER:
            raise UnauthorizedError("Only providers can accept trips")
        if not ambulance_id:
            raise ValidationError("ambulanceId is required")
        self._require_owner(actor, ambulance_id)
        trip = self.ledger.get(trip_id)
        if actor.role is Role.PROVIDER and trip.provider_id not in (None, actor.actor_id):
            raise UnauthorizedError("Not authorized to accept this trip", {"trip_id": trip_id})
        return self.ledger.accept(trip_id, ambulance_id, actor_id=actor.actor_id)

    def transition_trip(
        self, actor: Actor, trip_id: str, new_status: object, reason: Optional[str] = None
    ) -> Trip:
        target = coerce_trip_status(new_status)
        trip = self.ledger.get(trip_id)
        if actor.role is Role.REQUESTER:
            if trip.requester_id != actor.actor_id:
                raise UnauthorizedError("Not authorized to update this trip", {"trip_id": trip_id})
            if target is not TripStatus.CANCELLED:
                raise UnauthorizedError("Users can only cancel trips", {"trip_id": trip_id})
        elif actor.role is Role.PROVIDER and not actor.owns_provider(trip.provider_id):
            raise UnauthorizedError("Not authorized to update this trip", {"trip_id": trip_id})
        return self.ledger.transition(trip_id, target, actor_id=actor.actor_id, reason=reason)

    def refresh_trip(self, actor: Actor, trip_id: str) -> Trip:
        self.get_trip(actor, trip_id)
        return self.ledger.republish(trip_id)

    # ------------------------------------------------------------------
    # Real-time topics
    # ------------------------------------------------------------------
    def authorize_topic(self, actor: Actor, topic: str) -> None:
        kind, entity_id = parse_topic(topic)
        if kind == ALL_TOPICS:
            if not actor.is_admin:
                raise UnauthorizedError("Only admins may watch every topic")
        elif kind == NEW_TRIPS_TOPIC:
            if actor.role is Role.REQUESTER:
                raise UnauthorizedError("Only providers may watch new trip requests")
        elif kind in ("trips:provider", "ambulances:provider"):
            self._require_provider(actor, entity_id)
        elif kind == "trip":
            self.get_trip(actor, entity_id)
        elif kind == "ambulance":
            ambulance = self.registry.get(entity_id)
            if not self._can_watch_ambulance(actor, entity_id, ambulance.provider_id):
                raise UnauthorizedError("Not authorized to watch this ambulance", {"topic": topic})

    def topic_filter(self, actor: Actor) -> EventFilter:
        """Event filter that re-checks, at publish time, whether ``actor`` may see the entity.

        Access granted at subscribe time can lapse: a provider watching an
        unscoped request loses it once another provider accepts, and a
        requester watching an ambulance loses it when their trip closes.
        Providers still hear that an unclaimed request was withdrawn.
        """

        def visible(event: DomainEvent) -> bool:
            kind, entity_id = parse_topic(event.entity_key)
            snapshot = event.snapshot
            if kind == "trip":
                if actor.role is Role.PROVIDER and snapshot["providerId"] is None:
                    return True
                return self._trip_visible(
                    actor,
                    snapshot["requesterId"],
                    snapshot["providerId"],
                    TripStatus(snapshot["status"]),
                )
            return self._can_watch_ambulance(actor, entity_id, snapshot["providerId"])

        return visible

    def topic_snapshot(self, topic: str) -> object:
        """Authoritative state behind ``topic``, used for (re)synchronization."""

        kind, entity_id = parse_topic(topic)
        if kind == "trip":
            return self.ledger.get(entity_id).to_dict()
        if kind == "ambulance":
            return self.registry.get(entity_id).to_dict()
        if kind == "trips:provider":
            return [t.to_dict() for t in self.ledger.list(provider_id=entity_id)]
        if kind == "ambulances:provider":
            return [a.to_dict() for a in self.registry.list(provider_id=entity_id)]
        if kind == NEW_TRIPS_TOPIC:
            return [
                t.to_dict()
                for t in self.ledger.list(statuses=[TripStatus.REQUESTED])
                if t.provider_id is None
            ]
        return {
            "ambulances": [a.to_dict() for a in self.registry.list()],
            "trips": [t.to_dict() for t in self.ledger.list()],
        }

    # ------------------------------------------------------------------
    def _require_provider(
        self,
        actor: Actor,
        provider_id: Optional[str],
        allow_unscoped_admin: bool = False,
    ) -> None:
        if actor.is_admin:
            if provider_id is None and not allow_unscoped_admin:
                raise ValidationError("providerId is required")
            return
        if not actor.owns_provider(provider_id):
            raise UnauthorizedError("Not authorized for this provider", {"provider_id": provider_id})

    def _require_owner(self, actor: Actor, ambulance_id: str) -> None:
        ambulance = self.registry.get(ambulance_id)
        if actor.is_admin or actor.owns_provider(ambulance.provider_id):
            return
        raise UnauthorizedError(
            "Not authorized to manage this ambulance", {"ambulance_id": ambulance_id}
        )

    def _require_trip_visible(self, actor: Actor, trip: Trip) -> None:
        if self._trip_visible(actor, trip.requester_id, trip.provider_id, trip.status):
            return
        raise UnauthorizedError("Not authorized to access this trip", {"trip_id": trip.trip_id})

    def _trip_visible(
        self,
        actor: Actor,
        requester_id: str,
        provider_id: Optional[str],
        status: TripStatus,
    ) -> bool:
        if actor.is_admin:
            return True
        if actor.role is Role.REQUESTER:
            return requester_id == actor.actor_id
        if actor.owns_provider(provider_id):
            return True
        return actor.role is Role.PROVIDER and provider_id is None and status is TripStatus.REQUESTED

    def _can_watch_ambulance(self, actor: Actor, ambulance_id: str, provider_id: str) -> bool:
        if actor.is_admin or actor.owns_provider(provider_id):
            return True
        return any(
            trip.ambulance_id == ambulance_id and trip.is_open
            for trip in self.ledger.list(requester_id=actor.actor_id)
        )
