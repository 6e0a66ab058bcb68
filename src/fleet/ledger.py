"""Trip records and the trip state machine.

::

    REQUESTED -> ACCEPTED -> ARRIVED -> PICKED_UP -> AT_HOSPITAL -> COMPLETED
    (any open state) -> CANCELLED

Re-issuing the transition a trip is already in is a no-op, so clients may
retry freely. Accepting binds the ambulance through the registry; the first
acceptor wins and later ones get a ConflictError.
"""
from __future__ import annotations

import contextlib
import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Set

from .ambulance import AmbulanceStatus
from .bus import NotificationBus
from .clock import Clock
from .errors import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from .events import DomainEvent, TripCreated, TripUpdated
from .geo import GeoPoint
from .locks import KeyedLocks
from .registry import AmbulanceRegistry
from .trip import CompletionReason, Trip, TripStatus, can_transition

logger = logging.getLogger(__name__)

DEFAULT_CANCELLATION_REASON = "No reason provided"


def coerce_trip_status(value: object) -> TripStatus:
    try:
        return TripStatus(value)
    except ValueError:
        raise ValidationError(
            f"Unknown trip status '{value}'", {"allowed": [s.value for s in TripStatus]}
        ) from None


class TripLedger:
    def __init__(
        self,
        registry: AmbulanceRegistry,
        bus: Optional[NotificationBus] = None,
        clock: Optional[Clock] = None,
        duplicate_window: Optional[timedelta] = None,
    ) -> None:
        self.registry = registry
        self.duplicate_window = duplicate_window
        self.bus = bus if bus is not None else registry.bus
        self.clock = clock or registry.clock
        self._trips: Dict[str, Trip] = {}
        self._by_ambulance: Dict[str, Set[str]] = {}
        self._catalog_lock = threading.Lock()
        self._locks = KeyedLocks()
        registry.attach_ledger(self)

    def create(
        self,
        requester_id: str,
        request_location: GeoPoint,
        patient_details: Optional[Dict[str, object]] = None,
        emergency_details: str = "",
        destination_location: Optional[GeoPoint] = None,
        preferred_ambulance_id: Optional[str] = None,
        trip_id: Optional[str] = None,
    ) -> Trip:
        if not requester_id:
            raise ValidationError("requesterId is required")
        if not isinstance(request_location, GeoPoint):
            raise ValidationError("requestLocation must be a point")
        if patient_details is not None and not isinstance(patient_details, dict):
            raise ValidationError("patientDetails must be an object")

        existing = self._recent_open_trip(requester_id)
        if existing is not None:
            return self._repeat_request(existing)

        provider_id = None
        if preferred_ambulance_id is not None:
            ambulance = self.registry.get(preferred_ambulance_id)
            if ambulance.retired or ambulance.status is not AmbulanceStatus.AVAILABLE:
                raise ConflictError(
                    f"Ambulance is not available (Status: {ambulance.status.value})",
                    {
                        "ambulance_id": ambulance.ambulance_id,
                        "status": ambulance.status.value,
                        "active_trip_id": ambulance.active_trip_id,
                    },
                )
            provider_id = ambulance.provider_id

        trip = Trip(
            trip_id=trip_id or uuid.uuid4().hex,
            requester_id=requester_id,
            request_location=request_location,
            request_time=self.clock(),
            patient_details=dict(patient_details or {}),
            emergency_details=emergency_details or "",
            destination_location=destination_location,
            provider_id=provider_id,
            requested_ambulance_id=preferred_ambulance_id,
            last_actor_id=requester_id,
            version=1,
        )
        with self._catalog_lock:
            existing = self._recent_open_trip(requester_id)
            if existing is None:
                if trip.trip_id in self._trips:
                    raise ConflictError("Trip id already in use", {"trip_id": trip.trip_id})
                self._trips[trip.trip_id] = trip
                snapshot = trip.copy()
        if existing is not None:
            return self._repeat_request(existing)
        logger.info("Trip %s requested by %s", trip.trip_id, requester_id)
        self.bus.publish(TripCreated.of(snapshot))
        return snapshot

    def _recent_open_trip(self, requester_id: str) -> Optional[str]:
        """Id of an open trip the requester created inside the duplicate window."""

        if not self.duplicate_window:
            return None
        cutoff = self.clock() - self.duplicate_window
        recent = [
            trip
            for trip in list(self._trips.values())
            if trip.requester_id == requester_id and trip.is_open and trip.request_time > cutoff
        ]
        if not recent:
            return None
        return max(recent, key=lambda trip: trip.request_time).trip_id

    def _repeat_request(self, trip_id: str) -> Trip:
        logger.info("Returning recent trip %s instead of creating a duplicate", trip_id)
        return self.republish(trip_id)

    def load(self, trips: Iterable[Trip]) -> None:
        """Hydrate records from storage as-is, without invariant checks."""

        with self._catalog_lock:
            for trip in trips:
                record = trip.copy()
                self._trips[record.trip_id] = record
                if record.ambulance_id and record.is_open:
                    self._by_ambulance.setdefault(record.ambulance_id, set()).add(record.trip_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get(self, trip_id: str) -> Trip:
        with self._locks.hold(trip_id):
            return self._require(trip_id).copy()

    def list(
        self,
        requester_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        statuses: Optional[Sequence[TripStatus]] = None,
    ) -> List[Trip]:
        """Trips matching every given filter, newest request first."""

        wanted = {coerce_trip_status(s) for s in statuses} if statuses else None
        with self._catalog_lock:
            trip_ids = list(self._trips)
        found: List[Trip] = []
        for trip_id in trip_ids:
            trip = self.get(trip_id)
            if requester_id is not None and trip.requester_id != requester_id:
                continue
            if provider_id is not None and trip.provider_id != provider_id:
                continue
            if wanted is not None and trip.status not in wanted:
                continue
            found.append(trip)
        found.sort(key=lambda trip: (trip.request_time, trip.trip_id), reverse=True)
        return found

    def is_open(self, trip_id: str) -> bool:
        trip = self._trips.get(trip_id)
        return trip is not None and trip.is_open

    def open_trip_ids_for(self, ambulance_id: str) -> List[str]:
        """Open trips bound to ``ambulance_id``; callers hold the ambulance lock."""

        bound = self._by_ambulance.get(ambulance_id, ())
        return sorted(trip_id for trip_id in bound if self.is_open(trip_id))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def accept(self, trip_id: str, ambulance_id: str, actor_id: Optional[str] = None) -> Trip:
        return self.transition(trip_id, TripStatus.ACCEPTED, actor_id, ambulance_id=ambulance_id)

    def transition(
        self,
        trip_id: str,
        new_status: object,
        actor_id: Optional[str] = None,
        ambulance_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Trip:
        target = coerce_trip_status(new_status)
        while True:
            observed = self._require(trip_id).ambulance_id
            bound = observed
            if bound is None and target is TripStatus.ACCEPTED:
                if not ambulance_id:
                    raise ValidationError("Accepting a trip requires an ambulanceId", {"trip_id": trip_id})
                bound = ambulance_id
            outbox: List[DomainEvent] = []
            with contextlib.ExitStack() as stack:
                if bound is not None:
                    stack.enter_context(self.registry.locked(bound))
                stack.enter_context(self._locks.hold(trip_id))
                trip = self._trips[trip_id]
                if trip.ambulance_id != observed:
                    # Accepted by someone else between the read and the lock.
                    continue
                changed = self._apply(trip, target, actor_id, ambulance_id, reason, outbox)
                snapshot = trip.copy()
            if changed:
                logger.info("Trip %s is now %s", trip_id, target.value)
            self.bus.publish_all(outbox)
            return snapshot

    def _apply(
        self,
        trip: Trip,
        target: TripStatus,
        actor_id: Optional[str],
        ambulance_id: Optional[str],
        reason: Optional[str],
        outbox: List[DomainEvent],
    ) -> bool:
        if (
            target is TripStatus.ACCEPTED
            and ambulance_id
            and trip.ambulance_id is not None
            and trip.ambulance_id != ambulance_id
            and trip.is_open
        ):
            raise ConflictError(
                "Trip already accepted by another ambulance",
                {
                    "trip_id": trip.trip_id,
                    "status": trip.status.value,
                    "ambulance_id": trip.ambulance_id,
                },
            )
        if trip.status is target:
            return False
        if not can_transition(trip.status, target):
            raise InvalidTransitionError(
                f"Invalid status transition from {trip.status.value} to {target.value}",
                {
                    "trip_id": trip.trip_id,
                    "status": trip.status.value,
                    "target": target.value,
                    "allowed": [s.value for s in TripStatus if can_transition(trip.status, s)],
                },
            )

        now = self.clock()
        if target is TripStatus.ACCEPTED:
            ambulance = self.registry.get(ambulance_id)
            if trip.provider_id is not None and trip.provider_id != ambulance.provider_id:
                raise ConflictError(
                    "Trip was requested from another provider",
                    {"trip_id": trip.trip_id, "provider_id": trip.provider_id, "ambulance_id": ambulance_id},
                )
            self.registry.bind_trip(ambulance_id, trip.trip_id, outbox)
            trip.ambulance_id = ambulance_id
            trip.provider_id = ambulance.provider_id
            self._by_ambulance.setdefault(ambulance_id, set()).add(trip.trip_id)

        trip.apply(target, now, actor_id)
        if target is TripStatus.CANCELLED:
            trip.cancelled_by = actor_id
            trip.cancellation_reason = reason or DEFAULT_CANCELLATION_REASON
        elif target is TripStatus.COMPLETED:
            trip.completion_reason = CompletionReason.DELIVERED

        if target.is_terminal and trip.ambulance_id is not None:
            self._release(trip)
            self.registry.unbind_trip(trip.ambulance_id, trip.trip_id, outbox)
        outbox.insert(0, TripUpdated.of(trip))
        return True

    def force_complete(
        self,
        trip_ids: Iterable[str],
        now: datetime,
        stack: contextlib.ExitStack,
        outbox: List[DomainEvent],
        actor_id: Optional[str] = None,
    ) -> List[str]:
        """Complete the given trips as forced; returns the ids actually closed.

        Called by the registry with the ambulance lock held. Trip locks are
        entered on ``stack`` so they stay held until the caller has also
        rewritten the ambulance.
        """

        trip_ids = sorted(set(trip_ids))
        for trip_id in trip_ids:
            stack.enter_context(self._locks.hold(trip_id))
        completed: List[str] = []
        for trip_id in trip_ids:
            trip = self._trips.get(trip_id)
            if trip is None or not trip.is_open:
                continue
            trip.apply(TripStatus.COMPLETED, now, actor_id)
            trip.completion_reason = CompletionReason.FORCED
            self._release(trip)
            outbox.append(TripUpdated.of(trip))
            completed.append(trip_id)
        return completed

    def republish(self, trip_id: str) -> Trip:
        """Re-send the current snapshot so stale subscribers can resynchronize."""

        snapshot = self.get(trip_id)
        self.bus.publish(TripUpdated.of(snapshot), replay=True)
        return snapshot

    # ------------------------------------------------------------------
    def _release(self, trip: Trip) -> None:
        bound = self._by_ambulance.get(trip.ambulance_id)
        if bound is not None:
            bound.discard(trip.trip_id)
            if not bound:
                del self._by_ambulance[trip.ambulance_id]

    def _require(self, trip_id: str) -> Trip:
        trip = self._trips.get(trip_id)
        if trip is None:
            raise NotFoundError("Trip not found", {"trip_id": trip_id})
        return trip

