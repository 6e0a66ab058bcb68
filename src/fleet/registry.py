"""Authoritative ambulance status and location.

Status changes go through exactly two doors: :meth:`AmbulanceRegistry.set_status`
(optionally forced, which leaves the bound trip open) and
:meth:`AmbulanceRegistry.force_complete_active_trips_and_set_status`, which
closes every open trip on the ambulance in one step.

Lock order is always ambulance before trip.
"""
from __future__ import annotations

import contextlib
import logging
import threading
import uuid
from typing import TYPE_CHECKING, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .ambulance import Ambulance, AmbulanceStatus
from .bus import NotificationBus
from .clock import Clock, utcnow
from .errors import ConflictError, NotFoundError, ValidationError
from .events import AmbulanceLocationChanged, AmbulanceStatusChanged, DomainEvent
from .geo import GeoIndex, GeoPoint
from .locks import KeyedLocks

if TYPE_CHECKING:  # pragma: no cover - import cycle safe typing
    from .ledger import TripLedger

logger = logging.getLogger(__name__)

REMEDIATION_OPTIONS = ["force_status", "force_complete_trips"]


def coerce_ambulance_status(value: object) -> AmbulanceStatus:
    try:
        return AmbulanceStatus(value)
    except ValueError:
        raise ValidationError(
            "Valid status (AVAILABLE, BUSY, OFFLINE) is required", {"status": value}
        ) from None


class AmbulanceRegistry:
    def __init__(
        self,
        geo_index: Optional[GeoIndex] = None,
        bus: Optional[NotificationBus] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.geo_index = geo_index if geo_index is not None else GeoIndex()
        self.bus = bus if bus is not None else NotificationBus()
        self.clock = clock or utcnow
        self._ambulances: Dict[str, Ambulance] = {}
        self._registrations: Dict[str, str] = {}
        self._catalog_lock = threading.Lock()
        self._locks = KeyedLocks()
        self._ledger: Optional["TripLedger"] = None

    def attach_ledger(self, ledger: "TripLedger") -> None:
        self._ledger = ledger

    @contextlib.contextmanager
    def locked(self, ambulance_id: str) -> Iterator[None]:
        """Hold the ambulance's lock; used by the ledger to serialize bindings."""

        with self._locks.hold(ambulance_id):
            yield

    # ------------------------------------------------------------------
    # Fleet management
    # ------------------------------------------------------------------
    def register(
        self,
        provider_id: str,
        name: str,
        registration: str,
        kind: str = "basic",
        capacity: int = 1,
        equipment: Optional[Sequence[str]] = None,
        driver: Optional[Dict[str, str]] = None,
        location: Optional[GeoPoint] = None,
        status: AmbulanceStatus = AmbulanceStatus.OFFLINE,
        ambulance_id: Optional[str] = None,
    ) -> Ambulance:
        if not provider_id:
            raise ValidationError("providerId is required")
        if not name or not registration:
            raise ValidationError("name and registration are required")
        if capacity < 1:
            raise ValidationError("capacity must be at least 1", {"capacity": capacity})
        status = coerce_ambulance_status(status)
        if status is AmbulanceStatus.BUSY:
            raise ValidationError("A new ambulance cannot start BUSY")
        now = self.clock()
        ambulance = Ambulance(
            ambulance_id=ambulance_id or uuid.uuid4().hex,
            provider_id=provider_id,
            name=name,
            registration=registration,
            kind=kind,
            capacity=capacity,
            equipment=list(equipment or []),
            driver=dict(driver or {}),
            status=status,
            location=location,
            created_at=now,
            last_updated=now,
            version=1,
        )
        with self._catalog_lock:
            if registration in self._registrations:
                raise ConflictError(
                    "Ambulance with this registration already exists",
                    {"registration": registration, "ambulance_id": self._registrations[registration]},
                )
            if ambulance.ambulance_id in self._ambulances:
                raise ConflictError(
                    "Ambulance id already in use", {"ambulance_id": ambulance.ambulance_id}
                )
            self._ambulances[ambulance.ambulance_id] = ambulance
            self._registrations[registration] = ambulance.ambulance_id
            if location is not None:
                self.geo_index.update(ambulance.ambulance_id, location)
            snapshot = ambulance.copy()
        logger.info("Registered ambulance %s for provider %s", ambulance.ambulance_id, provider_id)
        self.bus.publish(AmbulanceStatusChanged.of(snapshot))
        return snapshot

    def load(self, ambulances: Iterable[Ambulance]) -> None:
        """Hydrate records from storage as-is, without invariant checks."""

        with self._catalog_lock:
            for ambulance in ambulances:
                record = ambulance.copy()
                self._ambulances[record.ambulance_id] = record
                self._registrations[record.registration] = record.ambulance_id
                if record.location is not None and not record.retired:
                    self.geo_index.update(record.ambulance_id, record.location)

    def update_details(
        self,
        ambulance_id: str,
        name: Optional[str] = None,
        kind: Optional[str] = None,
        capacity: Optional[int] = None,
        equipment: Optional[Sequence[str]] = None,
        driver: Optional[Dict[str, str]] = None,
    ) -> Ambulance:
        if capacity is not None and capacity < 1:
            raise ValidationError("capacity must be at least 1", {"capacity": capacity})
        with self._locks.hold(ambulance_id):
            ambulance = self._require(ambulance_id)
            ambulance.name = name or ambulance.name
            ambulance.kind = kind or ambulance.kind
            ambulance.capacity = capacity or ambulance.capacity
            if equipment is not None:
                ambulance.equipment = list(equipment)
            if driver is not None:
                ambulance.driver = dict(driver)
            ambulance.touch(self.clock())
            snapshot = ambulance.copy()
        self.bus.publish(AmbulanceStatusChanged.of(snapshot))
        return snapshot

    def retire(self, ambulance_id: str) -> Ambulance:
        with self._locks.hold(ambulance_id):
            ambulance = self._require(ambulance_id)
            if ambulance.retired:
                return ambulance.copy()
            open_trips = self._open_trip_ids(ambulance)
            if open_trips:
                raise ConflictError(
                    "Cannot retire an ambulance with an active trip",
                    self._conflict_context(ambulance, open_trips),
                )
            ambulance.retired = True
            ambulance.status = AmbulanceStatus.OFFLINE
            ambulance.touch(self.clock())
            self.geo_index.remove(ambulance_id)
            snapshot = ambulance.copy()
        logger.info("Retired ambulance %s", ambulance_id)
        self.bus.publish(AmbulanceStatusChanged.of(snapshot))
        return snapshot

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get(self, ambulance_id: str) -> Ambulance:
        with self._locks.hold(ambulance_id):
            return self._require(ambulance_id).copy()

    def list(
        self,
        provider_id: Optional[str] = None,
        status: Optional[AmbulanceStatus] = None,
        include_retired: bool = True,
    ) -> List[Ambulance]:
        with self._catalog_lock:
            ambulance_ids = sorted(self._ambulances)
        found: List[Ambulance] = []
        for ambulance_id in ambulance_ids:
            ambulance = self.get(ambulance_id)
            if provider_id is not None and ambulance.provider_id != provider_id:
                continue
            if status is not None and ambulance.status is not status:
                continue
            if ambulance.retired and not include_retired:
                continue
            found.append(ambulance)
        return found

    def open_trip_ids(self, ambulance_id: str) -> List[str]:
        with self._locks.hold(ambulance_id):
            return self._open_trip_ids(self._require(ambulance_id))

    # ------------------------------------------------------------------
    # Status and location
    # ------------------------------------------------------------------
    def set_location(self, ambulance_id: str, point: GeoPoint) -> Ambulance:
        with self._locks.hold(ambulance_id):
            ambulance = self._require(ambulance_id)
            ambulance.location = point
            ambulance.touch(self.clock())
            if not ambulance.retired:
                self.geo_index.update(ambulance_id, point)
            snapshot = ambulance.copy()
        self.bus.publish(AmbulanceLocationChanged.of(snapshot))
        return snapshot

    def set_status(
        self,
        ambulance_id: str,
        new_status: object,
        force: bool = False,
    ) -> Ambulance:
        """Change visible status.

        BUSY is always accepted. Anything else is refused while a trip is open
        unless ``force`` is set, in which case the trip is left open and the
        status simply overrides it.
        """

        new_status = coerce_ambulance_status(new_status)
        with self._locks.hold(ambulance_id):
            ambulance = self._require(ambulance_id)
            if ambulance.retired and new_status is not AmbulanceStatus.OFFLINE:
                raise ConflictError(
                    "Ambulance is retired", self._conflict_context(ambulance, [])
                )
            open_trips = self._open_trip_ids(ambulance)
            if open_trips and new_status is not AmbulanceStatus.BUSY:
                if not force:
                    raise ConflictError(
                        "active trip bound",
                        self._conflict_context(ambulance, open_trips, remediation=True),
                    )
                logger.warning(
                    "Forcing ambulance %s to %s; trip(s) %s remain open",
                    ambulance_id,
                    new_status.value,
                    ", ".join(open_trips),
                )
            if ambulance.status is new_status:
                return ambulance.copy()
            ambulance.status = new_status
            ambulance.touch(self.clock())
            snapshot = ambulance.copy()
        logger.info("Ambulance %s is now %s", ambulance_id, new_status.value)
        self.bus.publish(AmbulanceStatusChanged.of(snapshot))
        return snapshot

    def force_complete_active_trips_and_set_status(
        self,
        ambulance_id: str,
        target_status: object = AmbulanceStatus.AVAILABLE,
        actor_id: Optional[str] = None,
    ) -> Tuple[Ambulance, List[str]]:
        """Complete every open trip on the ambulance and set its status, atomically.

        The ambulance lock and every affected trip lock are held until all
        records are written, so readers see either the old state or the new one.
        """

        target_status = coerce_ambulance_status(target_status)
        if target_status is AmbulanceStatus.BUSY:
            raise ValidationError("Target status must be AVAILABLE or OFFLINE")
        outbox: List[DomainEvent] = []
        with contextlib.ExitStack() as stack:
            stack.enter_context(self._locks.hold(ambulance_id))
            ambulance = self._require(ambulance_id)
            if ambulance.retired and target_status is not AmbulanceStatus.OFFLINE:
                raise ConflictError("Ambulance is retired", self._conflict_context(ambulance, []))
            now = self.clock()
            completed: List[str] = []
            if self._ledger is not None:
                completed = self._ledger.force_complete(
                    self._open_trip_ids(ambulance), now, stack, outbox, actor_id=actor_id
                )
            ambulance.active_trip_id = None
            ambulance.status = target_status
            ambulance.touch(now)
            outbox.append(AmbulanceStatusChanged.of(ambulance))
            snapshot = ambulance.copy()
        if completed:
            logger.warning(
                "Force-completed trip(s) %s on ambulance %s", ", ".join(completed), ambulance_id
            )
        self.bus.publish_all(outbox)
        return snapshot, completed

    # ------------------------------------------------------------------
    # Trip binding (called by the ledger only)
    # ------------------------------------------------------------------
    def bind_trip(
        self,
        ambulance_id: str,
        trip_id: str,
        outbox: Optional[List[DomainEvent]] = None,
    ) -> Ambulance:
        """Commit the ambulance to ``trip_id`` and mark it BUSY.

        When ``outbox`` is given the event is appended there for the caller to
        publish after its own commit.
        """

        pending: List[DomainEvent] = []
        with self._locks.hold(ambulance_id):
            ambulance = self._require(ambulance_id)
            if ambulance.active_trip_id == trip_id:
                return ambulance.copy()
            if ambulance.retired:
                raise ConflictError("Ambulance is retired", self._conflict_context(ambulance, []))
            others = [t for t in self._open_trip_ids(ambulance) if t != trip_id]
            if others:
                raise ConflictError(
                    "Ambulance is already committed to another trip",
                    self._conflict_context(ambulance, others),
                )
            if ambulance.status is AmbulanceStatus.OFFLINE:
                raise ConflictError("Ambulance is offline", self._conflict_context(ambulance, []))
            ambulance.active_trip_id = trip_id
            ambulance.status = AmbulanceStatus.BUSY
            ambulance.touch(self.clock())
            pending.append(AmbulanceStatusChanged.of(ambulance))
            snapshot = ambulance.copy()
        self._emit(pending, outbox)
        return snapshot

    def unbind_trip(
        self,
        ambulance_id: str,
        trip_id: str,
        outbox: Optional[List[DomainEvent]] = None,
    ) -> Ambulance:
        """Release the ambulance from ``trip_id`` once the trip is closed."""

        pending: List[DomainEvent] = []
        with self._locks.hold(ambulance_id):
            ambulance = self._require(ambulance_id)
            if ambulance.active_trip_id != trip_id:
                return ambulance.copy()
            remaining = [t for t in self._open_trip_ids(ambulance) if t != trip_id]
            if remaining:
                ambulance.active_trip_id = remaining[0]
            else:
                # Closing the trip also ends any forced override.
                ambulance.active_trip_id = None
                ambulance.status = AmbulanceStatus.AVAILABLE
            ambulance.touch(self.clock())
            pending.append(AmbulanceStatusChanged.of(ambulance))
            snapshot = ambulance.copy()
        self._emit(pending, outbox)
        return snapshot

    # ------------------------------------------------------------------
    def _emit(self, events: List[DomainEvent], outbox: Optional[List[DomainEvent]]) -> None:
        if outbox is not None:
            outbox.extend(events)
        else:
            self.bus.publish_all(events)

    def _require(self, ambulance_id: str) -> Ambulance:
        ambulance = self._ambulances.get(ambulance_id)
        if ambulance is None:
            raise NotFoundError("Ambulance not found", {"ambulance_id": ambulance_id})
        return ambulance

    def _open_trip_ids(self, ambulance: Ambulance) -> List[str]:
        trip_ids: List[str] = []
        if self._ledger is not None:
            trip_ids.extend(self._ledger.open_trip_ids_for(ambulance.ambulance_id))
            if ambulance.active_trip_id and ambulance.active_trip_id not in trip_ids:
                if self._ledger.is_open(ambulance.active_trip_id):
                    trip_ids.insert(0, ambulance.active_trip_id)
        elif ambulance.active_trip_id:
            trip_ids.append(ambulance.active_trip_id)
        return trip_ids

    def _conflict_context(
        self,
        ambulance: Ambulance,
        open_trips: List[str],
        remediation: bool = False,
    ) -> Dict[str, object]:
        context: Dict[str, object] = {
            "ambulance_id": ambulance.ambulance_id,
            "status": ambulance.status.value,
            "active_trip_id": ambulance.active_trip_id,
            "open_trip_ids": list(open_trips),
        }
        if remediation:
            context["remediation"] = list(REMEDIATION_OPTIONS)
        return context
