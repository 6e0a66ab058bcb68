from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from fleet import (
    AmbulanceRegistry,
    AmbulanceStatus,
    DispatchCenter,
    DispatchSettings,
    GeoIndex,
    GeoPoint,
    NotificationBus,
    TripLedger,
)
from fleet.events import DomainEvent


class StepClock:
    """Deterministic clock: every reading is one second after the previous one."""

    def __init__(self) -> None:
        self.current = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            self.current += timedelta(seconds=1)
            return self.current


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def bus() -> NotificationBus:
    return NotificationBus()


@pytest.fixture
def registry(bus, clock) -> AmbulanceRegistry:
    return AmbulanceRegistry(GeoIndex(), bus, clock)


@pytest.fixture
def ledger(registry) -> TripLedger:
    return TripLedger(registry)


@pytest.fixture
def events(bus) -> List[DomainEvent]:
    received: List[DomainEvent] = []
    bus.subscribe("*", lambda event, topic: received.append(event))
    return received


@pytest.fixture
def add_ambulance(registry):
    def _add(ref, lat=0.0, lon=0.0, provider="prov-1", status=AmbulanceStatus.AVAILABLE):
        location = GeoPoint(lat, lon) if lat is not None else None
        return registry.register(
            provider,
            name=ref,
            registration=f"REG-{ref}",
            location=location,
            status=status,
            ambulance_id=ref,
        )

    return _add


@pytest.fixture
def new_trip(ledger):
    def _new(requester="user-1", lat=0.0, lon=0.0, **kwargs):
        return ledger.create(
            requester,
            GeoPoint(lat, lon),
            {"name": "Pat Doe", "phone": "555-0100"},
            **kwargs,
        )

    return _new


@pytest.fixture
def center(clock) -> DispatchCenter:
    return DispatchCenter(DispatchSettings(), clock=clock)
