from datetime import datetime, timezone

import pytest

from fleet import (
    Ambulance,
    AmbulanceLocationChanged,
    AmbulanceStatus,
    AmbulanceStatusChanged,
    CompletionReason,
    ConflictError,
    GeoPoint,
    NotFoundError,
    Trip,
    TripStatus,
    TripUpdated,
    ValidationError,
)

T0 = datetime(2024, 1, 1, 7, 0, tzinfo=timezone.utc)


def test_register_defaults_to_offline(registry, events):
    ambulance = registry.register("prov-1", name="Medic 1", registration="AB-123")
    assert ambulance.status is AmbulanceStatus.OFFLINE
    assert ambulance.location is None
    assert ambulance.version == 1
    assert [type(e) for e in events] == [AmbulanceStatusChanged]


def test_register_rejects_duplicates_and_busy(registry):
    registry.register("prov-1", name="Medic 1", registration="AB-123")
    with pytest.raises(ConflictError):
        registry.register("prov-1", name="Medic 2", registration="AB-123")
    with pytest.raises(ValidationError):
        registry.register("prov-1", name="Medic 3", registration="CD-1", status=AmbulanceStatus.BUSY)
    with pytest.raises(ValidationError):
        registry.register("prov-1", name="Medic 4", registration="CD-2", capacity=0)


def test_set_location_updates_index_and_emits(registry, add_ambulance, events):
    add_ambulance("amb-1", 0.0, 0.0)
    events.clear()

    updated = registry.set_location("amb-1", GeoPoint(1.0, 2.0))

    assert updated.location == GeoPoint(1.0, 2.0)
    assert registry.geo_index.get("amb-1") == GeoPoint(1.0, 2.0)
    assert [type(e) for e in events] == [AmbulanceLocationChanged]
    with pytest.raises(NotFoundError):
        registry.set_location("missing", GeoPoint(0.0, 0.0))


def test_set_status_without_trip(registry, add_ambulance, events):
    add_ambulance("amb-1", status=AmbulanceStatus.OFFLINE)
    events.clear()

    assert registry.set_status("amb-1", "AVAILABLE").status is AmbulanceStatus.AVAILABLE
    registry.set_status("amb-1", AmbulanceStatus.AVAILABLE)
    assert len(events) == 1

    with pytest.raises(ValidationError):
        registry.set_status("amb-1", "ON_BREAK")


def test_status_change_refused_while_trip_open(registry, ledger, add_ambulance, new_trip):
    add_ambulance("amb-1")
    trip = new_trip()
    ledger.accept(trip.trip_id, "amb-1")

    with pytest.raises(ConflictError) as excinfo:
        registry.set_status("amb-1", AmbulanceStatus.AVAILABLE)

    context = excinfo.value.context
    assert excinfo.value.message == "active trip bound"
    assert context["status"] == "BUSY"
    assert context["active_trip_id"] == trip.trip_id
    assert context["open_trip_ids"] == [trip.trip_id]
    assert context["remediation"] == ["force_status", "force_complete_trips"]
    assert registry.get("amb-1").status is AmbulanceStatus.BUSY


def test_busy_is_always_accepted(registry, ledger, add_ambulance, new_trip):
    add_ambulance("amb-1")
    trip = new_trip()
    ledger.accept(trip.trip_id, "amb-1")
    assert registry.set_status("amb-1", "BUSY").status is AmbulanceStatus.BUSY


def test_forced_status_leaves_trip_open(registry, ledger, add_ambulance, new_trip, caplog):
    add_ambulance("amb-1")
    trip = new_trip()
    ledger.accept(trip.trip_id, "amb-1")

    with caplog.at_level("WARNING", logger="fleet.registry"):
        ambulance = registry.set_status("amb-1", "AVAILABLE", force=True)

    assert ambulance.status is AmbulanceStatus.AVAILABLE
    assert ambulance.active_trip_id == trip.trip_id
    assert ledger.get(trip.trip_id).status is TripStatus.ACCEPTED
    assert "remain open" in caplog.text

    other = new_trip(requester="user-2")
    with pytest.raises(ConflictError):
        ledger.accept(other.trip_id, "amb-1")


def _bound_trip(trip_id, ambulance_id, status=TripStatus.ACCEPTED):
    return Trip(
        trip_id=trip_id,
        requester_id="user-1",
        request_location=GeoPoint(0.0, 0.0),
        request_time=T0,
        provider_id="prov-1",
        ambulance_id=ambulance_id,
        status=status,
        accept_time=T0,
        version=2,
    )


def _busy_ambulance(ambulance_id, active_trip_id):
    return Ambulance(
        ambulance_id=ambulance_id,
        provider_id="prov-1",
        name=ambulance_id,
        registration=f"REG-{ambulance_id}",
        status=AmbulanceStatus.BUSY,
        location=GeoPoint(0.0, 0.0),
        active_trip_id=active_trip_id,
        created_at=T0,
        last_updated=T0,
        version=3,
    )


def test_force_complete_closes_every_open_trip(registry, ledger, events):
    registry.load([_busy_ambulance("amb-1", "trip-a")])
    ledger.load([_bound_trip("trip-a", "amb-1"), _bound_trip("trip-b", "amb-1", TripStatus.ARRIVED)])
    assert registry.open_trip_ids("amb-1") == ["trip-a", "trip-b"]

    ambulance, completed = registry.force_complete_active_trips_and_set_status("amb-1", actor_id="ops")

    assert sorted(completed) == ["trip-a", "trip-b"]
    assert ambulance.status is AmbulanceStatus.AVAILABLE
    assert ambulance.active_trip_id is None
    for trip_id in completed:
        trip = ledger.get(trip_id)
        assert trip.status is TripStatus.COMPLETED
        assert trip.completion_reason is CompletionReason.FORCED
        assert trip.completion_time is not None
        assert trip.last_actor_id == "ops"
    assert registry.open_trip_ids("amb-1") == []
    kinds = [type(e) for e in events]
    assert kinds.count(TripUpdated) == 2
    assert kinds[-1] is AmbulanceStatusChanged


def test_force_complete_publishes_only_final_state(registry, ledger, bus):
    registry.load([_busy_ambulance("amb-1", "trip-a")])
    ledger.load([_bound_trip("trip-a", "amb-1"), _bound_trip("trip-b", "amb-1")])
    observed = []

    def on_trip(event, topic):
        observed.append(
            (
                registry.get("amb-1").status,
                ledger.get("trip-a").status,
                ledger.get("trip-b").status,
            )
        )

    bus.subscribe("trip:trip-a", on_trip)
    registry.force_complete_active_trips_and_set_status("amb-1", "OFFLINE")

    assert observed == [(AmbulanceStatus.OFFLINE, TripStatus.COMPLETED, TripStatus.COMPLETED)]


def test_force_complete_closes_trip_known_only_as_active(registry, ledger):
    registry.load([_busy_ambulance("amb-1", "trip-x")])
    ledger.load([_bound_trip("trip-x", None)])
    assert registry.open_trip_ids("amb-1") == ["trip-x"]
    with pytest.raises(ConflictError):
        registry.set_status("amb-1", "AVAILABLE")

    ambulance, completed = registry.force_complete_active_trips_and_set_status("amb-1")

    assert completed == ["trip-x"]
    assert ambulance.active_trip_id is None
    trip = ledger.get("trip-x")
    assert trip.status is TripStatus.COMPLETED
    assert trip.completion_reason is CompletionReason.FORCED
    assert registry.open_trip_ids("amb-1") == []


def test_force_complete_rejects_busy_target(registry, add_ambulance):
    add_ambulance("amb-1")
    with pytest.raises(ValidationError):
        registry.force_complete_active_trips_and_set_status("amb-1", "BUSY")


def test_force_complete_without_trips_just_sets_status(registry, add_ambulance):
    add_ambulance("amb-1")
    ambulance, completed = registry.force_complete_active_trips_and_set_status("amb-1", "OFFLINE")
    assert completed == []
    assert ambulance.status is AmbulanceStatus.OFFLINE


def test_retire(registry, ledger, add_ambulance, new_trip):
    add_ambulance("amb-1", 0.0, 0.01)
    trip = new_trip()
    ledger.accept(trip.trip_id, "amb-1")
    with pytest.raises(ConflictError):
        registry.retire("amb-1")

    ledger.transition(trip.trip_id, TripStatus.CANCELLED, actor_id="user-1")
    retired = registry.retire("amb-1")

    assert retired.retired
    assert retired.status is AmbulanceStatus.OFFLINE
    assert registry.geo_index.get("amb-1") is None
    with pytest.raises(ConflictError):
        registry.set_status("amb-1", "AVAILABLE")
    assert [a.ambulance_id for a in registry.list(include_retired=False)] == []


def test_update_details(registry, add_ambulance, events):
    add_ambulance("amb-1")
    events.clear()
    updated = registry.update_details("amb-1", name="Medic Prime", equipment=["defibrillator"])
    assert updated.name == "Medic Prime"
    assert updated.equipment == ["defibrillator"]
    assert updated.registration == "REG-amb-1"
    assert [type(e) for e in events] == [AmbulanceStatusChanged]
    assert events[0].version == updated.version
    assert events[0].snapshot["name"] == "Medic Prime"
    assert events[0].topics() == ["ambulance:amb-1", "ambulances:provider:prov-1"]


def test_list_filters(registry, add_ambulance):
    add_ambulance("a", provider="prov-1")
    add_ambulance("b", provider="prov-2")
    add_ambulance("c", provider="prov-1", status=AmbulanceStatus.OFFLINE)

    assert [a.ambulance_id for a in registry.list(provider_id="prov-1")] == ["a", "c"]
    assert [a.ambulance_id for a in registry.list(status=AmbulanceStatus.AVAILABLE)] == ["a", "b"]
