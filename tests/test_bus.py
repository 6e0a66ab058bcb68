import logging

from fleet import NotificationBus, TripCreated, TripUpdated
from fleet.events import AmbulanceStatusChanged, DomainEvent


def _trip_event(cls=TripUpdated, trip_id="t1", version=1, provider_id=None):
    return cls(
        entity_key=f"trip:{trip_id}",
        version=version,
        snapshot={"id": trip_id, "providerId": provider_id, "status": "REQUESTED"},
    )


def test_routes_to_entity_provider_and_wildcard_topics():
    bus = NotificationBus()
    seen = []
    for topic in ("trip:t1", "trips:provider:p1", "trips:new", "*"):
        bus.subscribe(topic, lambda event, topic: seen.append(topic))

    delivered = bus.publish(_trip_event(provider_id="p1"))

    assert delivered == 3
    assert sorted(seen) == ["*", "trip:t1", "trips:provider:p1"]


def test_unassigned_trips_go_to_new_trips_topic():
    bus = NotificationBus()
    seen = []
    bus.subscribe("trips:new", lambda event, topic: seen.append(event))
    bus.publish(_trip_event(cls=TripCreated))
    assert len(seen) == 1


def test_event_filter():
    bus = NotificationBus()
    seen = []
    bus.subscribe("*", lambda event, topic: seen.append(event), event_filter=lambda e: e.kind == "TripCreated")
    bus.publish(_trip_event(cls=TripUpdated, trip_id="a"))
    bus.publish(_trip_event(cls=TripCreated, trip_id="b"))
    assert [e.snapshot["id"] for e in seen] == ["b"]


def test_unsubscribe_leaves_nothing_behind():
    bus = NotificationBus()
    seen = []
    subscription = bus.subscribe("trip:t1", lambda event, topic: seen.append(event))
    assert bus.subscriber_count("trip:t1") == 1

    subscription.cancel()
    bus.publish(_trip_event())

    assert seen == []
    assert not subscription.active
    assert bus.subscriber_count() == 0
    assert bus.topics() == []


def test_subscription_as_context_manager():
    bus = NotificationBus()
    with bus.subscribe("*", lambda event, topic: None):
        assert bus.subscriber_count("*") == 1
    assert bus.subscriber_count("*") == 0


def test_failing_subscriber_is_logged_and_skipped(caplog):
    bus = NotificationBus()
    seen = []

    def broken(event, topic):
        raise RuntimeError("socket closed")

    bus.subscribe("trip:t1", broken)
    bus.subscribe("trip:t1", lambda event, topic: seen.append(event))

    with caplog.at_level(logging.WARNING, logger="fleet.bus"):
        delivered = bus.publish(_trip_event())

    assert delivered == 1
    assert len(seen) == 1
    assert bus.failed_deliveries == 1
    assert "failed" in caplog.text


def test_stale_versions_are_dropped():
    bus = NotificationBus()
    seen = []
    bus.subscribe("*", lambda event, topic: seen.append(event.version))

    bus.publish(_trip_event(version=3))
    bus.publish(_trip_event(version=2))
    bus.publish(_trip_event(version=3))
    bus.publish(_trip_event(version=4))
    bus.publish(_trip_event(trip_id="t2", version=1))

    assert seen == [3, 4, 1]


def test_replay_resends_the_latest_version():
    bus = NotificationBus()
    seen = []
    bus.subscribe("*", lambda event, topic: seen.append(event.version))

    bus.publish(_trip_event(version=2))
    bus.publish(_trip_event(version=2), replay=True)
    bus.publish(_trip_event(version=1), replay=True)

    assert seen == [2, 2]


def test_to_message_shape():
    event = AmbulanceStatusChanged(
        entity_key="ambulance:a1", version=5, snapshot={"id": "a1", "providerId": "p1"}
    )
    assert event.topics() == ["ambulance:a1", "ambulances:provider:p1"]
    assert event.to_message("ambulance:a1") == {
        "type": "event",
        "event": "AmbulanceStatusChanged",
        "topic": "ambulance:a1",
        "version": 5,
        "data": {"id": "a1", "providerId": "p1"},
    }
    assert isinstance(event, DomainEvent)
