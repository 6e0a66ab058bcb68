"""In-process fan-out of domain events.

Delivery is best-effort: a subscriber that raises is logged and skipped, and
nothing is retried. Subscribers are expected to reconcile by pulling the
authoritative state periodically. Callbacks run on the publishing thread and
must not block; transports should enqueue and send elsewhere.
"""
from __future__ import annotations

import logging
import threading
import uuid
from typing import Callable, Dict, Iterable, List, Optional

from .events import DomainEvent
from .locks import KeyedLocks

logger = logging.getLogger(__name__)

ALL_TOPICS = "*"

EventCallback = Callable[[DomainEvent, str], None]
EventFilter = Callable[[DomainEvent], bool]


class Subscription:
    """Handle returned by :meth:`NotificationBus.subscribe`."""

    def __init__(
        self,
        bus: "NotificationBus",
        topic: str,
        callback: EventCallback,
        event_filter: Optional[EventFilter] = None,
    ) -> None:
        self.subscription_id = uuid.uuid4().hex
        self.topic = topic
        self.callback = callback
        self.event_filter = event_filter
        self._bus = bus
        self.active = True

    def cancel(self) -> None:
        self._bus.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.cancel()

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"Subscription({self.topic}, active={self.active})"


class NotificationBus:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._topics: Dict[str, Dict[str, Subscription]] = {}
        self._watermarks: Dict[str, int] = {}
        self._delivery_locks = KeyedLocks()
        self.failed_deliveries = 0

    def subscribe(
        self,
        topic: str,
        callback: EventCallback,
        event_filter: Optional[EventFilter] = None,
    ) -> Subscription:
        subscription = Subscription(self, topic, callback, event_filter)
        with self._lock:
            self._topics.setdefault(topic, {})[subscription.subscription_id] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscription.active = False
            bucket = self._topics.get(subscription.topic)
            if bucket is None:
                return
            bucket.pop(subscription.subscription_id, None)
            if not bucket:
                del self._topics[subscription.topic]

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        with self._lock:
            if topic is not None:
                return len(self._topics.get(topic, {}))
            return sum(len(bucket) for bucket in self._topics.values())

    def topics(self) -> List[str]:
        with self._lock:
            return list(self._topics)

    def publish(self, event: DomainEvent, replay: bool = False) -> int:
        """Deliver ``event`` to matching subscribers and return the delivery count.

        Events for one entity are serialized; one that is not newer than the
        last published version of its entity is dropped. ``replay`` lets the
        latest version through a second time.
        """

        with self._delivery_locks.hold(event.entity_key):
            with self._lock:
                last = self._watermarks.get(event.entity_key)
                if last is not None and (
                    event.version < last or (event.version == last and not replay)
                ):
                    logger.debug(
                        "Dropping stale %s for %s (v%s <= v%s)",
                        event.kind,
                        event.entity_key,
                        event.version,
                        last,
                    )
                    return 0
                self._watermarks[event.entity_key] = event.version
                targets = [
                    (topic, subscription)
                    for topic in event.topics() + [ALL_TOPICS]
                    for subscription in self._topics.get(topic, {}).values()
                ]
            delivered = 0
            for topic, subscription in targets:
                if self._deliver(subscription, event, topic):
                    delivered += 1
            return delivered

    def publish_all(self, events: Iterable[DomainEvent]) -> int:
        return sum(self.publish(event) for event in events)

    def _deliver(self, subscription: Subscription, event: DomainEvent, topic: str) -> bool:
        if not subscription.active:
            return False
        try:
            if subscription.event_filter is not None and not subscription.event_filter(event):
                return False
            subscription.callback(event, topic)
        except Exception:
            self.failed_deliveries += 1
            logger.warning(
                "Delivery of %s on %s failed for subscription %s",
                event.kind,
                topic,
                subscription.subscription_id,
                exc_info=True,
            )
            return False
        return True
