from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[List[Any]], None]
ErrorCallback = Callable[[Exception], None]


@dataclass(eq=False)
class Subscription:
    """A live listener on one topic. ``cancel()`` may be called any number of times."""

    topic: str
    on_snapshot: SnapshotCallback
    on_error: Optional[ErrorCallback] = None
    active: bool = True
    _hub: Optional["SubscriptionHub"] = field(default=None, repr=False)

    def deliver(self, snapshot: List[Any]) -> None:
        if self.active:
            self.on_snapshot(snapshot)

    def fail(self, error: Exception) -> None:
        if not self.active:
            return
        self.active = False
        if self.on_error is not None:
            self.on_error(error)
        else:
            logger.error("subscription on %s failed without an error handler: %s", self.topic, error)

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._hub is not None:
            self._hub.unsubscribe(self)


class SubscriptionHub:
    """Registers subscriptions per topic and broadcasts snapshots to all listeners."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(
        self,
        topic: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        subscription = Subscription(topic=topic, on_snapshot=on_snapshot, on_error=on_error, _hub=self)
        self._subscriptions.setdefault(topic, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        subs = self._subscriptions.get(subscription.topic)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.topic, None)

    def has_listeners(self, topic: str) -> bool:
        return bool(self._subscriptions.get(topic))

    def listener_count(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, []))

    def broadcast(self, topic: str, snapshot: List[Any]) -> None:
        for subscription in list(self._subscriptions.get(topic, [])):
            subscription.deliver(list(snapshot))

    def fail(self, topic: str, error: Exception) -> None:
        """Deliver ``error`` once to every listener of ``topic`` and drop them."""

        subs = self._subscriptions.pop(topic, [])
        for subscription in subs:
            subscription.fail(error)
