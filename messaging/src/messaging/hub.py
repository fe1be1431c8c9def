from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from .errors import SubscriptionError


Callback = Callable[[Any], None]
ErrorCallback = Callable[[SubscriptionError], None]

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Subscription:
    topic: str
    callback: Callback
    viewer_id: str | None = None
    on_error: ErrorCallback | None = None
    active: bool = True
    stale: bool = False
    _hub: "SubscriptionHub | None" = field(default=None, repr=False)

    def deliver(self, payload: Any) -> None:
        if not self.active:
            return
        self.stale = False
        self.callback(payload)

    def fail(self, error: SubscriptionError) -> None:
        if not self.active or self.stale:
            return
        self.stale = True
        if self.on_error is None:
            logger.error("subscription to %s is stale: %s", self.topic, error.reason)
            return
        self.on_error(error)

    def cancel(self) -> None:
        """Stop the feed. Safe to call repeatedly; nothing is delivered afterwards."""

        if self._hub is not None:
            self._hub.unsubscribe(self)
        self.active = False


class SubscriptionHub:
    """Registers subscriptions per topic and broadcasts payloads to all listeners."""

    def __init__(self, *, on_empty: Callable[[str], None] | None = None) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._on_empty = on_empty

    def subscribe(
        self,
        topic: str,
        callback: Callback,
        *,
        viewer_id: str | None = None,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        subscription = Subscription(topic=topic, callback=callback, viewer_id=viewer_id, on_error=on_error, _hub=self)
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
            if self._on_empty is not None:
                self._on_empty(subscription.topic)

    def subscribers(self, topic: str) -> List[Subscription]:
        return list(self._subscriptions.get(topic, []))

    def has_subscribers(self, topic: str) -> bool:
        return bool(self._subscriptions.get(topic))

    def broadcast(self, topic: str, payload: Any) -> None:
        for subscription in self.subscribers(topic):
            subscription.deliver(payload)

    def close(self) -> None:
        for subs in list(self._subscriptions.values()):
            for subscription in list(subs):
                self.unsubscribe(subscription)
