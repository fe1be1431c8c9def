from __future__ import annotations

import asyncio
import logging
import weakref
from typing import Callable, Dict, FrozenSet

from .config import DEFAULT_TYPING_TTL_MS
from .hub import Subscription, SubscriptionHub
from .models import TypingEvent, _now_ms

logger = logging.getLogger(__name__)

TypingCallback = Callable[[FrozenSet[str]], None]


class TypingSignal:
    """Ephemeral "is typing" broadcast.

    Membership is decided when the set is read: a user is typing while their
    last signal is younger than the TTL. Nothing is deleted on a schedule;
    the only timer is one re-read per watched conversation at the earliest
    expiry so feeds learn that somebody stopped typing.
    """

    def __init__(self, *, ttl_ms: int = DEFAULT_TYPING_TTL_MS, now_func=_now_ms) -> None:
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        self.ttl_ms = ttl_ms
        self._now = now_func
        self._hub = SubscriptionHub(on_empty=self._cancel_timer)
        self._events: Dict[str, Dict[str, TypingEvent]] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._last_delivered: "weakref.WeakKeyDictionary[Subscription, FrozenSet[str]]" = weakref.WeakKeyDictionary()

    def signal(self, conv_id: str, user_id: str) -> TypingEvent:
        event = TypingEvent(conv_id=conv_id, user_id=user_id, expires_at_ms=self._now() + self.ttl_ms)
        self._events.setdefault(conv_id, {})[user_id] = event
        self._publish(conv_id)
        return event

    def clear(self, conv_id: str, user_id: str) -> None:
        events = self._events.get(conv_id)
        if events is None or events.pop(user_id, None) is None:
            return
        if not events:
            self._events.pop(conv_id, None)
        self._publish(conv_id)

    def typing_users(self, conv_id: str, *, exclude: str | None = None) -> FrozenSet[str]:
        now_ms = self._now()
        events = self._events.get(conv_id)
        if not events:
            return frozenset()
        for user_id, event in list(events.items()):
            if not event.is_live(now_ms):
                del events[user_id]
        if not events:
            self._events.pop(conv_id, None)
        return frozenset(user_id for user_id in events if user_id != exclude)

    def subscribe(
        self,
        conv_id: str,
        callback: TypingCallback,
        *,
        exclude_user_id: str | None = None,
    ) -> Subscription:
        subscription = self._hub.subscribe(conv_id, callback, viewer_id=exclude_user_id)
        self._deliver(subscription, self.typing_users(conv_id, exclude=exclude_user_id), force=True)
        self._schedule_recheck(conv_id)
        return subscription

    def close(self) -> None:
        self._hub.close()
        for conv_id in list(self._timers):
            self._cancel_timer(conv_id)

    def _publish(self, conv_id: str) -> None:
        for subscription in self._hub.subscribers(conv_id):
            self._deliver(subscription, self.typing_users(conv_id, exclude=subscription.viewer_id))
        self._schedule_recheck(conv_id)

    def _deliver(self, subscription: Subscription, users: FrozenSet[str], *, force: bool = False) -> None:
        if not force and self._last_delivered.get(subscription) == users:
            return
        self._last_delivered[subscription] = users
        subscription.deliver(users)

    def _schedule_recheck(self, conv_id: str) -> None:
        self._cancel_timer(conv_id)
        events = self._events.get(conv_id)
        if not events or not self._hub.has_subscribers(conv_id):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        earliest = min(event.expires_at_ms for event in events.values())
        delay_s = max(0, earliest - self._now()) / 1000
        self._timers[conv_id] = loop.call_later(delay_s, self._on_expiry, conv_id)

    def _on_expiry(self, conv_id: str) -> None:
        self._timers.pop(conv_id, None)
        self._publish(conv_id)

    def _cancel_timer(self, conv_id: str) -> None:
        handle = self._timers.pop(conv_id, None)
        if handle is not None:
            handle.cancel()
