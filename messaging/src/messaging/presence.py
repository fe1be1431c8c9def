from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List

from .hub import Subscription, SubscriptionHub
from .models import PresenceSnapshot, _now_ms

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Online flag and last-seen timestamp per user.

    ``last_seen_ms`` only changes on an online -> offline transition and is
    clamped so it is never in the future. Formatting for display belongs to
    the consumer (see ``messaging.formatting.describe_presence``).
    """

    def __init__(self, *, hub: SubscriptionHub | None = None, now_func=_now_ms) -> None:
        self._now = now_func
        self._hub = hub or SubscriptionHub()
        self._states: Dict[str, PresenceSnapshot] = {}
        self._sessions: Dict[str, int] = {}

    def get(self, user_id: str) -> PresenceSnapshot:
        return self._states.get(user_id) or PresenceSnapshot(user_id=user_id, is_online=False, last_seen_ms=None)

    def set_online(self, user_id: str) -> PresenceSnapshot:
        prior = self.get(user_id)
        if prior.is_online:
            return prior
        snapshot = PresenceSnapshot(user_id=user_id, is_online=True, last_seen_ms=prior.last_seen_ms)
        self._update(snapshot)
        return snapshot

    def set_offline(self, user_id: str, last_seen_ms: int | None = None) -> PresenceSnapshot:
        prior = self.get(user_id)
        if not prior.is_online:
            return prior
        now_ms = self._now()
        seen_ms = now_ms if last_seen_ms is None else min(last_seen_ms, now_ms)
        snapshot = PresenceSnapshot(user_id=user_id, is_online=False, last_seen_ms=seen_ms)
        self._update(snapshot)
        return snapshot

    @contextmanager
    def session(self, user_id: str) -> Iterator[PresenceSnapshot]:
        """Hold the user online for the lifetime of one connected session.

        Users with several sessions stay online until the last one ends.
        """

        self._sessions[user_id] = self._sessions.get(user_id, 0) + 1
        try:
            yield self.set_online(user_id)
        finally:
            remaining = self._sessions.get(user_id, 1) - 1
            if remaining > 0:
                self._sessions[user_id] = remaining
            else:
                self._sessions.pop(user_id, None)
                self.set_offline(user_id)

    def subscribe(self, user_id: str, callback: Callable[[PresenceSnapshot], None]) -> Subscription:
        subscription = self._hub.subscribe(user_id, callback)
        subscription.deliver(self.get(user_id))
        return subscription

    def online_users(self) -> List[str]:
        return sorted(user_id for user_id, state in self._states.items() if state.is_online)

    def _update(self, snapshot: PresenceSnapshot) -> None:
        self._states[snapshot.user_id] = snapshot
        logger.debug("presence user=%s online=%s", snapshot.user_id, snapshot.is_online)
        self._hub.broadcast(snapshot.user_id, snapshot)
