from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, Dict, List

from .errors import Forbidden, NotFound
from .hub import Subscription, SubscriptionHub
from .models import Reaction, ReactionType, _now_ms
from .offload import offload
from .sqlite_backend import SQLiteBackend

logger = logging.getLogger(__name__)

ReactionCounts = Dict[ReactionType, int]


def count_reactions(reactions: List[Reaction]) -> ReactionCounts:
    counts: ReactionCounts = {}
    for reaction in reactions:
        counts[reaction.type] = counts.get(reaction.type, 0) + 1
    return counts


class InMemoryReactionStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reactions: Dict[str, Dict[str, Reaction]] = {}

    def toggle(self, message_id: str, user_id: str, reaction_type: ReactionType, now_ms: int) -> Reaction | None:
        """Apply a toggle atomically and return the user's reaction afterwards."""

        with self._lock:
            by_user = self._reactions.setdefault(message_id, {})
            existing = by_user.get(user_id)
            if existing is not None and existing.type == reaction_type:
                del by_user[user_id]
                if not by_user:
                    self._reactions.pop(message_id, None)
                return None
            reaction = Reaction(message_id=message_id, user_id=user_id, type=reaction_type, created_at_ms=now_ms)
            by_user[user_id] = reaction
            return reaction

    def list(self, message_id: str) -> List[Reaction]:
        with self._lock:
            by_user = self._reactions.get(message_id, {})
            return sorted(by_user.values(), key=lambda reaction: (reaction.created_at_ms, reaction.user_id))

    def get(self, message_id: str, user_id: str) -> Reaction | None:
        with self._lock:
            return self._reactions.get(message_id, {}).get(user_id)


class SQLiteReactionStore:
    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def toggle(self, message_id: str, user_id: str, reaction_type: ReactionType, now_ms: int) -> Reaction | None:
        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                row = cursor.execute(
                    "SELECT type FROM reactions WHERE message_id=? AND user_id=?",
                    (message_id, user_id),
                ).fetchone()
                if row is not None and row[0] == reaction_type.value:
                    cursor.execute(
                        "DELETE FROM reactions WHERE message_id=? AND user_id=?",
                        (message_id, user_id),
                    )
                    conn.commit()
                    return None
                cursor.execute(
                    """
                    INSERT INTO reactions (message_id, user_id, type, created_at_ms)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(message_id, user_id) DO UPDATE SET
                        type = excluded.type,
                        created_at_ms = excluded.created_at_ms
                    """,
                    (message_id, user_id, reaction_type.value, now_ms),
                )
                conn.commit()
                return Reaction(message_id=message_id, user_id=user_id, type=reaction_type, created_at_ms=now_ms)
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def list(self, message_id: str) -> List[Reaction]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                """
                SELECT message_id, user_id, type, created_at_ms FROM reactions
                WHERE message_id=?
                ORDER BY created_at_ms ASC, user_id ASC
                """,
                (message_id,),
            ).fetchall()
        return [
            Reaction(message_id=row[0], user_id=row[1], type=ReactionType(row[2]), created_at_ms=row[3])
            for row in rows
        ]

    def get(self, message_id: str, user_id: str) -> Reaction | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT message_id, user_id, type, created_at_ms FROM reactions WHERE message_id=? AND user_id=?",
                (message_id, user_id),
            ).fetchone()
        if row is None:
            return None
        return Reaction(message_id=row[0], user_id=row[1], type=ReactionType(row[2]), created_at_ms=row[3])


class ReactionLedger:
    """One reaction per user per message, toggled atomically."""

    def __init__(self, store, log, *, hub: SubscriptionHub | None = None, now_func=_now_ms) -> None:
        self._store = store
        self._log = log
        self._hub = hub or SubscriptionHub()
        self._now = now_func
        self._publish_locks: Dict[str, asyncio.Lock] = {}

    async def toggle(self, message_id: str, user_id: str, reaction_type: ReactionType | str) -> Reaction | None:
        parsed = ReactionType.parse(reaction_type)
        message = await offload(self._log.get, message_id, action="message lookup")
        if message is None:
            raise NotFound(f"unknown message {message_id}")
        if user_id not in (message.sender_id, message.receiver_id):
            raise Forbidden("only conversation participants can react")

        async with self._publish_lock(message_id):
            reaction = await offload(
                self._store.toggle, message_id, user_id, parsed, self._now(), action="reaction toggle"
            )
            logger.debug(
                "reaction toggle message=%s user=%s type=%s result=%s",
                message_id,
                user_id,
                parsed.value,
                reaction.type.value if reaction else "removed",
            )
            if self._hub.has_subscribers(message_id):
                self._hub.broadcast(message_id, await self.get_counts(message_id))
        return reaction

    async def get_counts(self, message_id: str) -> ReactionCounts:
        reactions = await offload(self._store.list, message_id, action="reaction read")
        return count_reactions(reactions)

    async def get_mine(self, message_id: str, user_id: str) -> Reaction | None:
        return await offload(self._store.get, message_id, user_id, action="reaction read")

    async def list_reactions(self, message_id: str) -> List[Reaction]:
        return await offload(self._store.list, message_id, action="reaction read")

    async def subscribe(self, message_id: str, callback: Callable[[ReactionCounts], None]) -> Subscription:
        subscription = self._hub.subscribe(message_id, callback)
        async with self._publish_lock(message_id):
            subscription.deliver(await self.get_counts(message_id))
        return subscription

    def _publish_lock(self, message_id: str) -> asyncio.Lock:
        lock = self._publish_locks.get(message_id)
        if lock is None:
            lock = asyncio.Lock()
            self._publish_locks[message_id] = lock
        return lock
