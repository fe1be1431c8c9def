from __future__ import annotations

import asyncio
import logging
import re
import secrets
import time
from dataclasses import replace
from typing import Callable, Dict, List

from .conversations import conversation_id
from .crisis import contains_crisis_language
from .errors import Forbidden, NotFound, SendFailed, SubscriptionError, ValidationError, WriteFailed
from .formatting import truncate
from .hub import ErrorCallback, Subscription, SubscriptionHub
from .models import (
    ATTACHMENT_KINDS,
    Attachment,
    Message,
    MessageDraft,
    MessageKind,
    MessageStatus,
    ReplyRef,
    _now_ms,
    sort_messages,
)
from .offload import offload

logger = logging.getLogger(__name__)

URL_PATTERN = re.compile(r"https?://[^\s<>\"']+")

FeedCallback = Callable[[List[Message]], None]


class MessageIdFactory:
    """Message ids that sort in creation order within one process.

    The id leads with a nanosecond timestamp that never repeats, so messages
    sharing a millisecond still order by send order under the
    ``(created_at_ms, message_id)`` key. A random suffix keeps ids from
    separate processes apart.
    """

    def __init__(self, *, clock_ns: Callable[[], int] = time.time_ns) -> None:
        self._clock_ns = clock_ns
        self._last_ns = 0

    def __call__(self) -> str:
        self._last_ns = max(self._clock_ns(), self._last_ns + 1)
        return f"msg_{self._last_ns:020d}{secrets.token_hex(4)}"


def validate_draft(draft: MessageDraft) -> MessageDraft:
    """Check kind-specific required fields and return a normalized draft."""

    try:
        kind = MessageKind(draft.kind)
    except ValueError:
        raise ValidationError(f"unknown message kind {draft.kind!r}") from None
    if conversation_id(draft.sender_id, draft.receiver_id) != draft.conv_id:
        raise ValidationError("sender and receiver do not match the conversation")

    content = draft.content or ""
    attachment = draft.attachment
    if kind in ATTACHMENT_KINDS:
        if attachment is None or not attachment.url:
            raise ValidationError(f"{kind.value} messages require attachment.url")
    elif kind is MessageKind.LINK:
        if attachment is None or not attachment.url:
            match = URL_PATTERN.search(content)
            if match is None:
                raise ValidationError("link messages require a URL")
            attachment = Attachment(url=match.group(0))
    elif not content.strip() and attachment is None:
        raise ValidationError("text messages require content")
    return replace(draft, kind=kind, content=content, attachment=attachment)


class MessageStore:
    """Ordered, subscribable message log per conversation."""

    def __init__(
        self,
        log,
        *,
        hub: SubscriptionHub | None = None,
        now_func=_now_ms,
        resubscribe_attempts: int = 2,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._log = log
        self._hub = hub or SubscriptionHub()
        self._now = now_func
        self._resubscribe_attempts = max(0, resubscribe_attempts)
        self._new_id = id_factory or MessageIdFactory()
        self._pending: Dict[str, Message] = {}
        self._publish_locks: Dict[str, asyncio.Lock] = {}

    @property
    def log(self):
        return self._log

    async def subscribe(
        self,
        conv_id: str,
        callback: FeedCallback,
        *,
        viewer_id: str | None = None,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        """Register a live feed; ``callback`` receives the full ordered list.

        The current snapshot is delivered before this returns. Messages still
        being sent are only included when ``viewer_id`` is their sender.
        """

        subscription = self._hub.subscribe(conv_id, callback, viewer_id=viewer_id, on_error=on_error)
        try:
            async with self._publish_lock(conv_id):
                persisted = await self._read_with_retry(conv_id)
                subscription.deliver(self._visible(conv_id, persisted, viewer_id))
        except SubscriptionError:
            subscription.cancel()
            raise
        return subscription

    async def append(self, draft: MessageDraft) -> str:
        draft = validate_draft(draft)
        reply = await self._resolve_reply(draft) if draft.reply_to else None
        message = Message(
            message_id=self._new_id(),
            conv_id=draft.conv_id,
            sender_id=draft.sender_id,
            receiver_id=draft.receiver_id,
            kind=draft.kind,
            content=draft.content,
            created_at_ms=self._now(),
            status=MessageStatus.SENDING,
            attachment=draft.attachment,
            reply_to=reply,
            is_crisis=draft.kind is MessageKind.TEXT and contains_crisis_language(draft.content),
        )
        if message.is_crisis:
            logger.warning("crisis language flagged message=%s conv=%s", message.message_id, message.conv_id)
        self._pending[message.message_id] = message
        await self.notify_changed(message.conv_id)
        await self._persist(message)
        return message.message_id

    async def retry_send(self, message_id: str) -> str:
        message = self._pending.get(message_id)
        if message is None:
            raise NotFound(f"no pending message {message_id}")
        await self._persist(message)
        return message_id

    async def discard_pending(self, message_id: str) -> None:
        message = self._pending.pop(message_id, None)
        if message is None:
            raise NotFound(f"no pending message {message_id}")
        logger.info("discarded pending message=%s conv=%s", message_id, message.conv_id)
        await self.notify_changed(message.conv_id)

    def pending(self, conv_id: str) -> List[Message]:
        return sort_messages(m for m in self._pending.values() if m.conv_id == conv_id)

    async def edit(self, message_id: str, editor_id: str, new_content: str) -> Message:
        message = await self._require(message_id)
        if message.sender_id != editor_id:
            raise Forbidden("only the sender can edit a message")
        if message.kind is not MessageKind.TEXT:
            raise Forbidden("only text messages can be edited")
        if message.is_tombstone:
            raise Forbidden("deleted messages cannot be edited")
        if not new_content or not new_content.strip():
            raise ValidationError("edited content must not be empty")

        updated = replace(
            message,
            content=new_content,
            edited_at_ms=self._now(),
            is_crisis=contains_crisis_language(new_content),
        )
        stored = await offload(self._log.update, updated, action="message edit")
        await self.notify_changed(message.conv_id)
        return stored

    async def soft_delete(self, message_id: str, actor_id: str) -> Message:
        message = await self._require(message_id)
        if message.sender_id != actor_id:
            raise Forbidden("only the sender can delete a message")
        if message.is_tombstone:
            return message

        tombstone = replace(message, content="", attachment=None, deleted_at_ms=self._now())
        stored = await offload(self._log.update, tombstone, action="message delete")
        logger.info("soft-deleted message=%s conv=%s", message_id, message.conv_id)
        await self.notify_changed(message.conv_id)
        return stored

    async def get(self, message_id: str) -> Message:
        return await self._require(message_id)

    async def list_messages(self, conv_id: str) -> List[Message]:
        return await offload(self._log.list_conversation, conv_id, action="message read")

    async def search(self, conv_id: str, term: str) -> List[Message]:
        if not term or not term.strip():
            return []
        return await offload(self._log.search, conv_id, term.strip(), action="message search")

    async def replies(self, message_id: str) -> List[Message]:
        await self._require(message_id)
        return await offload(self._log.replies, message_id, action="reply read")

    async def notify_changed(self, conv_id: str) -> None:
        """Push the current ordered sequence to every live feed of ``conv_id``."""

        if not self._hub.has_subscribers(conv_id):
            return
        async with self._publish_lock(conv_id):
            try:
                persisted = await self._read_with_retry(conv_id)
            except SubscriptionError as error:
                for subscription in self._hub.subscribers(conv_id):
                    subscription.fail(error)
                return
            for subscription in self._hub.subscribers(conv_id):
                subscription.deliver(self._visible(conv_id, persisted, subscription.viewer_id))

    async def _persist(self, message: Message) -> None:
        try:
            await offload(self._log.insert, replace(message, status=MessageStatus.SENT), action="message write")
        except WriteFailed as exc:
            logger.warning("message=%s conv=%s left pending: %s", message.message_id, message.conv_id, exc)
            raise SendFailed(message.message_id, str(exc)) from exc
        self._pending.pop(message.message_id, None)
        logger.debug("persisted message=%s conv=%s", message.message_id, message.conv_id)
        await self.notify_changed(message.conv_id)

    async def _resolve_reply(self, draft: MessageDraft) -> ReplyRef:
        target = await offload(self._log.get, draft.reply_to, action="reply lookup")
        if target is None or target.conv_id != draft.conv_id:
            raise NotFound(f"reply target {draft.reply_to} not found in {draft.conv_id}")
        return ReplyRef(
            message_id=target.message_id,
            sender_id=target.sender_id,
            sender_name=draft.reply_sender_name or target.sender_id,
            snippet="" if target.is_tombstone else truncate(target.content),
            kind=target.kind,
        )

    async def _require(self, message_id: str) -> Message:
        message = await offload(self._log.get, message_id, action="message lookup")
        if message is None:
            raise NotFound(f"unknown message {message_id}")
        return message

    async def _read_with_retry(self, conv_id: str) -> List[Message]:
        attempts = self._resubscribe_attempts + 1
        last_error: Exception | None = None
        for attempt in range(attempts):
            try:
                return await offload(self._log.list_conversation, conv_id, action="feed read")
            except WriteFailed as exc:
                last_error = exc
                logger.warning("feed read for %s failed (attempt %s/%s): %s", conv_id, attempt + 1, attempts, exc)
        raise SubscriptionError(conv_id, str(last_error))

    def _visible(self, conv_id: str, persisted: List[Message], viewer_id: str | None) -> List[Message]:
        if viewer_id is None:
            return list(persisted)
        persisted_ids = {message.message_id for message in persisted}
        local = [
            message
            for message in self._pending.values()
            if message.conv_id == conv_id
            and message.sender_id == viewer_id
            and message.message_id not in persisted_ids
        ]
        if not local:
            return list(persisted)
        return sort_messages(list(persisted) + local)

    def _publish_lock(self, conv_id: str) -> asyncio.Lock:
        lock = self._publish_locks.get(conv_id)
        if lock is None:
            lock = asyncio.Lock()
            self._publish_locks[conv_id] = lock
        return lock
