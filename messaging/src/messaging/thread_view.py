from __future__ import annotations

import asyncio
import logging
from typing import Callable, FrozenSet, List

from .errors import SubscriptionError, ValidationError
from .hub import Subscription
from .models import Blob, Identity, Message, MessageDraft, MessageKind, MessageStatus, PresenceSnapshot
from .recording import AudioStream, VoiceRecorder
from .runtime import Runtime

logger = logging.getLogger(__name__)

TYPING_REFRESH_MS = 1_000
TYPING_IDLE_MS = 3_000


class ThreadView:
    """State behind one open conversation screen.

    ``open`` attaches the message feed, the other participant's typing and
    presence, and marks everything addressed to the viewer as read. Messages
    arriving while the view is open are marked read as they land. ``close``
    cancels every subscription, the idle-typing timer and the recorder.
    """

    def __init__(
        self,
        runtime: Runtime,
        identity: Identity,
        other_user_id: str,
        *,
        other_display_name: str | None = None,
        open_stream: Callable[[], AudioStream] | None = None,
    ) -> None:
        self._runtime = runtime
        self.identity = identity
        self.other_user_id = other_user_id
        self.other_display_name = other_display_name or other_user_id
        self.conv_id = runtime.conversations.get_or_create_id(identity.user_id, other_user_id)

        self.messages: List[Message] = []
        self.typing_users: FrozenSet[str] = frozenset()
        self.other_presence: PresenceSnapshot | None = None
        self.stale: SubscriptionError | None = None

        self._subscriptions: List[Subscription] = []
        self._recorder = VoiceRecorder(open_stream, now_func=runtime.now) if open_stream else None
        self._read_task: asyncio.Task | None = None
        self._last_typing_ms: int | None = None
        self._idle_timer: asyncio.TimerHandle | None = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        return bool(self._subscriptions)

    @property
    def other_is_typing(self) -> bool:
        return self.other_user_id in self.typing_users

    async def open(self) -> None:
        if self._closed:
            raise ValidationError("thread view is closed")
        if self.is_open:
            return
        me = self.identity.user_id
        runtime = self._runtime
        self._subscriptions.append(
            await runtime.messages.subscribe(
                self.conv_id, self._on_messages, viewer_id=me, on_error=self._on_feed_error
            )
        )
        self._subscriptions.append(runtime.typing.subscribe(self.conv_id, self._on_typing, exclude_user_id=me))
        self._subscriptions.append(runtime.presence.subscribe(self.other_user_id, self._on_presence))
        self._read_task = asyncio.get_running_loop().create_task(self._mark_read())
        await self._read_task

    async def send_text(self, text: str) -> str:
        self._stop_typing()
        return await self._runtime.messages.append(self._draft(content=text))

    async def send_link(self, url: str) -> str:
        self._stop_typing()
        return await self._runtime.messages.append(self._draft(kind=MessageKind.LINK, content=url))

    async def send_attachment(self, blob: Blob, kind: MessageKind | str, *, caption: str = "") -> str:
        """Upload ``blob`` and append a message pointing at the stored copy."""

        attachment = await self._runtime.attachments.upload(self.identity.user_id, blob, kind)
        self._stop_typing()
        return await self._runtime.messages.append(
            self._draft(kind=MessageKind(kind), content=caption, attachment=attachment)
        )

    async def reply(self, target_message_id: str, text: str) -> str:
        self._stop_typing()
        draft = self._draft(
            content=text,
            reply_to=target_message_id,
            reply_sender_name=self._display_name_for(target_message_id),
        )
        return await self._runtime.messages.append(draft)

    def input_changed(self, text: str) -> None:
        """Feed composer changes; emits throttled typing signals."""

        if not text:
            self._stop_typing()
            return
        now_ms = self._runtime.now()
        if self._last_typing_ms is None or now_ms - self._last_typing_ms >= TYPING_REFRESH_MS:
            self._runtime.typing.signal(self.conv_id, self.identity.user_id)
            self._last_typing_ms = now_ms
        self._reset_idle_timer()

    def start_recording(self) -> None:
        if self._recorder is None:
            raise ValidationError("no microphone available")
        self._recorder.start()

    def cancel_recording(self) -> None:
        if self._recorder is not None:
            self._recorder.cancel()

    async def send_recording(self) -> str:
        if self._recorder is None:
            raise ValidationError("no microphone available")
        blob = self._recorder.stop()
        return await self.send_attachment(blob, MessageKind.AUDIO)

    async def settle(self) -> None:
        """Wait for any in-flight read acknowledgement to finish."""

        if self._read_task is not None:
            await self._read_task

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions.clear()
        self._stop_typing()
        if self._recorder is not None:
            self._recorder.close()
        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass

    async def __aenter__(self) -> "ThreadView":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _draft(self, **fields) -> MessageDraft:
        return MessageDraft(
            conv_id=self.conv_id,
            sender_id=self.identity.user_id,
            receiver_id=self.other_user_id,
            **fields,
        )

    def _display_name_for(self, message_id: str) -> str | None:
        for message in self.messages:
            if message.message_id == message_id:
                if message.sender_id == self.identity.user_id:
                    return self.identity.display_name
                return self.other_display_name
        return None

    def _on_messages(self, messages: List[Message]) -> None:
        self.messages = messages
        self.stale = None
        if self.is_open and self._has_unread() and (self._read_task is None or self._read_task.done()):
            self._read_task = asyncio.get_running_loop().create_task(self._mark_read())

    def _on_feed_error(self, error: SubscriptionError) -> None:
        logger.warning("thread view conv=%s is stale: %s", self.conv_id, error.reason)
        self.stale = error

    def _on_typing(self, users: FrozenSet[str]) -> None:
        self.typing_users = users

    def _on_presence(self, snapshot: PresenceSnapshot) -> None:
        self.other_presence = snapshot

    def _has_unread(self) -> bool:
        me = self.identity.user_id
        return any(
            message.receiver_id == me and message.status.is_before(MessageStatus.READ) for message in self.messages
        )

    async def _mark_read(self) -> None:
        while not self._closed and self._has_unread():
            changed = await self._runtime.statuses.mark_read(self.conv_id, self.identity.user_id)
            if not changed:
                return

    def _reset_idle_timer(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._idle_timer = None
            return
        self._idle_timer = loop.call_later(TYPING_IDLE_MS / 1000, self._stop_typing)

    def _stop_typing(self) -> None:
        if self._idle_timer is not None:
            self._idle_timer.cancel()
            self._idle_timer = None
        if self._last_typing_ms is not None:
            self._last_typing_ms = None
            self._runtime.typing.clear(self.conv_id, self.identity.user_id)
