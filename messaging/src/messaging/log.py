from __future__ import annotations

import threading
from dataclasses import replace
from typing import Dict, List, Tuple

from .models import Conversation, Message, MessageStatus, sort_messages


class InMemoryMessageLog:
    """In-memory message log that owns the denormalized conversation previews.

    Every write that can change what a conversation preview shows updates
    the preview under the same lock, so readers never see a preview that
    disagrees with the log.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._messages: Dict[str, Message] = {}
        self._by_conv: Dict[str, List[str]] = {}
        self._conversations: Dict[str, Conversation] = {}

    def insert(self, message: Message) -> Tuple[Message, bool]:
        """Persist ``message`` and its conversation preview in one step.

        Returns the stored message and whether it was newly created; a
        repeated insert of the same ``message_id`` returns the original.
        """

        with self._lock:
            existing = self._messages.get(message.message_id)
            if existing is not None:
                return existing, False
            self._messages[message.message_id] = message
            self._by_conv.setdefault(message.conv_id, []).append(message.message_id)
            conversation = self._conversations.get(message.conv_id)
            if conversation is None:
                conversation = Conversation(
                    conv_id=message.conv_id,
                    participant_ids=tuple(sorted((message.sender_id, message.receiver_id))),
                    created_at_ms=message.created_at_ms,
                )
            self._conversations[message.conv_id] = self._with_latest_preview(conversation)
            return message, True

    def update(self, message: Message) -> Message:
        """Merge the editable fields of ``message``; status is left untouched."""

        with self._lock:
            current = self._messages.get(message.message_id)
            if current is None:
                raise KeyError(message.message_id)
            merged = replace(
                current,
                content=message.content,
                attachment=message.attachment,
                edited_at_ms=message.edited_at_ms,
                deleted_at_ms=message.deleted_at_ms,
                is_crisis=message.is_crisis,
            )
            self._messages[message.message_id] = merged
            conversation = self._conversations[message.conv_id]
            self._conversations[message.conv_id] = self._with_latest_preview(conversation)
            return merged

    def get(self, message_id: str) -> Message | None:
        with self._lock:
            return self._messages.get(message_id)

    def list_conversation(self, conv_id: str) -> List[Message]:
        with self._lock:
            return self._ordered(conv_id)

    def advance_statuses(self, conv_id: str, recipient_id: str, target: MessageStatus) -> List[str]:
        """Move every message addressed to ``recipient_id`` below ``target`` up to it."""

        changed: List[str] = []
        with self._lock:
            for message in self._ordered(conv_id):
                if message.receiver_id != recipient_id or not message.status.is_before(target):
                    continue
                self._messages[message.message_id] = replace(message, status=target)
                changed.append(message.message_id)
        return changed

    def advance_status(self, message_id: str, target: MessageStatus) -> bool:
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                raise KeyError(message_id)
            if not message.status.is_before(target):
                return False
            self._messages[message_id] = replace(message, status=target)
            return True

    def get_conversation(self, conv_id: str) -> Conversation | None:
        with self._lock:
            return self._conversations.get(conv_id)

    def conversations_for(self, user_id: str) -> List[Conversation]:
        with self._lock:
            items = [conv for conv in self._conversations.values() if user_id in conv.participant_ids]
        return sorted(items, key=lambda conv: (-conv.updated_at_ms, conv.conv_id))

    def unread_count(self, conv_id: str, user_id: str) -> int:
        with self._lock:
            return sum(
                1
                for message in self._ordered(conv_id)
                if message.receiver_id == user_id
                and message.status.is_before(MessageStatus.READ)
                and not message.is_tombstone
            )

    def search(self, conv_id: str, term: str) -> List[Message]:
        needle = term.lower()
        with self._lock:
            return [
                message
                for message in self._ordered(conv_id)
                if not message.is_tombstone and needle in message.content.lower()
            ]

    def replies(self, message_id: str) -> List[Message]:
        with self._lock:
            target = self._messages.get(message_id)
            if target is None:
                return []
            return [
                message
                for message in self._ordered(target.conv_id)
                if message.reply_to is not None and message.reply_to.message_id == message_id
            ]

    def _ordered(self, conv_id: str) -> List[Message]:
        return sort_messages(self._messages[mid] for mid in self._by_conv.get(conv_id, []))

    def _with_latest_preview(self, conversation: Conversation) -> Conversation:
        ordered = self._ordered(conversation.conv_id)
        latest = ordered[-1].preview() if ordered else None
        return replace(conversation, last_message=latest)
