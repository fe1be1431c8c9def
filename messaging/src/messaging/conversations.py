from __future__ import annotations

from typing import List, Tuple

from .errors import NotFound, ValidationError
from .models import Conversation
from .offload import offload

CONV_ID_SEPARATOR = "_"


def conversation_id(user_a: str, user_b: str) -> str:
    """Canonical id for the conversation between two users.

    A pure function of the unordered pair, so either participant derives
    the same id without a lookup.
    """

    participants = _validate_pair(user_a, user_b)
    return CONV_ID_SEPARATOR.join(participants)


def _validate_pair(user_a: str, user_b: str) -> Tuple[str, str]:
    if not isinstance(user_a, str) or not isinstance(user_b, str):
        raise ValidationError("user ids must be strings")
    first, second = user_a.strip(), user_b.strip()
    if not first or not second:
        raise ValidationError("both user ids are required")
    if first == second:
        raise ValidationError("a conversation needs two distinct users")
    if CONV_ID_SEPARATOR in first or CONV_ID_SEPARATOR in second:
        raise ValidationError(f"user ids must not contain {CONV_ID_SEPARATOR!r}")
    return tuple(sorted((first, second)))


def participants_of(conv_id: str) -> Tuple[str, str]:
    parts = conv_id.split(CONV_ID_SEPARATOR)
    if len(parts) != 2 or not all(parts):
        raise ValidationError(f"malformed conversation id {conv_id!r}")
    return parts[0], parts[1]


class ConversationRegistry:
    """Conversation identity and per-user listings with last-message previews.

    Conversations are created lazily by the first append; the preview is
    maintained by the message log in the same write as the message.
    """

    def __init__(self, log) -> None:
        self._log = log

    def get_or_create_id(self, user_a: str, user_b: str) -> str:
        return conversation_id(user_a, user_b)

    def other_participant(self, conv_id: str, user_id: str) -> str:
        first, second = participants_of(conv_id)
        if user_id not in (first, second):
            raise NotFound(f"{user_id} is not part of {conv_id}")
        return second if user_id == first else first

    async def list_for_user(self, user_id: str) -> List[Conversation]:
        if not user_id:
            raise ValidationError("user id is required")
        return await offload(self._log.conversations_for, user_id, action="conversation list")

    async def get(self, conv_id: str) -> Conversation:
        conversation = await offload(self._log.get_conversation, conv_id, action="conversation read")
        if conversation is None:
            raise NotFound(f"unknown conversation {conv_id}")
        return conversation

    async def unread_count(self, conv_id: str, user_id: str) -> int:
        return await offload(self._log.unread_count, conv_id, user_id, action="unread count")
