from __future__ import annotations

import logging
from typing import List

from .conversations import participants_of
from .errors import Forbidden, NotFound
from .messages import MessageStore
from .models import MessageStatus, statuses_between
from .offload import offload

logger = logging.getLogger(__name__)


class DeliveryStatusMachine:
    """Forward-only ``sending -> sent -> delivered -> read`` progression.

    Backward transitions are ignored so late or duplicated acknowledgements
    are harmless. Every intermediate state is written and published, so the
    sender's feed never skips one.
    """

    def __init__(self, store: MessageStore) -> None:
        self._store = store
        self._log = store.log

    async def advance(self, message_id: str, recipient_id: str, target: MessageStatus | str) -> bool:
        target = MessageStatus.parse(target)
        message = await offload(self._log.get, message_id, action="message lookup")
        if message is None:
            raise NotFound(f"unknown message {message_id}")
        if message.receiver_id != recipient_id:
            raise Forbidden("only the recipient can acknowledge a message")
        if not message.status.is_before(target):
            logger.debug("ignored status %s -> %s for message=%s", message.status.value, target.value, message_id)
            return False

        advanced = False
        for step in statuses_between(message.status, target):
            if await offload(self._log.advance_status, message_id, step, action="status write"):
                advanced = True
                await self._store.notify_changed(message.conv_id)
        return advanced

    async def mark_delivered(self, conv_id: str, recipient_id: str) -> List[str]:
        """Acknowledge receipt of everything addressed to ``recipient_id``."""

        self._require_participant(conv_id, recipient_id)
        return await self._advance_all(conv_id, recipient_id, MessageStatus.DELIVERED)

    async def mark_read(self, conv_id: str, reader_id: str) -> List[str]:
        """Bulk-mark the conversation read; call when the reader opens the thread."""

        self._require_participant(conv_id, reader_id)
        await self._advance_all(conv_id, reader_id, MessageStatus.DELIVERED)
        changed = await self._advance_all(conv_id, reader_id, MessageStatus.READ)
        if changed:
            logger.info("marked %s message(s) read conv=%s reader=%s", len(changed), conv_id, reader_id)
        return changed

    async def _advance_all(self, conv_id: str, recipient_id: str, target: MessageStatus) -> List[str]:
        changed = await offload(
            self._log.advance_statuses, conv_id, recipient_id, target, action="status write"
        )
        if changed:
            await self._store.notify_changed(conv_id)
        return changed

    @staticmethod
    def _require_participant(conv_id: str, user_id: str) -> None:
        if user_id not in participants_of(conv_id):
            raise Forbidden(f"{user_id} is not part of {conv_id}")
