from __future__ import annotations


class MessagingError(Exception):
    """Base class for every error raised by the messaging core."""


class ValidationError(MessagingError):
    pass


class Forbidden(MessagingError):
    pass


class NotFound(MessagingError):
    pass


class UploadFailed(MessagingError):
    pass


class WriteFailed(MessagingError):
    pass


class SendFailed(WriteFailed):
    """A message could not be persisted and is still pending as ``sending``.

    The pending copy stays visible to its sender until the caller either
    retries (``MessageStore.retry_send``) or discards it
    (``MessageStore.discard_pending``).
    """

    def __init__(self, message_id: str, reason: str) -> None:
        super().__init__(f"message {message_id} not sent: {reason}")
        self.message_id = message_id
        self.reason = reason


class SubscriptionError(MessagingError):
    """A live feed dropped and could not be re-established; the view is stale."""

    def __init__(self, topic: str, reason: str) -> None:
        super().__init__(f"subscription to {topic} is stale: {reason}")
        self.topic = topic
        self.reason = reason
