"""Real-time messaging core: conversations, messages, delivery status and live signals."""

from .attachments import AttachmentPipeline
from .conversations import ConversationRegistry, conversation_id
from .errors import (
    Forbidden,
    MessagingError,
    NotFound,
    SendFailed,
    SubscriptionError,
    UploadFailed,
    ValidationError,
    WriteFailed,
)
from .hub import Subscription, SubscriptionHub
from .messages import MessageStore
from .models import (
    Attachment,
    Blob,
    Conversation,
    Identity,
    Message,
    MessageDraft,
    MessageKind,
    MessageStatus,
    ReactionType,
)
from .presence import PresenceTracker
from .reactions import ReactionLedger
from .runtime import Runtime, build_runtime
from .server import main, simulate
from .status import DeliveryStatusMachine
from .thread_view import ThreadView
from .typing_signal import TypingSignal

__all__ = [
    "AttachmentPipeline",
    "Attachment",
    "Blob",
    "Conversation",
    "ConversationRegistry",
    "DeliveryStatusMachine",
    "Forbidden",
    "Identity",
    "Message",
    "MessageDraft",
    "MessageKind",
    "MessageStatus",
    "MessageStore",
    "MessagingError",
    "NotFound",
    "PresenceTracker",
    "ReactionLedger",
    "ReactionType",
    "Runtime",
    "SendFailed",
    "Subscription",
    "SubscriptionError",
    "SubscriptionHub",
    "ThreadView",
    "TypingSignal",
    "UploadFailed",
    "ValidationError",
    "WriteFailed",
    "build_runtime",
    "conversation_id",
    "main",
    "simulate",
]
