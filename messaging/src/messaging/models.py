"""Domain types shared by the messaging components."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Tuple

from .errors import ValidationError


def _now_ms() -> int:
    return int(time.time() * 1000)


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    AUDIO = "audio"
    LINK = "link"


ATTACHMENT_KINDS = frozenset({MessageKind.IMAGE, MessageKind.FILE, MessageKind.AUDIO})


class MessageStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    def is_before(self, other: "MessageStatus") -> bool:
        return self.rank < other.rank

    @classmethod
    def parse(cls, raw: "str | MessageStatus") -> "MessageStatus":
        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            raise ValidationError(f"unknown message status: {raw!r}") from None


_STATUS_ORDER = (MessageStatus.SENDING, MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ)


def statuses_between(current: MessageStatus, target: MessageStatus) -> Tuple[MessageStatus, ...]:
    """Return the states after ``current`` up to and including ``target``."""

    return _STATUS_ORDER[current.rank + 1 : target.rank + 1]


class ReactionType(str, Enum):
    LIKE = "like"
    LOVE = "love"
    CARE = "care"
    SUPPORT = "support"
    SAD = "sad"
    ANGRY = "angry"

    @classmethod
    def parse(cls, raw: "str | ReactionType") -> "ReactionType":
        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            raise ValidationError(f"unknown reaction type: {raw!r}") from None


REACTION_LABELS: Dict[ReactionType, str] = {
    ReactionType.LIKE: "Like",
    ReactionType.LOVE: "Love",
    ReactionType.CARE: "Care",
    ReactionType.SUPPORT: "Support",
    ReactionType.SAD: "Sad",
    ReactionType.ANGRY: "Angry",
}

FALLBACK_REACTION_LABEL = "Reaction"


def reaction_label(raw: str) -> str:
    try:
        return REACTION_LABELS[ReactionType(raw)]
    except ValueError:
        return FALLBACK_REACTION_LABEL


class FileCategory(str, Enum):
    PDF = "pdf"
    DOCUMENT = "document"
    SPREADSHEET = "spreadsheet"
    IMAGE = "image"
    AUDIO = "audio"
    GENERIC = "generic"


_EXTENSION_CATEGORIES: Dict[str, FileCategory] = {
    "pdf": FileCategory.PDF,
    "doc": FileCategory.DOCUMENT,
    "docx": FileCategory.DOCUMENT,
    "txt": FileCategory.DOCUMENT,
    "xls": FileCategory.SPREADSHEET,
    "xlsx": FileCategory.SPREADSHEET,
    "csv": FileCategory.SPREADSHEET,
    "jpg": FileCategory.IMAGE,
    "jpeg": FileCategory.IMAGE,
    "png": FileCategory.IMAGE,
    "gif": FileCategory.IMAGE,
    "webp": FileCategory.IMAGE,
    "webm": FileCategory.AUDIO,
    "mp3": FileCategory.AUDIO,
    "ogg": FileCategory.AUDIO,
    "m4a": FileCategory.AUDIO,
    "wav": FileCategory.AUDIO,
}


def file_extension(file_name: str | None) -> str:
    if not file_name or "." not in file_name:
        return ""
    return file_name.rsplit(".", 1)[1].lower()


def categorize_file(file_name: str | None) -> FileCategory:
    return _EXTENSION_CATEGORIES.get(file_extension(file_name), FileCategory.GENERIC)


@dataclass(frozen=True)
class Identity:
    """Current user as provided by the authentication collaborator."""

    user_id: str
    display_name: str


@dataclass(frozen=True)
class Blob:
    data: bytes
    file_name: str | None = None
    content_type: str | None = None
    # Measured while recording; carried through upload untouched.
    duration: str | None = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class Attachment:
    url: str
    file_name: str | None = None
    file_size: int | None = None
    duration: str | None = None
    content_type: str | None = None
    category: FileCategory = FileCategory.GENERIC
    path: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "duration": self.duration,
            "content_type": self.content_type,
            "category": self.category.value,
            "path": self.path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attachment":
        return cls(
            url=data["url"],
            file_name=data.get("file_name"),
            file_size=data.get("file_size"),
            duration=data.get("duration"),
            content_type=data.get("content_type"),
            category=FileCategory(data.get("category") or FileCategory.GENERIC.value),
            path=data.get("path"),
        )


@dataclass(frozen=True)
class ReplyRef:
    message_id: str
    sender_id: str
    sender_name: str
    snippet: str
    kind: MessageKind

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "sender_id": self.sender_id,
            "sender_name": self.sender_name,
            "snippet": self.snippet,
            "kind": self.kind.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReplyRef":
        return cls(
            message_id=data["message_id"],
            sender_id=data["sender_id"],
            sender_name=data["sender_name"],
            snippet=data["snippet"],
            kind=MessageKind(data["kind"]),
        )


@dataclass(frozen=True)
class MessageDraft:
    """What a client submits to ``MessageStore.append``."""

    conv_id: str
    sender_id: str
    receiver_id: str
    kind: MessageKind = MessageKind.TEXT
    content: str = ""
    attachment: Attachment | None = None
    reply_to: str | None = None
    reply_sender_name: str | None = None


@dataclass(frozen=True)
class LastMessage:
    message_id: str
    content: str
    sender_id: str
    timestamp_ms: int
    kind: MessageKind


@dataclass(frozen=True)
class Message:
    message_id: str
    conv_id: str
    sender_id: str
    receiver_id: str
    kind: MessageKind
    content: str
    created_at_ms: int
    status: MessageStatus = MessageStatus.SENDING
    attachment: Attachment | None = None
    reply_to: ReplyRef | None = None
    edited_at_ms: int | None = None
    deleted_at_ms: int | None = None
    is_crisis: bool = False

    @property
    def sort_key(self) -> Tuple[int, str]:
        return (self.created_at_ms, self.message_id)

    @property
    def is_tombstone(self) -> bool:
        return self.deleted_at_ms is not None

    @property
    def is_edited(self) -> bool:
        return self.edited_at_ms is not None

    def visible_status(self, viewer_id: str) -> MessageStatus | None:
        """Status as rendered for ``viewer_id``; only the sender sees it."""

        if viewer_id != self.sender_id:
            return None
        return self.status

    def preview(self) -> LastMessage:
        return LastMessage(
            message_id=self.message_id,
            content=self.content,
            sender_id=self.sender_id,
            timestamp_ms=self.created_at_ms,
            kind=self.kind,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "conv_id": self.conv_id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "kind": self.kind.value,
            "content": self.content,
            "created_at_ms": self.created_at_ms,
            "status": self.status.value,
            "attachment": self.attachment.to_dict() if self.attachment else None,
            "reply_to": self.reply_to.to_dict() if self.reply_to else None,
            "edited_at_ms": self.edited_at_ms,
            "deleted_at_ms": self.deleted_at_ms,
            "is_crisis": self.is_crisis,
        }


def sort_messages(messages) -> list[Message]:
    return sorted(messages, key=lambda message: message.sort_key)


@dataclass(frozen=True)
class Conversation:
    conv_id: str
    participant_ids: Tuple[str, str]
    created_at_ms: int
    last_message: LastMessage | None = None

    def other_participant(self, user_id: str) -> str:
        first, second = self.participant_ids
        return second if user_id == first else first

    @property
    def updated_at_ms(self) -> int:
        if self.last_message is None:
            return self.created_at_ms
        return self.last_message.timestamp_ms


@dataclass(frozen=True)
class Reaction:
    message_id: str
    user_id: str
    type: ReactionType
    created_at_ms: int


@dataclass(frozen=True)
class PresenceSnapshot:
    user_id: str
    is_online: bool
    last_seen_ms: int | None = None


@dataclass(frozen=True)
class TypingEvent:
    conv_id: str
    user_id: str
    expires_at_ms: int

    def is_live(self, now_ms: int) -> bool:
        return self.expires_at_ms > now_ms
