from __future__ import annotations

import logging
import mimetypes
import re
import time
from typing import Callable, Protocol

from .errors import UploadFailed, ValidationError
from .models import ATTACHMENT_KINDS, Attachment, Blob, MessageKind, categorize_file, file_extension

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")

_DEFAULT_CONTENT_TYPES = {
    MessageKind.AUDIO: "audio/webm",
    MessageKind.IMAGE: "image/jpeg",
    MessageKind.FILE: "application/octet-stream",
}


class BlobStorage(Protocol):
    async def put(self, path: str, data: bytes, content_type: str) -> str: ...


def safe_file_name(file_name: str | None) -> str:
    return _UNSAFE_NAME_CHARS.sub("_", file_name or "file")


class AttachmentPipeline:
    """Uploads image, file and audio blobs and describes the stored result.

    Storage paths are keyed by user and a nanosecond timestamp that never
    repeats within one pipeline, so two uploads cannot overwrite each other.
    """

    def __init__(self, storage: BlobStorage, *, clock_ns: Callable[[], int] = time.time_ns) -> None:
        self._storage = storage
        self._clock_ns = clock_ns
        self._last_ns = 0

    def storage_path(self, user_id: str, blob: Blob, kind: MessageKind, timestamp_ns: int) -> str:
        if kind is MessageKind.AUDIO:
            return f"audio_messages/{user_id}/{timestamp_ns}.webm"
        if kind is MessageKind.IMAGE:
            extension = file_extension(blob.file_name)
            return f"images/{user_id}/{timestamp_ns}.{safe_file_name(extension) if extension else 'jpg'}"
        return f"files/{user_id}/{timestamp_ns}_{safe_file_name(blob.file_name)}"

    async def upload(self, user_id: str, blob: Blob, kind: MessageKind | str) -> Attachment:
        kind = self._require_kind(kind)
        if not user_id or "/" in user_id or user_id in {".", ".."}:
            raise ValidationError(f"invalid uploader id {user_id!r}")
        if not blob.data:
            raise ValidationError("cannot upload an empty blob")

        path = self.storage_path(user_id, blob, kind, self._next_timestamp_ns())
        content_type = self._content_type(blob, kind)
        try:
            url = await self._storage.put(path, blob.data, content_type)
        except UploadFailed:
            logger.warning("upload failed user=%s path=%s", user_id, path)
            raise
        except OSError as exc:
            logger.warning("upload failed user=%s path=%s", user_id, path)
            raise UploadFailed(f"could not store {path}: {exc}") from exc

        logger.info("uploaded %s bytes user=%s path=%s", blob.size, user_id, path)
        file_name = blob.file_name or path.rsplit("/", 1)[1]
        return Attachment(
            url=url,
            file_name=file_name,
            file_size=blob.size,
            duration=blob.duration,
            content_type=content_type,
            category=categorize_file(file_name),
            path=path,
        )

    def _next_timestamp_ns(self) -> int:
        timestamp = max(self._clock_ns(), self._last_ns + 1)
        self._last_ns = timestamp
        return timestamp

    @staticmethod
    def _require_kind(kind: MessageKind | str) -> MessageKind:
        try:
            kind = MessageKind(kind)
        except ValueError:
            raise ValidationError(f"unknown attachment kind {kind!r}") from None
        if kind not in ATTACHMENT_KINDS:
            raise ValidationError(f"{kind.value} messages carry no upload")
        return kind

    @staticmethod
    def _content_type(blob: Blob, kind: MessageKind) -> str:
        if blob.content_type:
            return blob.content_type
        guessed, _ = mimetypes.guess_type(blob.file_name or "")
        return guessed or _DEFAULT_CONTENT_TYPES[kind]
