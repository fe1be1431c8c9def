from __future__ import annotations

import logging
from pathlib import Path

from .attachments import AttachmentPipeline, BlobStorage
from .blobs import HttpBlobStorage, LocalBlobStorage
from .config import MessagingConfig
from .conversations import ConversationRegistry
from .errors import UploadFailed
from .log import InMemoryMessageLog
from .messages import MessageStore
from .models import _now_ms
from .presence import PresenceTracker
from .reactions import InMemoryReactionStore, ReactionLedger, SQLiteReactionStore
from .sqlite_backend import SQLiteBackend
from .sqlite_log import SQLiteMessageLog
from .status import DeliveryStatusMachine
from .typing_signal import TypingSignal

logger = logging.getLogger(__name__)


class _NoBlobStorage:
    async def put(self, path: str, data: bytes, content_type: str) -> str:
        raise UploadFailed("no blob storage configured")


class Runtime:
    """Wires every messaging component around one storage collaborator."""

    def __init__(
        self,
        *,
        log,
        reaction_store,
        blob_storage: BlobStorage | None = None,
        backend: SQLiteBackend | None = None,
        typing_ttl_ms: int,
        resubscribe_attempts: int,
        now_func=_now_ms,
    ) -> None:
        self.log = log
        self.backend = backend
        self.now = now_func
        self.blob_storage = blob_storage
        self.conversations = ConversationRegistry(log)
        self.messages = MessageStore(log, now_func=now_func, resubscribe_attempts=resubscribe_attempts)
        self.statuses = DeliveryStatusMachine(self.messages)
        self.reactions = ReactionLedger(reaction_store, log, now_func=now_func)
        self.presence = PresenceTracker(now_func=now_func)
        self.typing = TypingSignal(ttl_ms=typing_ttl_ms, now_func=now_func)
        self.attachments = AttachmentPipeline(blob_storage or _NoBlobStorage())

    async def close(self) -> None:
        self.typing.close()
        close = getattr(self.blob_storage, "close", None)
        if close is not None:
            await close()
        if self.backend is not None:
            self.backend.close()


def _blob_storage_from_config(config: MessagingConfig) -> BlobStorage | None:
    if config.blob_dir:
        base_url = config.blob_base_url or Path(config.blob_dir).resolve().as_uri()
        return LocalBlobStorage(config.blob_dir, base_url)
    if config.blob_base_url:
        return HttpBlobStorage(config.blob_base_url)
    return None


def build_runtime(
    config: MessagingConfig | None = None,
    *,
    now_func=_now_ms,
    blob_storage: BlobStorage | None = None,
) -> Runtime:
    config = config or MessagingConfig()
    backend = None
    if config.durable:
        backend = SQLiteBackend(config.db_path)
        log = SQLiteMessageLog(backend)
        reaction_store = SQLiteReactionStore(backend)
    else:
        log = InMemoryMessageLog()
        reaction_store = InMemoryReactionStore()
    if blob_storage is None:
        blob_storage = _blob_storage_from_config(config)
    logger.info(
        "messaging runtime ready backend=%s blobs=%s",
        "sqlite" if backend is not None else "memory",
        type(blob_storage).__name__ if blob_storage is not None else "none",
    )
    return Runtime(
        log=log,
        reaction_store=reaction_store,
        blob_storage=blob_storage,
        backend=backend,
        typing_ttl_ms=config.typing_ttl_ms,
        resubscribe_attempts=config.resubscribe_attempts,
        now_func=now_func,
    )
