from __future__ import annotations

import logging
from typing import Callable, Protocol, Sequence

from .errors import ValidationError
from .formatting import format_duration
from .models import Blob, _now_ms

logger = logging.getLogger(__name__)

VOICE_FILE_NAME = "voice-message.webm"
VOICE_CONTENT_TYPE = "audio/webm"


class Track(Protocol):
    def stop(self) -> None: ...


class AudioStream(Protocol):
    tracks: Sequence[Track]

    def read(self) -> bytes: ...


class VoiceRecorder:
    """Captures one voice message from a microphone stream.

    ``stop``, ``cancel`` and ``close`` all release the stream through
    ``_release`` so every track is stopped exactly once, whichever exit runs.
    """

    def __init__(self, open_stream: Callable[[], AudioStream], *, now_func=_now_ms) -> None:
        self._open_stream = open_stream
        self._now = now_func
        self._stream: AudioStream | None = None
        self._started_ms: int | None = None

    @property
    def recording(self) -> bool:
        return self._stream is not None

    def elapsed(self) -> str:
        if self._started_ms is None:
            return format_duration(0)
        return format_duration((self._now() - self._started_ms) / 1000)

    def start(self) -> None:
        if self._stream is not None:
            raise ValidationError("already recording")
        self._stream = self._open_stream()
        self._started_ms = self._now()
        logger.debug("recording started")

    def stop(self) -> Blob:
        if self._stream is None:
            raise ValidationError("not recording")
        duration = self.elapsed()
        try:
            data = self._stream.read()
        finally:
            self._release()
        if not data:
            raise ValidationError("nothing was recorded")
        return Blob(data=data, file_name=VOICE_FILE_NAME, content_type=VOICE_CONTENT_TYPE, duration=duration)

    def cancel(self) -> None:
        if self._stream is not None:
            logger.debug("recording cancelled")
        self._release()

    def close(self) -> None:
        self._release()

    async def __aenter__(self) -> "VoiceRecorder":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _release(self) -> None:
        stream, self._stream = self._stream, None
        self._started_ms = None
        if stream is None:
            return
        for track in stream.tracks:
            track.stop()
