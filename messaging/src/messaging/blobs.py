"""Blob storage collaborators used by the attachment pipeline."""

from __future__ import annotations

import asyncio
from pathlib import Path
from urllib.parse import quote

import aiohttp

from .errors import UploadFailed, ValidationError


def resolve_under(root: Path, relative_path: str) -> Path:
    """Resolve ``relative_path`` inside ``root``, rejecting traversal."""

    target = (root / relative_path).resolve()
    try:
        target.relative_to(root.resolve())
    except ValueError:
        raise ValidationError(f"blob path escapes storage root: {relative_path!r}") from None
    return target


def _write_file(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)


class LocalBlobStorage:
    """Stores blobs on the local filesystem and serves them from ``base_url``."""

    def __init__(self, root: str | Path, base_url: str) -> None:
        self._root = Path(root)
        self._base_url = base_url.rstrip("/")

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        target = resolve_under(self._root, path)
        try:
            await asyncio.to_thread(_write_file, target, data)
        except OSError as exc:
            raise UploadFailed(f"could not store {path}: {exc}") from exc
        return f"{self._base_url}/{quote(path)}"

    async def close(self) -> None:
        return None


class HttpBlobStorage:
    """PUTs blobs to a blob service that answers with a durable URL."""

    def __init__(self, base_url: str, *, session: aiohttp.ClientSession | None = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        session = self._ensure_session()
        url = f"{self._base_url}/blobs/{quote(path)}"
        try:
            async with session.put(url, data=data, headers={"Content-Type": content_type}) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise UploadFailed(f"blob service rejected {path}: {resp.status} {text.strip()}")
                body = await resp.json()
        except aiohttp.ClientError as exc:
            raise UploadFailed(f"could not upload {path}: {exc}") from exc
        durable_url = body.get("url") if isinstance(body, dict) else None
        if not isinstance(durable_url, str) or not durable_url:
            raise UploadFailed(f"blob service returned no url for {path}")
        return durable_url

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session
