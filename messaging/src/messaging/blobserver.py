"""Development blob service: stores PUT bodies on disk and serves them back."""

from __future__ import annotations

import asyncio
from pathlib import Path

from aiohttp import web

from .blobs import _write_file, resolve_under
from .errors import ValidationError

BLOB_ROOT_KEY = web.AppKey("blob_root", Path)
BLOB_CONFIG_KEY = web.AppKey("blob_config", dict)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _invalid_request(message: str) -> web.Response:
    return web.json_response({"code": "invalid_request", "message": message}, status=400)


def _too_large(limit: int) -> web.Response:
    return web.json_response({"code": "too_large", "message": f"blob exceeds {limit} bytes"}, status=413)


def _blob_target(request: web.Request) -> Path:
    return resolve_under(request.app[BLOB_ROOT_KEY], request.match_info["path"])


async def handle_put_blob(request: web.Request) -> web.Response:
    config = request.app[BLOB_CONFIG_KEY]
    try:
        target = _blob_target(request)
    except ValidationError as exc:
        return _invalid_request(str(exc))
    data = await request.read()
    if not data:
        return _invalid_request("empty blob")
    if len(data) > config["max_blob_size"]:
        return _too_large(config["max_blob_size"])
    await asyncio.to_thread(_write_file, target, data)

    path = request.match_info["path"]
    base_url = config["public_base_url"] or f"{request.scheme}://{request.host}"
    return web.json_response({"url": f"{base_url}/blobs/{path}", "path": path, "size": len(data)})


async def handle_get_blob(request: web.Request) -> web.StreamResponse:
    try:
        target = _blob_target(request)
    except ValidationError as exc:
        return _invalid_request(str(exc))
    if not target.is_file():
        return web.json_response({"code": "not_found", "message": "no such blob"}, status=404)
    return web.FileResponse(target)


def create_blob_app(
    root_dir: str | Path,
    *,
    public_base_url: str | None = None,
    max_blob_size: int = 25 * 1024 * 1024,
) -> web.Application:
    root = Path(root_dir)
    root.mkdir(parents=True, exist_ok=True)
    app = web.Application(client_max_size=max_blob_size + 1024)
    app[BLOB_ROOT_KEY] = root
    app[BLOB_CONFIG_KEY] = {
        "public_base_url": public_base_url.rstrip("/") if public_base_url else None,
        "max_blob_size": max_blob_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_put("/blobs/{path:.+}", handle_put_blob)
    app.router.add_get("/blobs/{path:.+}", handle_get_blob)
    return app
