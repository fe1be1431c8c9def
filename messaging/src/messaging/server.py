"""Messaging core CLI: frame simulation and a development blob server."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, Iterable, List, TextIO

from aiohttp import web

from .blobserver import create_blob_app
from .config import MessagingConfig, load_config_from_env
from .errors import MessagingError
from .logging_config import configure_logging
from .models import Message, MessageDraft, MessageKind, _now_ms
from .reactions import ReactionCounts
from .runtime import Runtime, build_runtime


class _FrameClock:
    """Uses the last ``ts_ms`` seen in a frame, or wall time before any."""

    def __init__(self) -> None:
        self.current_ms: int | None = None

    def __call__(self) -> int:
        return self.current_ms if self.current_ms is not None else _now_ms()


def _message_summary(message: Message, viewer_id: str) -> Dict[str, Any]:
    status = message.visible_status(viewer_id)
    return {
        "message_id": message.message_id,
        "sender_id": message.sender_id,
        "kind": message.kind.value,
        "content": message.content,
        "status": status.value if status is not None else None,
        "reply_to": message.reply_to.message_id if message.reply_to else None,
        "edited": message.is_edited,
        "deleted": message.is_tombstone,
        "is_crisis": message.is_crisis,
    }


class _Simulation:
    def __init__(self, runtime: Runtime, clock: _FrameClock, output: TextIO) -> None:
        self._runtime = runtime
        self._clock = clock
        self._output = output
        self._refs: Dict[str, str] = {}
        self._subscriptions: List = []

    def emit(self, payload: Dict[str, Any]) -> None:
        self._output.write(json.dumps(payload) + "\n")

    async def run(self, frames: Iterable[dict]) -> None:
        try:
            for frame in frames:
                if "ts_ms" in frame:
                    self._clock.current_ms = int(frame["ts_ms"])
                try:
                    await self.handle(frame)
                except MessagingError as exc:
                    self.emit({"t": "error", "frame": frame.get("t"), "code": type(exc).__name__, "message": str(exc)})
        finally:
            for subscription in self._subscriptions:
                subscription.cancel()

    async def handle(self, frame: dict) -> None:
        runtime = self._runtime
        frame_type = frame.get("t")
        if frame_type == "conv.subscribe":
            user_id = frame["user_id"]
            conv_id = runtime.conversations.get_or_create_id(user_id, frame["other_user_id"])

            def on_messages(messages: List[Message], viewer: str = user_id, conv: str = conv_id) -> None:
                self.emit(
                    {
                        "t": "messages",
                        "viewer_id": viewer,
                        "conv_id": conv,
                        "messages": [_message_summary(message, viewer) for message in messages],
                    }
                )

            def on_typing(users, viewer: str = user_id, conv: str = conv_id) -> None:
                self.emit({"t": "typing", "viewer_id": viewer, "conv_id": conv, "users": sorted(users)})

            self._subscriptions.append(await runtime.messages.subscribe(conv_id, on_messages, viewer_id=user_id))
            self._subscriptions.append(runtime.typing.subscribe(conv_id, on_typing, exclude_user_id=user_id))
        elif frame_type == "conv.send":
            sender_id = frame["sender_id"]
            receiver_id = frame["receiver_id"]
            reply_ref = frame.get("reply_to")
            draft = MessageDraft(
                conv_id=runtime.conversations.get_or_create_id(sender_id, receiver_id),
                sender_id=sender_id,
                receiver_id=receiver_id,
                kind=MessageKind(frame.get("kind", MessageKind.TEXT.value)),
                content=frame.get("content", ""),
                reply_to=self._refs.get(reply_ref, reply_ref) if reply_ref else None,
            )
            message_id = await runtime.messages.append(draft)
            if "ref" in frame:
                self._refs[frame["ref"]] = message_id
            self.emit({"t": "sent", "ref": frame.get("ref"), "message_id": message_id, "conv_id": draft.conv_id})
        elif frame_type == "conv.edit":
            await runtime.messages.edit(self._message_id(frame), frame["user_id"], frame["content"])
        elif frame_type == "conv.delete":
            await runtime.messages.soft_delete(self._message_id(frame), frame["user_id"])
        elif frame_type == "conv.read":
            user_id = frame["user_id"]
            conv_id = runtime.conversations.get_or_create_id(user_id, frame["other_user_id"])
            await runtime.statuses.mark_read(conv_id, user_id)
        elif frame_type == "reaction.toggle":
            message_id = self._message_id(frame)
            await runtime.reactions.toggle(message_id, frame["user_id"], frame["type"])
            counts = await runtime.reactions.get_counts(message_id)
            self.emit({"t": "reactions", "message_id": message_id, **_counts_payload(counts)})
        elif frame_type == "typing.signal":
            user_id = frame["user_id"]
            runtime.typing.signal(runtime.conversations.get_or_create_id(user_id, frame["other_user_id"]), user_id)
        elif frame_type == "presence.set":
            user_id = frame["user_id"]
            if frame.get("online", True):
                snapshot = runtime.presence.set_online(user_id)
            else:
                snapshot = runtime.presence.set_offline(user_id)
            self.emit(
                {
                    "t": "presence",
                    "user_id": user_id,
                    "is_online": snapshot.is_online,
                    "last_seen_ms": snapshot.last_seen_ms,
                }
            )
        else:
            raise ValueError(f"unsupported frame type: {frame_type}")

    def _message_id(self, frame: dict) -> str:
        if "ref" in frame:
            return self._refs.get(frame["ref"], frame["ref"])
        return frame["message_id"]


def _counts_payload(counts: ReactionCounts) -> Dict[str, Any]:
    return {"counts": {reaction_type.value: count for reaction_type, count in sorted(counts.items())}}


async def _simulate(frames: Iterable[dict], output: TextIO, config: MessagingConfig) -> None:
    clock = _FrameClock()
    runtime = build_runtime(config, now_func=clock)
    try:
        await _Simulation(runtime, clock, output).run(frames)
    finally:
        await runtime.close()


def simulate(frames: Iterable[dict], output: TextIO, *, typing_ttl_ms: int | None = None) -> None:
    """Process JSON frames through an in-memory messaging runtime and emit events."""

    config = MessagingConfig() if typing_ttl_ms is None else MessagingConfig(typing_ttl_ms=typing_ttl_ms)
    asyncio.run(_simulate(frames, output, config))


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, config: MessagingConfig, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output, typing_ttl_ms=config.typing_ttl_ms)
    return 0


def _run_serve_blobs(args: argparse.Namespace, config: MessagingConfig) -> int:
    root = args.root or config.blob_dir
    if not root:
        raise SystemExit("serve-blobs needs --root or MESSAGING_BLOB_DIR")
    app = create_blob_app(root, public_base_url=args.base_url or config.blob_base_url)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Messaging core CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Simulate messaging frames")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    blobs_parser = subparsers.add_parser("serve-blobs", help="Run the aiohttp development blob server")
    blobs_parser.add_argument("--root", default=None, help="Directory blobs are stored in")
    blobs_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    blobs_parser.add_argument("--port", type=int, default=8081, help="Port to bind")
    blobs_parser.add_argument("--base-url", default=None, help="Public URL prefix returned for stored blobs")

    args = parser.parse_args(argv)
    config = load_config_from_env()
    configure_logging(config.log_level)

    if args.command == "simulate":
        return _run_simulation(args, config, output or sys.stdout)
    return _run_serve_blobs(args, config)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
