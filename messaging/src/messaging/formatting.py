"""Pure display helpers owned by the consumer side of the messaging core."""

from __future__ import annotations

from urllib.parse import urlparse

from .models import PresenceSnapshot

SNIPPET_LIMIT = 60


def format_duration(seconds: float) -> str:
    """Format a recording length as ``m:ss``."""

    total = max(0, int(seconds))
    minutes, secs = divmod(total, 60)
    return f"{minutes}:{secs:02d}"


def format_file_size(size: int | None) -> str:
    if not size:
        return ""
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def truncate(text: str, limit: int = SNIPPET_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def link_domain(url: str) -> str:
    host = urlparse(url).hostname
    if not host:
        return url
    return host[4:] if host.startswith("www.") else host


def _ago(delta_ms: int) -> str:
    seconds = max(0, delta_ms // 1000)
    if seconds < 60:
        return "less than a minute ago"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    days = hours // 24
    return f"{days} day{'s' if days != 1 else ''} ago"


def describe_presence(snapshot: PresenceSnapshot | None, now_ms: int) -> str:
    if snapshot is None:
        return "Offline"
    if snapshot.is_online:
        return "Active now"
    if snapshot.last_seen_ms is None:
        return "Offline"
    return f"Last seen {_ago(now_ms - snapshot.last_seen_ms)}"
