from __future__ import annotations

import asyncio
import sqlite3
from typing import Any, Callable, Type, TypeVar

from .errors import MessagingError, WriteFailed

T = TypeVar("T")

# Failures a storage collaborator can raise that callers should see as a
# transport error rather than a programming error.
BACKEND_ERRORS = (sqlite3.Error, OSError)


async def offload(
    func: Callable[..., T],
    *args: Any,
    error: Type[MessagingError] = WriteFailed,
    action: str = "write",
) -> T:
    """Run a blocking backend call off the event loop.

    The continuation resumes on the loop that awaited it, so anything the
    caller does afterwards (publishing to subscribers) stays on that loop.
    """

    try:
        return await asyncio.to_thread(func, *args)
    except BACKEND_ERRORS as exc:
        raise error(f"{action} failed: {exc}") from exc
