"""
Callback-style adapter

The core completes everything through awaitables. with_callback() lets
callers that prefer `callback(error, result)` use the same operations.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

from .exceptions import QueryCancelled

Callback = Callable[[Optional[BaseException], Any], None]


def with_callback(awaitable: Awaitable[Any], callback: Callback) -> asyncio.Future:
    """
    Schedule `awaitable` and call `callback(error, result)` exactly once.

    Example:
        with_callback(conn.close(noreply_wait=False), on_closed)

    Returns:
        The scheduled future, so the caller may still await it.
    """
    future = asyncio.ensure_future(awaitable)

    def _done(fut: asyncio.Future) -> None:
        if fut.cancelled():
            callback(QueryCancelled("Operation was cancelled."), None)
            return
        error = fut.exception()
        if error is not None:
            callback(error, None)
        else:
            callback(None, fut.result())

    future.add_done_callback(_done)
    return future
