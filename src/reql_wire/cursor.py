"""
Streamed query results

A Cursor receives batches for one token from the response router, in the
order the server emitted them, and asks for the next batch (CONTINUE) only
when its buffer runs dry.
"""

import asyncio
from collections import deque
from typing import TYPE_CHECKING, Any, List, Optional

from .exceptions import CursorEmpty, ReqlError

if TYPE_CHECKING:
    from .router import ResponseRouter


class Cursor:
    """
    Async iterator over a streamed result.

    Example:
        cursor = await conn.run(term)
        async for row in cursor:
            ...
    """

    def __init__(self, token: int, router: "ResponseRouter"):
        self.token = token
        self._router = router
        self._items: deque = deque()
        self._done = False
        self._closed = False
        self._fetching = False
        self._error: Optional[ReqlError] = None
        self._changed = asyncio.Event()

    @property
    def exhausted(self) -> bool:
        """True once the server has sent the final batch (or failed)"""
        return self._done

    def _extend(self, items: List[Any], done: bool):
        if self._closed:
            return
        self._items.extend(items)
        self._fetching = False
        if done:
            self._done = True
        self._wake()

    def _fail(self, exc: ReqlError):
        if self._closed or self._error is not None:
            return
        self._error = exc
        self._done = True
        self._wake()

    def _wake(self):
        # Readers hold the old event; a fresh one is used for the next wait
        self._changed.set()
        self._changed = asyncio.Event()

    async def next(self) -> Any:
        """
        Return the next row, fetching another batch if needed.

        Raises:
            CursorEmpty: no more rows
            ReqlError: the query failed or the connection closed mid-stream
        """
        while not self._items:
            if self._error is not None:
                raise self._error
            if self._done or self._closed:
                raise CursorEmpty()
            changed = self._changed
            if not self._fetching:
                self._fetching = True
                try:
                    await self._router.continue_(self.token)
                except ReqlError:
                    self._fetching = False
                    raise
            await changed.wait()
        return self._items.popleft()

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        try:
            return await self.next()
        except CursorEmpty:
            raise StopAsyncIteration

    async def to_list(self) -> List[Any]:
        return [item async for item in self]

    async def close(self):
        """Stop the stream; the server is told to discard the rest"""
        if self._closed:
            return
        self._closed = True
        self._items.clear()
        if not self._done:
            self._done = True
            await self._router.cancel(self.token)
        self._wake()

    def __repr__(self) -> str:
        state = "exhausted" if self._done else "streaming"
        return f"<Cursor token={self.token} {state} buffered={len(self._items)}>"
