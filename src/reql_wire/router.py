"""
Response Router

Demultiplexes response frames to the request that owns each token. All
submissions share one transport; the connection's receive loop is the only
caller of dispatch(), so frames for one token are handled in arrival order.

Every registered PendingRequest is resolved exactly once: with its result,
a server error, a cancel/timeout error, or the reason passed to fail_all().
"""

import asyncio
import itertools
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import structlog

from .cursor import Cursor
from .exceptions import (
    ClientQueryError,
    CompileError,
    ConnectionClosed,
    DriverError,
    ProtocolViolation,
    QueryCancelled,
    ReqlError,
    RuntimeQueryError,
    ServerError,
)
from .protocol import (
    CLIENT_ERROR,
    COMPILE_ERROR,
    QUERY_CONTINUE,
    QUERY_NOREPLY_WAIT,
    QUERY_SERVER_INFO,
    QUERY_STOP,
    RUNTIME_ERROR,
    SERVER_INFO,
    SUCCESS_ATOM,
    SUCCESS_PARTIAL,
    SUCCESS_SEQUENCE,
    TERMINAL_RESPONSES,
    WAIT_COMPLETE,
    encode_simple,
    encode_start,
    response_items,
)

logger = structlog.get_logger()

SendFrame = Callable[[int, bytes], Awaitable[None]]

SERVER_ERRORS = {
    CLIENT_ERROR: ClientQueryError,
    COMPILE_ERROR: CompileError,
    RUNTIME_ERROR: RuntimeQueryError,
}


class CursorState(Enum):
    NONE = "none"
    STREAMING = "streaming"
    EXHAUSTED = "exhausted"


@dataclass
class PendingRequest:
    """One outstanding request and its single completion future"""
    token: int
    query: Any
    future: asyncio.Future
    noreply: bool = False
    cursor: Optional[Cursor] = None
    state: CursorState = CursorState.NONE
    cancelled: bool = False


def server_error(response_type: int, response: Mapping[str, Any], query: Any) -> ServerError:
    items = response.get('r') or []
    message = items[0] if items else "Unknown server error"
    error_class = SERVER_ERRORS[response_type]
    return error_class(str(message), term=query, backtrace=response.get('b'))


class ResponseRouter:
    """
    Token registry and response fan-out for a single connection.

    Args:
        send: coroutine writing one frame (token, payload) to the transport
    """

    def __init__(self, send: SendFrame):
        self._send = send
        self._tokens = itertools.count(1)
        self._pending: Dict[int, PendingRequest] = {}
        self._noreply_issued = 0
        self._noreply_acknowledged = 0

    @property
    def outstanding(self) -> int:
        return len(self._pending)

    @property
    def noreply_outstanding(self) -> int:
        """No-reply queries not yet covered by a completed noreply wait"""
        return max(self._noreply_issued - self._noreply_acknowledged, 0)

    def __contains__(self, token: int) -> bool:
        return token in self._pending

    def get(self, token: int) -> Optional[PendingRequest]:
        return self._pending.get(token)

    async def submit(self, term: Any, optargs: Optional[Mapping[str, Any]] = None,
                     noreply: bool = False) -> PendingRequest:
        """
        Send a START query.

        For no-reply queries the future is resolved with None as soon as the
        frame is written; the server never answers them.
        """
        return await self._submit(encode_start(term, optargs or {}), term, noreply)

    async def server_info(self) -> PendingRequest:
        return await self._submit(encode_simple(QUERY_SERVER_INFO), None)

    async def wait_for_noreply(self):
        """
        Wait until every no-reply query issued before this call has run.

        Only this caller blocks; other submissions keep flowing.
        """
        mark = self._noreply_issued
        pending = await self._submit(encode_simple(QUERY_NOREPLY_WAIT), None)
        await pending.future
        self._noreply_acknowledged = max(self._noreply_acknowledged, mark)
        logger.debug("No-reply wait complete",
                     acknowledged=self._noreply_acknowledged,
                     outstanding=self.noreply_outstanding)

    async def _submit(self, payload: bytes, query: Any, noreply: bool = False) -> PendingRequest:
        token = next(self._tokens)
        pending = PendingRequest(
            token=token,
            query=query,
            future=asyncio.get_running_loop().create_future(),
            noreply=noreply,
        )
        if noreply:
            # Counted before the write; frames leave in submission order
            self._noreply_issued += 1
        else:
            self._pending[token] = pending

        try:
            await self._send(token, payload)
        except DriverError:
            if noreply:
                self._noreply_issued -= 1
            self._pending.pop(token, None)
            raise

        if noreply:
            pending.future.set_result(None)

        logger.debug("Query submitted", token=token, noreply=noreply, outstanding=self.outstanding)
        return pending

    async def continue_(self, token: int):
        """Ask the server for the next batch of a streaming result"""
        pending = self._pending.get(token)
        if pending is None or pending.state is not CursorState.STREAMING:
            return
        await self._send(token, encode_simple(QUERY_CONTINUE))

    async def cancel(self, token: int, reason: Optional[ReqlError] = None):
        """
        Stop delivering results for `token` and tell the server to stop.

        The slot stays registered so that frames still in flight are drained
        silently; it is removed when its terminal frame arrives.
        """
        pending = self._pending.get(token)
        if pending is None or pending.cancelled:
            return
        pending.cancelled = True
        exc = reason or QueryCancelled()
        if not pending.future.done():
            pending.future.set_exception(exc)
        if pending.cursor is not None:
            pending.cursor._fail(exc)

        logger.debug("Cancelling query", token=token, reason=str(exc))
        try:
            await self._send(token, encode_simple(QUERY_STOP))
        except ConnectionClosed:
            logger.debug("Connection closed before STOP was sent", token=token)

    def dispatch(self, token: int, response: Mapping[str, Any]):
        """
        Route one decoded response frame.

        Raises:
            ProtocolViolation: unknown token or response type (connection-fatal)
        """
        pending = self._pending.get(token)
        if pending is None:
            raise ProtocolViolation(f"Unexpected response for unknown token {token}.")

        response_type = response.get('t')
        items: List[Any] = list(response_items(response))

        if pending.cancelled:
            if response_type in TERMINAL_RESPONSES:
                self._pending.pop(token, None)
            logger.debug("Drained response for cancelled query", token=token, type=response_type)
            return

        if response_type == SUCCESS_PARTIAL:
            self._feed(pending, items, done=False)
        elif response_type == SUCCESS_SEQUENCE:
            self._feed(pending, items, done=True)
            self._pending.pop(token, None)
        elif response_type in (SUCCESS_ATOM, SERVER_INFO):
            self._resolve(pending, items[0] if items else None)
            self._pending.pop(token, None)
        elif response_type == WAIT_COMPLETE:
            self._resolve(pending, None)
            self._pending.pop(token, None)
        elif response_type in SERVER_ERRORS:
            exc = server_error(response_type, response, pending.query)
            if pending.cursor is not None:
                pending.cursor._fail(exc)
            elif not pending.future.done():
                pending.future.set_exception(exc)
            self._pending.pop(token, None)
        else:
            raise ProtocolViolation(f"Unknown response type {response_type} for token {token}.")

    def fail_all(self, reason: ReqlError):
        """Resolve every outstanding request with `reason`"""
        failed = list(self._pending.values())
        self._pending.clear()
        for pending in failed:
            if not pending.future.done():
                pending.future.set_exception(reason)
            if pending.cursor is not None:
                pending.cursor._fail(reason)
        if failed:
            logger.info("Failed outstanding queries", count=len(failed), reason=str(reason))

    def _feed(self, pending: PendingRequest, items: List[Any], done: bool):
        if pending.cursor is None:
            pending.cursor = Cursor(pending.token, self)
            if not pending.future.done():
                pending.future.set_result(pending.cursor)
        pending.state = CursorState.EXHAUSTED if done else CursorState.STREAMING
        pending.cursor._extend(items, done)

    @staticmethod
    def _resolve(pending: PendingRequest, value: Any):
        if not pending.future.done():
            pending.future.set_result(value)
