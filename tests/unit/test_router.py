"""
Unit tests for the Response Router

The transport is replaced by an AsyncMock send(token, payload), so frames
can be dispatched by hand in any order.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from reql_wire import protocol
from reql_wire.cursor import Cursor
from reql_wire.exceptions import (
    ConnectionClosed,
    ProtocolViolation,
    QueryCancelled,
    QueryTimeout,
    RuntimeQueryError,
)
from reql_wire.router import CursorState, ResponseRouter


def atom(value):
    return {"t": protocol.SUCCESS_ATOM, "r": [value]}


@pytest.mark.unit
class TestSubmission:
    """Token allocation and START frames"""

    def setup_method(self):
        self.send = AsyncMock()
        self.router = ResponseRouter(self.send)

    async def test_submit_sends_start(self):
        pending = await self.router.submit([1, [2]], {"db": [14, ["blog"]]})

        self.send.assert_awaited_once_with(
            1, protocol.encode_start([1, [2]], {"db": [14, ["blog"]]})
        )
        assert pending.token == 1
        assert 1 in self.router
        assert not pending.future.done()

    async def test_tokens_unique_and_increasing(self):
        tokens = [(await self.router.submit(i)).token for i in range(5)]

        assert tokens == [1, 2, 3, 4, 5]
        assert self.router.outstanding == 5

    async def test_noreply_not_registered(self):
        """No-reply queries never get a slot and resolve on write"""
        pending = await self.router.submit([1], noreply=True)

        assert pending.future.result() is None
        assert pending.token not in self.router
        assert self.router.outstanding == 0
        assert self.router.noreply_outstanding == 1

    async def test_send_failure_releases_slot(self):
        self.send.side_effect = ConnectionClosed()

        with pytest.raises(ConnectionClosed):
            await self.router.submit([1])

        assert self.router.outstanding == 0


@pytest.mark.unit
class TestDispatch:
    """Routing response frames to their owners"""

    def setup_method(self):
        self.send = AsyncMock()
        self.router = ResponseRouter(self.send)

    async def test_atom_resolves_future(self):
        pending = await self.router.submit([1])

        self.router.dispatch(pending.token, atom(42))

        assert pending.future.result() == 42
        assert pending.token not in self.router

    async def test_out_of_order_responses(self):
        """Each token gets its own reply regardless of arrival order"""
        first = await self.router.submit("a")
        second = await self.router.submit("b")

        self.router.dispatch(second.token, atom("b"))
        self.router.dispatch(first.token, atom("a"))

        assert first.future.result() == "a"
        assert second.future.result() == "b"

    async def test_runtime_error(self):
        pending = await self.router.submit(["boom"])

        self.router.dispatch(pending.token, {
            "t": protocol.RUNTIME_ERROR, "r": ["Table `x` does not exist."], "b": [0],
        })

        with pytest.raises(RuntimeQueryError) as exc_info:
            pending.future.result()
        assert str(exc_info.value) == "Table `x` does not exist."
        assert exc_info.value.term == ["boom"]
        assert exc_info.value.backtrace == [0]
        assert self.router.outstanding == 0

    async def test_unknown_token_is_violation(self):
        with pytest.raises(ProtocolViolation, match="unknown token 99"):
            self.router.dispatch(99, atom(None))

    async def test_unknown_response_type_is_violation(self):
        pending = await self.router.submit([1])

        with pytest.raises(ProtocolViolation):
            self.router.dispatch(pending.token, {"t": 99, "r": []})

    async def test_partial_creates_cursor(self):
        pending = await self.router.submit(["stream"])

        self.router.dispatch(pending.token, {"t": protocol.SUCCESS_PARTIAL, "r": [1, 2]})

        cursor = pending.future.result()
        assert isinstance(cursor, Cursor)
        assert self.router.get(pending.token).state is CursorState.STREAMING
        assert not cursor.exhausted

    async def test_sequence_completes_stream(self):
        pending = await self.router.submit(["stream"])
        self.router.dispatch(pending.token, {"t": protocol.SUCCESS_PARTIAL, "r": [1]})
        cursor = pending.future.result()

        self.router.dispatch(pending.token, {"t": protocol.SUCCESS_SEQUENCE, "r": [2]})

        assert cursor.exhausted
        assert pending.token not in self.router
        assert await cursor.to_list() == [1, 2]

    async def test_server_info(self):
        pending = await self.router.server_info()

        self.send.assert_awaited_once_with(1, protocol.encode_simple(protocol.QUERY_SERVER_INFO))
        self.router.dispatch(pending.token, {"t": protocol.SERVER_INFO, "r": [{"name": "db1"}]})

        assert pending.future.result() == {"name": "db1"}


@pytest.mark.unit
class TestNoreplyWait:
    """Draining no-reply queries"""

    async def test_wait_acknowledges_earlier_noreply(self):
        send = AsyncMock()
        router = ResponseRouter(send)
        await router.submit([1], noreply=True)
        await router.submit([2], noreply=True)

        waiter = asyncio.create_task(router.wait_for_noreply())
        await asyncio.sleep(0.01)

        send.assert_awaited_with(3, protocol.encode_simple(protocol.QUERY_NOREPLY_WAIT))
        assert router.noreply_outstanding == 2

        router.dispatch(3, {"t": protocol.WAIT_COMPLETE, "r": []})
        await waiter

        assert router.noreply_outstanding == 0

    async def test_later_noreply_still_outstanding(self):
        """Queries issued after the wait started are not covered by it"""
        router = ResponseRouter(AsyncMock())
        await router.submit([1], noreply=True)

        waiter = asyncio.create_task(router.wait_for_noreply())
        await asyncio.sleep(0.01)
        await router.submit([2], noreply=True)
        router.dispatch(2, {"t": protocol.WAIT_COMPLETE, "r": []})
        await waiter

        assert router.noreply_outstanding == 1

    async def test_noreply_queued_behind_write_lock_is_covered(self):
        """A no-reply query still waiting to be written counts toward the wait started after it"""
        gate = asyncio.Event()

        async def send(token, payload):
            if token == 1:
                await gate.wait()

        router = ResponseRouter(send)
        queued = asyncio.create_task(router.submit([1], noreply=True))
        await asyncio.sleep(0.01)

        waiter = asyncio.create_task(router.wait_for_noreply())
        await asyncio.sleep(0.01)
        gate.set()
        await queued
        router.dispatch(2, {"t": protocol.WAIT_COMPLETE, "r": []})
        await waiter

        assert router.noreply_outstanding == 0

    async def test_failed_noreply_send_not_counted(self):
        router = ResponseRouter(AsyncMock(side_effect=ConnectionClosed()))

        with pytest.raises(ConnectionClosed):
            await router.submit([1], noreply=True)

        assert router.noreply_outstanding == 0


@pytest.mark.unit
class TestCancellation:
    """STOP handling and draining of late frames"""

    def setup_method(self):
        self.send = AsyncMock()
        self.router = ResponseRouter(self.send)

    async def test_cancel_fails_future_and_sends_stop(self):
        pending = await self.router.submit(["slow"])

        await self.router.cancel(pending.token)

        with pytest.raises(QueryCancelled, match="Query was cancelled."):
            pending.future.result()
        self.send.assert_awaited_with(pending.token, protocol.encode_simple(protocol.QUERY_STOP))

    async def test_cancel_with_reason(self):
        pending = await self.router.submit(["slow"])

        await self.router.cancel(pending.token, QueryTimeout("Query timed out after 1 seconds."))

        with pytest.raises(QueryTimeout):
            pending.future.result()

    async def test_late_frames_drained(self):
        """A reply arriving after cancel is dropped, not a protocol violation"""
        pending = await self.router.submit(["slow"])
        await self.router.cancel(pending.token)

        self.router.dispatch(pending.token, atom("too late"))

        assert pending.token not in self.router
        assert isinstance(pending.future.exception(), QueryCancelled)

    async def test_late_partial_keeps_slot(self):
        pending = await self.router.submit(["stream"])
        self.router.dispatch(pending.token, {"t": protocol.SUCCESS_PARTIAL, "r": [1]})
        await self.router.cancel(pending.token)

        self.router.dispatch(pending.token, {"t": protocol.SUCCESS_PARTIAL, "r": [2]})
        assert pending.token in self.router

        self.router.dispatch(pending.token, {"t": protocol.SUCCESS_SEQUENCE, "r": []})
        assert pending.token not in self.router

    async def test_cancel_on_closed_transport(self):
        pending = await self.router.submit(["slow"])
        self.send.side_effect = ConnectionClosed()

        await self.router.cancel(pending.token)

        assert isinstance(pending.future.exception(), QueryCancelled)

    async def test_cancel_unknown_token_is_noop(self):
        await self.router.cancel(12345)

        self.send.assert_not_awaited()


@pytest.mark.unit
class TestFailAll:
    async def test_every_request_fails_once(self):
        send = AsyncMock()
        router = ResponseRouter(send)
        first = await router.submit([1])
        second = await router.submit(["stream"])
        router.dispatch(second.token, {"t": protocol.SUCCESS_PARTIAL, "r": ["row"]})
        cursor = second.future.result()

        router.fail_all(ConnectionClosed())

        assert router.outstanding == 0
        assert isinstance(first.future.exception(), ConnectionClosed)
        assert await cursor.next() == "row"
        with pytest.raises(ConnectionClosed):
            await cursor.next()
