"""
Connection

The public object: owns one Transport and one ResponseRouter, runs the
receive loop, and exposes query submission, default-database selection,
no-reply draining, close and reconnect.

Lifecycle:
1. connect(): TCP open + handshake, receive loop started, "connect" emitted
2. run()/server()/noreply_wait(): multiplexed over the single transport
3. close(): optional no-reply drain, transport shut, outstanding requests
   failed with ConnectionClosed, "close" emitted

Nothing here retries or reconnects on its own; see reql_wire.reconnect.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional

import structlog

from .config import ConnectionConfig
from .exceptions import (
    ConnectionClosed,
    DriverError,
    InvalidArgument,
    ProtocolViolation,
    QueryTimeout,
    ReqlError,
)
from .handshake import HandshakeNegotiator
from .protocol import build_global_optargs, decode_response
from .router import PendingRequest, ResponseRouter
from .transport import Transport

logger = structlog.get_logger()

CONNECT = "connect"
CLOSE = "close"
EVENTS = (CONNECT, CLOSE)

Listener = Callable[["Connection"], None]


class Connection:
    """
    A single multiplexed connection to a ReQL server.

    Example:
        conn = await connect(host="localhost", db="test")
        value = await conn.run(term)
        await conn.close()
    """

    def __init__(self, config: Optional[ConnectionConfig] = None):
        self.config = config or ConnectionConfig()
        self.db = self.config.db
        self.handshake_version: Optional[str] = None
        self.server_version: Optional[str] = None

        self._transport: Optional[Transport] = None
        self._router: Optional[ResponseRouter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._shutdown_done: Optional[asyncio.Event] = None
        self._lifecycle_lock = asyncio.Lock()
        self._listeners: Dict[str, List[Listener]] = {event: [] for event in EVENTS}

    @property
    def host(self) -> str:
        return self.config.host

    @property
    def port(self) -> int:
        return self.config.port

    @property
    def noreply_outstanding(self) -> int:
        """No-reply queries issued but not yet confirmed by noreply_wait()"""
        return self._router.noreply_outstanding if self._router else 0

    def is_open(self) -> bool:
        return self._transport is not None and not self._transport.closed

    # ========== Lifecycle events ==========

    def add_listener(self, event: str, listener: Listener) -> Callable[[], None]:
        """Register a listener for "connect" or "close"; returns an unsubscribe handle."""
        if event not in self._listeners:
            raise InvalidArgument(f"Unknown connection event `{event}`.")
        self._listeners[event].append(listener)

        def _unsubscribe() -> None:
            self.remove_listener(event, listener)

        return _unsubscribe

    def remove_listener(self, event: str, listener: Listener):
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def _emit(self, event: str):
        for listener in tuple(self._listeners[event]):
            try:
                listener(self)
            except Exception:
                logger.exception("Connection listener failed",
                                 host=self.host, port=self.port, listener_event=event)

    # ========== Connect / close ==========

    async def connect(self, timeout: Optional[float] = None) -> "Connection":
        """
        Open the transport and run the handshake.

        Raises:
            ConnectFailed: TCP connect failed (timeout, refused, unreachable)
            HandshakeTimeout: "Handshake timedout"
            AuthenticationRejected: server dropped the connection
        """
        async with self._lifecycle_lock:
            if not self.is_open():
                await self._open(timeout)
        return self

    async def _open(self, timeout: Optional[float]):
        await self._wait_for_shutdown()
        timeout = timeout if timeout is not None else self.config.timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        transport = await Transport.open(self.host, self.port, timeout, self.config.ssl)
        negotiator = HandshakeNegotiator(
            version=self.config.handshake_version,
            auth_key=self.config.auth_key,
            user=self.config.user,
            password=self.config.password,
        )
        try:
            await negotiator.negotiate(transport, max(deadline - loop.time(), 0))
        except BaseException:
            await transport.close()
            raise

        router = ResponseRouter(transport.send_frame)
        self._transport = transport
        self._router = router
        self.handshake_version = negotiator.version
        self.server_version = negotiator.server_version
        self._read_task = asyncio.create_task(
            self._read_loop(transport, router),
            name=f"reql-read-{self.host}:{self.port}",
        )

        logger.info("Connected", host=self.host, port=self.port,
                    version=self.handshake_version, db=self.db)
        self._emit(CONNECT)

    async def close(self, noreply_wait: bool = True):
        """
        Close the connection.

        Args:
            noreply_wait: first wait for every no-reply query to finish
                server-side; False closes immediately
        """
        async with self._lifecycle_lock:
            await self._close(noreply_wait)

    async def reconnect(self, noreply_wait: bool = True, timeout: Optional[float] = None) -> "Connection":
        """Close (honouring noreply_wait) then connect and handshake again"""
        async with self._lifecycle_lock:
            await self._close(noreply_wait)
            await self._open(timeout)
        return self

    async def _close(self, noreply_wait: bool):
        transport = self._transport
        if transport is None:
            await self._wait_for_shutdown()
            return
        try:
            if noreply_wait and self.is_open():
                await self._router.wait_for_noreply()
        except DriverError as e:
            logger.debug("Connection dropped during close drain",
                         host=self.host, port=self.port, error=str(e))
        finally:
            await self._shutdown(transport, ConnectionClosed())
            # The receive loop may have started the teardown first
            await self._wait_for_shutdown()

    async def _shutdown(self, transport: Transport, reason: ReqlError):
        """Tear down `transport` once; later calls for the same transport are no-ops"""
        if self._transport is not transport:
            return
        self._transport = None
        done = self._shutdown_done = asyncio.Event()
        try:
            self._router.fail_all(reason)

            task = self._read_task
            self._read_task = None
            if task is not None and task is not asyncio.current_task():
                task.cancel()
                await asyncio.wait([task])

            await transport.close()
            logger.info("Connection closed", host=self.host, port=self.port, reason=str(reason))
            self._emit(CLOSE)
        finally:
            done.set()

    async def _wait_for_shutdown(self):
        """Wait for a teardown already in progress (e.g. started by the receive loop)"""
        done = self._shutdown_done
        if done is not None:
            await done.wait()

    async def _read_loop(self, transport: Transport, router: ResponseRouter):
        """Sole reader of the transport for the connection's lifetime"""
        try:
            while True:
                token, payload = await transport.receive_frame()
                router.dispatch(token, decode_response(payload))
        except ConnectionClosed as e:
            logger.warning("Server closed the connection", host=self.host, port=self.port)
            reason: ReqlError = e
        except ProtocolViolation as e:
            logger.error("Protocol violation, closing connection",
                         host=self.host, port=self.port, error=str(e))
            reason = e
        except Exception as e:
            logger.exception("Receive loop failed", host=self.host, port=self.port)
            reason = DriverError(f"Receive loop failed: {e}")
        await self._shutdown(transport, reason)

    # ========== Queries ==========

    def use(self, db: str):
        """Set the default database for subsequent queries"""
        if not db:
            raise InvalidArgument("First argument to `use` must be a database name.")
        self.db = db

    async def run(self, term: Any, timeout: Optional[float] = None, **global_optargs: Any) -> Any:
        """
        Execute a serialized query term.

        Args:
            term: JSON-serializable query term, sent as-is
            timeout: per-query deadline in seconds
            **global_optargs: server options (noreply, read_mode, db, ...)

        Returns:
            The atom value, a Cursor for sequences, or None for noreply

        Raises:
            ConnectionClosed: connection is not open
            DriverCompileError: unrecognized option
            QueryTimeout: `timeout` expired (the query is stopped)
            ServerError: the server rejected or failed the query
        """
        router = self._require_open()
        optargs = build_global_optargs(global_optargs, self.db)
        noreply = bool(optargs.get('noreply', False))

        pending = await router.submit(term, optargs, noreply=noreply)
        if noreply:
            return None
        return await self._await_pending(router, pending, timeout)

    async def noreply_wait(self):
        """Wait until every no-reply query issued so far has executed"""
        router = self._require_open()
        await router.wait_for_noreply()

    async def server(self) -> Dict[str, Any]:
        """Identity of the server this connection is attached to"""
        router = self._require_open()
        pending = await router.server_info()
        return await self._await_pending(router, pending, None)

    async def _await_pending(self, router: ResponseRouter, pending: PendingRequest,
                             timeout: Optional[float]) -> Any:
        try:
            if timeout is None:
                return await pending.future
            return await asyncio.wait_for(asyncio.shield(pending.future), timeout)
        except asyncio.TimeoutError:
            await router.cancel(pending.token, QueryTimeout(f"Query timed out after {timeout} seconds."))
            return await pending.future
        except asyncio.CancelledError:
            if not pending.future.done():
                pending.future.cancel()
            await router.cancel(pending.token)
            raise

    def _require_open(self) -> ResponseRouter:
        if not self.is_open():
            raise ConnectionClosed()
        return self._router

    # ========== Context manager ==========

    async def __aenter__(self) -> "Connection":
        return await self.connect()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def __repr__(self) -> str:
        state = "open" if self.is_open() else "closed"
        return f"<Connection {self.host}:{self.port} db={self.db!r} {state}>"


async def connect(config: Optional[ConnectionConfig] = None, **options: Any) -> Connection:
    """
    Create and open a connection.

    Options (all optional): host, port, db, auth_key, user, password,
    timeout, handshake_version, ssl.

    Raises:
        InvalidArgument: invalid or unrecognized options
    """
    config = (config or ConnectionConfig()).with_overrides(**options).ensure_valid()
    return await Connection(config).connect()


__all__ = [
    "CONNECT",
    "CLOSE",
    "Connection",
    "connect",
]
