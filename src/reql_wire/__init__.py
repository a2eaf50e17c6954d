"""
reql-wire: asyncio driver core for ReQL servers

Connection establishment and handshake, authentication, multiplexed query
execution and cancellation over one TCP connection, streamed cursors, and
shutdown with no-reply draining. Query terms are built elsewhere and sent
as opaque JSON.

Example usage:
    ```python
    import asyncio
    import reql_wire

    async def main():
        conn = await reql_wire.connect(host="localhost", db="test", auth_key="hunter2")
        conn.add_listener("close", lambda c: print("closed", c))

        value = await conn.run([1, [2]])          # atom -> value
        await conn.run([1, [3]], noreply=True)    # fire and forget
        await conn.noreply_wait()                 # ...until it has run

        await conn.close()

    asyncio.run(main())
    ```
"""

from .config import ConnectionConfig
from .connection import CLOSE, CONNECT, Connection, connect
from .cursor import Cursor
from .callbacks import with_callback
from .exceptions import (
    AuthenticationRejected,
    ClientQueryError,
    CompileError,
    ConnectFailed,
    ConnectionClosed,
    ConnectRefused,
    ConnectTimeout,
    CursorEmpty,
    DriverCompileError,
    DriverError,
    HandshakeTimeout,
    InvalidArgument,
    ProtocolViolation,
    QueryCancelled,
    QueryTimeout,
    ReqlError,
    RuntimeQueryError,
    ServerError,
    Unreachable,
    is_connectivity_error,
)
from .query import Query
from .reconnect import ConnectionCache

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "CONNECT",
    "CLOSE",
    "Connection",
    "ConnectionCache",
    "ConnectionConfig",
    "Cursor",
    "Query",
    "connect",
    "with_callback",
    "is_connectivity_error",
    "ReqlError",
    "DriverError",
    "ConnectFailed",
    "ConnectTimeout",
    "ConnectRefused",
    "Unreachable",
    "HandshakeTimeout",
    "AuthenticationRejected",
    "ConnectionClosed",
    "ProtocolViolation",
    "QueryTimeout",
    "QueryCancelled",
    "CursorEmpty",
    "InvalidArgument",
    "DriverCompileError",
    "ServerError",
    "ClientQueryError",
    "CompileError",
    "RuntimeQueryError",
]
