"""
Caller-level reconnection

ConnectionCache hands out one shared connection. Before reuse it probes the
cached connection with a SERVER_INFO request; when the probe fails with a
connectivity error the stale connection is dropped and replaced. Nothing in
the protocol core does this on its own.
"""

import asyncio
from typing import Any, Optional

import structlog

from .config import ConnectionConfig
from .connection import Connection
from .exceptions import is_connectivity_error

logger = structlog.get_logger()

DEFAULT_PROBE_TIMEOUT = 5.0


class ConnectionCache:
    """
    Lazily connected, self-healing shared connection.

    Example:
        cache = ConnectionCache(ConnectionConfig(host="db1"))
        conn = await cache.get()
        await conn.run(term)
    """

    def __init__(self, config: Optional[ConnectionConfig] = None,
                 probe_timeout: float = DEFAULT_PROBE_TIMEOUT, **options: Any):
        self.config = (config or ConnectionConfig()).with_overrides(**options).ensure_valid()
        self.probe_timeout = probe_timeout
        self._connection: Optional[Connection] = None
        self._lock = asyncio.Lock()
        self.replacements = 0

    @property
    def connection(self) -> Optional[Connection]:
        return self._connection

    async def get(self) -> Connection:
        """
        Return a usable connection, replacing the cached one if it is dead.

        Raises:
            DriverError: a fresh connection could not be established
        """
        async with self._lock:
            conn = self._connection
            if conn is not None and await self._probe(conn):
                return conn

            if conn is not None:
                self.replacements += 1
                logger.info("Replacing stale connection",
                            host=self.config.host, port=self.config.port,
                            replacements=self.replacements)
                await conn.close(noreply_wait=False)

            self._connection = None
            self._connection = await Connection(self.config).connect()
            return self._connection

    async def _probe(self, conn: Connection) -> bool:
        try:
            await asyncio.wait_for(conn.server(), timeout=self.probe_timeout)
        except asyncio.TimeoutError:
            logger.warning("Connection probe timed out",
                           host=self.config.host, port=self.config.port,
                           timeout=self.probe_timeout)
            return False
        except Exception as e:
            if is_connectivity_error(e):
                logger.debug("Connection probe failed", error=str(e))
                return False
            raise
        return True

    async def close(self, noreply_wait: bool = True):
        async with self._lock:
            conn, self._connection = self._connection, None
            if conn is not None:
                await conn.close(noreply_wait=noreply_wait)
