"""
TCP Transport

Owns the single asyncio stream pair to one server endpoint. Provides framed
send/receive for query traffic and NUL-terminated reads for the handshake.
Short reads are reassembled by StreamReader.readexactly; EOF or a reset
surfaces as ConnectionClosed.
"""

import asyncio
import ssl
from typing import Optional, Tuple

import structlog

from .exceptions import ConnectionClosed, ConnectRefused, ConnectTimeout, Unreachable
from .protocol import FRAME_HEADER_SIZE, pack_frame, unpack_header

logger = structlog.get_logger()


class Transport:
    """Bidirectional byte stream to a single server"""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 host: str, port: int):
        self.reader = reader
        self.writer = writer
        self.host = host
        self.port = port
        self._write_lock = asyncio.Lock()
        self._closed = False

    @classmethod
    async def open(cls, host: str, port: int, timeout: float,
                   ssl_context: Optional[ssl.SSLContext] = None) -> "Transport":
        """
        Open a TCP (optionally TLS) connection.

        Raises:
            ConnectTimeout: remote did not accept before `timeout`
            ConnectRefused: OS refused the connection
            Unreachable: any other OS-level connect failure
        """
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port, ssl=ssl_context),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Connect timed out", host=host, port=port, timeout=timeout)
            raise ConnectTimeout(f"Could not connect to {host}:{port}, operation timed out.")
        except ConnectionRefusedError as e:
            logger.warning("Connect refused", host=host, port=port, error=str(e))
            raise ConnectRefused(f"Could not connect to {host}:{port}.\n{e}") from e
        except OSError as e:
            logger.warning("Connect failed", host=host, port=port, error=str(e))
            raise Unreachable(f"Could not connect to {host}:{port}.\n{e}") from e

        logger.debug("Transport open", host=host, port=port, tls=ssl_context is not None)
        return cls(reader, writer, host, port)

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, data: bytes):
        """Write raw bytes; concurrent senders never interleave"""
        if self._closed:
            raise ConnectionClosed()
        async with self._write_lock:
            try:
                self.writer.write(data)
                await self.writer.drain()
            except (ConnectionError, OSError) as e:
                logger.warning("Transport write failed", host=self.host, port=self.port, error=str(e))
                raise ConnectionClosed() from e

    async def send_frame(self, token: int, payload: bytes):
        await self.send(pack_frame(token, payload))

    async def receive_frame(self) -> Tuple[int, bytes]:
        """
        Read one complete frame.

        Returns:
            (token, payload)

        Raises:
            ConnectionClosed: stream ended or was reset
        """
        try:
            header = await self.reader.readexactly(FRAME_HEADER_SIZE)
            token, length = unpack_header(header)
            payload = await self.reader.readexactly(length) if length > 0 else b''
        except asyncio.IncompleteReadError as e:
            logger.debug("Stream ended mid-frame",
                         host=self.host, port=self.port,
                         bytes_read=len(e.partial))
            raise ConnectionClosed() from e
        except (ConnectionError, OSError) as e:
            raise ConnectionClosed() from e
        return token, payload

    async def receive_null_terminated(self) -> bytes:
        """
        Read a NUL-terminated handshake reply, without the terminator.

        If the server closes the stream before the terminator, the partial
        text is returned so the server's reason for hanging up is not lost.
        """
        try:
            data = await self.reader.readuntil(b'\x00')
        except asyncio.IncompleteReadError as e:
            return e.partial
        except (ConnectionError, OSError):
            return b''
        return data[:-1]

    async def close(self):
        """Close the socket; safe to call more than once"""
        if self._closed:
            return
        self._closed = True
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug("Error while closing transport", host=self.host, port=self.port, error=str(e))
        logger.debug("Transport closed", host=self.host, port=self.port)
