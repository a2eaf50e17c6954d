"""
Handshake Negotiation

Runs once per transport before any query traffic:

V0_4 (auth key):
1. Send magic + auth key + protocol magic in one write
2. Read NUL-terminated reply: "SUCCESS" or the server's reason for dropping us

V1_0 (SCRAM-SHA-256):
1. Send magic + client-first JSON
2. Read server version JSON
3. Read server-first (challenge)
4. Send client-final (proof)
5. Read server-final and verify the server signature

The whole exchange runs under one wall-clock deadline.
"""

import asyncio
import json
from enum import Enum
from typing import Any, Dict, Optional

import structlog

from .exceptions import AuthenticationRejected, DriverError, HandshakeTimeout
from .protocol import (
    SCRAM_SHA_256,
    V1_0,
    encode_handshake_message,
    encode_handshake_v0_4,
)
from .scram import ScramClient
from .transport import Transport

logger = structlog.get_logger()

CLIENT_PROTOCOL_VERSION = 0


class HandshakeState(Enum):
    START = "start"
    VERSION_SENT = "version_sent"
    AUTH_CHALLENGE_RECEIVED = "auth_challenge_received"
    AUTH_RESPONSE_SENT = "auth_response_sent"
    READY = "ready"
    FAILED = "failed"


def dropped_connection(message: str) -> AuthenticationRejected:
    return AuthenticationRejected(f'Server dropped connection with message: "{message.strip()}"')


class HandshakeNegotiator:
    """
    Version/authentication negotiation for one transport.

    After negotiate() returns, `state` is READY and `version` holds the
    negotiated handshake version ("V0_4" or "V1_0").
    """

    def __init__(self, version: str = "V0_4", auth_key: str = "",
                 user: str = "admin", password: str = ""):
        self.requested_version = version
        self.auth_key = auth_key
        self.user = user
        self.password = password
        self.state = HandshakeState.START
        self.version: Optional[str] = None
        self.server_version: Optional[str] = None

    async def negotiate(self, transport: Transport, timeout: float):
        """
        Run the handshake under `timeout` seconds.

        Raises:
            HandshakeTimeout: no complete answer before the deadline
            AuthenticationRejected: server refused us, with its verbatim text
            DriverError: any other handshake failure
        """
        logger.debug("Starting handshake",
                     host=transport.host, port=transport.port,
                     version=self.requested_version)
        try:
            await asyncio.wait_for(self._negotiate(transport), timeout=timeout)
        except asyncio.TimeoutError:
            self.state = HandshakeState.FAILED
            logger.warning("Handshake timed out",
                           host=transport.host, port=transport.port, timeout=timeout)
            raise HandshakeTimeout()
        except DriverError:
            self.state = HandshakeState.FAILED
            raise

        logger.info("✅ Handshake complete",
                    host=transport.host, port=transport.port,
                    version=self.version, server_version=self.server_version)

    async def _negotiate(self, transport: Transport):
        if self.requested_version == "V0_4":
            await self._negotiate_v0_4(transport)
        elif self.requested_version == "V1_0":
            await self._negotiate_v1_0(transport)
        else:
            raise DriverError(f"Unsupported handshake version: {self.requested_version}")

    async def _negotiate_v0_4(self, transport: Transport):
        await transport.send(encode_handshake_v0_4(self.auth_key))
        self.state = HandshakeState.VERSION_SENT

        reply = await transport.receive_null_terminated()
        message = reply.decode('utf-8', errors='replace')
        if message != "SUCCESS":
            raise dropped_connection(message)

        self.version = "V0_4"
        self.state = HandshakeState.READY

    async def _negotiate_v1_0(self, transport: Transport):
        scram = ScramClient(self.user, self.password)
        first = encode_handshake_message({
            "protocol_version": CLIENT_PROTOCOL_VERSION,
            "authentication_method": SCRAM_SHA_256,
            "authentication": scram.client_first_message(),
        })
        await transport.send(V1_0.to_bytes(4, 'little') + first)
        self.state = HandshakeState.VERSION_SENT

        server_info = await self._read_json(transport)
        min_version = server_info.get("min_protocol_version", 0)
        max_version = server_info.get("max_protocol_version", 0)
        if not min_version <= CLIENT_PROTOCOL_VERSION <= max_version:
            raise DriverError(
                f"Unsupported protocol version {CLIENT_PROTOCOL_VERSION}, "
                f"expected between {min_version} and {max_version}."
            )
        self.server_version = server_info.get("server_version")

        challenge = await self._read_json(transport)
        self.state = HandshakeState.AUTH_CHALLENGE_RECEIVED
        try:
            client_final = scram.client_final_message(challenge.get("authentication", ""))
        except ValueError as e:
            raise DriverError(f"Invalid authentication challenge: {e}") from e

        await transport.send(encode_handshake_message({"authentication": client_final}))
        self.state = HandshakeState.AUTH_RESPONSE_SENT

        final = await self._read_json(transport)
        try:
            verified = scram.verify_server_final(final.get("authentication", ""))
        except ValueError:
            verified = False
        if not verified:
            raise AuthenticationRejected("Invalid server signature during authentication.")

        self.version = "V1_0"
        self.state = HandshakeState.READY

    async def _read_json(self, transport: Transport) -> Dict[str, Any]:
        """
        Read one V1_0 handshake reply.

        Servers that do not speak V1_0 answer with plain text and hang up;
        that text is reported verbatim.
        """
        reply = await transport.receive_null_terminated()
        text = reply.decode('utf-8', errors='replace')
        try:
            message = json.loads(text)
        except ValueError:
            raise dropped_connection(text)
        if not isinstance(message, dict):
            raise dropped_connection(text)

        if not message.get("success"):
            error = message.get("error") or "Unknown handshake error"
            error_code = message.get("error_code")
            if isinstance(error_code, int) and 10 <= error_code <= 20:
                raise AuthenticationRejected(error)
            raise DriverError(error)
        return message
