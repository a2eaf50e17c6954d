"""
SCRAM-SHA-256 client (RFC 5802 / RFC 7677)

Builds the client-first and client-final messages for the V1_0 handshake and
verifies the server's final signature. Channel binding is not supported
("n,," GS2 header).
"""

import base64
import hashlib
import hmac
import secrets
from typing import Dict, Optional

GS2_HEADER = "n,,"
CHANNEL_BINDING = base64.b64encode(GS2_HEADER.encode('ascii')).decode('ascii')  # "biws"


def generate_nonce() -> str:
    """18 random bytes, base64 encoded"""
    return base64.b64encode(secrets.token_bytes(18)).decode('ascii')


def escape_username(username: str) -> str:
    """SCRAM saslname escaping: '=' -> '=3D', ',' -> '=2C'"""
    return username.replace('=', '=3D').replace(',', '=2C')


def parse_attributes(message: str) -> Dict[str, str]:
    """Split 'a=1,b=2' into a dict; values may contain '='"""
    attributes = {}
    for part in message.split(','):
        if len(part) < 2 or part[1] != '=':
            raise ValueError(f"Invalid SCRAM attribute: {part!r}")
        attributes[part[0]] = part[2:]
    return attributes


def _hmac(key: bytes, message: bytes) -> bytes:
    return hmac.new(key, message, hashlib.sha256).digest()


def _xor(left: bytes, right: bytes) -> bytes:
    return bytes(a ^ b for a, b in zip(left, right))


class ScramClient:
    """
    Client side of one SCRAM-SHA-256 exchange.

    Usage:
        client = ScramClient(user, password)
        first = client.client_first_message()
        final = client.client_final_message(server_first)
        client.verify_server_final(server_final)
    """

    def __init__(self, username: str, password: str, nonce: Optional[str] = None):
        self.username = username
        self.password = password
        self.client_nonce = nonce or generate_nonce()
        self.client_first_bare = f"n={escape_username(username)},r={self.client_nonce}"
        self._server_signature: Optional[bytes] = None

    def client_first_message(self) -> str:
        return GS2_HEADER + self.client_first_bare

    def client_final_message(self, server_first: str) -> str:
        """
        Compute the proof for the server's challenge.

        Raises:
            ValueError: malformed challenge or nonce not extending ours
        """
        attributes = parse_attributes(server_first)
        try:
            nonce = attributes['r']
            salt = base64.b64decode(attributes['s'])
            iterations = int(attributes['i'])
        except (KeyError, ValueError) as e:
            raise ValueError(f"Invalid SCRAM server-first message: {server_first!r}") from e

        if not nonce.startswith(self.client_nonce):
            raise ValueError("SCRAM server nonce does not extend the client nonce")

        salted_password = hashlib.pbkdf2_hmac(
            'sha256', self.password.encode('utf-8'), salt, iterations
        )
        client_key = _hmac(salted_password, b"Client Key")
        stored_key = hashlib.sha256(client_key).digest()
        server_key = _hmac(salted_password, b"Server Key")

        without_proof = f"c={CHANNEL_BINDING},r={nonce}"
        auth_message = ",".join([self.client_first_bare, server_first, without_proof]).encode('utf-8')

        client_signature = _hmac(stored_key, auth_message)
        proof = _xor(client_key, client_signature)
        self._server_signature = _hmac(server_key, auth_message)

        return f"{without_proof},p={base64.b64encode(proof).decode('ascii')}"

    def verify_server_final(self, server_final: str) -> bool:
        """Constant-time comparison of the server signature"""
        if self._server_signature is None:
            raise ValueError("client_final_message() has not been computed")
        attributes = parse_attributes(server_final)
        if 'v' not in attributes:
            return False
        try:
            signature = base64.b64decode(attributes['v'])
        except ValueError:
            return False
        return hmac.compare_digest(signature, self._server_signature)
