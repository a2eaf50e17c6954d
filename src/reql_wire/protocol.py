"""
ReQL Wire Protocol Definitions

Constants and codecs for the JSON flavour of the ReQL wire protocol.

Frame layout (both directions):
- Token: 8 bytes, little-endian unsigned
- Length: 4 bytes, little-endian unsigned (payload only)
- Payload: UTF-8 JSON

Request payloads are JSON arrays ([START, term, optargs], [CONTINUE], ...).
Response payloads are JSON objects keyed by single letters (t, r, b, p, n).
"""

import json
import struct
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from .exceptions import DriverCompileError, ProtocolViolation

# Handshake magic numbers
V0_4 = 0x400c2d20
V1_0 = 0x34c2bdc3
JSON_PROTOCOL = 0x7e6970c7

HANDSHAKE_VERSIONS = ("V0_4", "V1_0")
SCRAM_SHA_256 = "SCRAM-SHA-256"

# Frame header: token (u64) + payload length (u32)
FRAME_HEADER = struct.Struct('<QL')
FRAME_HEADER_SIZE = FRAME_HEADER.size

# Query types
QUERY_START = 1
QUERY_CONTINUE = 2
QUERY_STOP = 3
QUERY_NOREPLY_WAIT = 4
QUERY_SERVER_INFO = 5

# Response types
SUCCESS_ATOM = 1
SUCCESS_SEQUENCE = 2
SUCCESS_PARTIAL = 3
WAIT_COMPLETE = 4
SERVER_INFO = 5
CLIENT_ERROR = 16
COMPILE_ERROR = 17
RUNTIME_ERROR = 18

ERROR_RESPONSES = (CLIENT_ERROR, COMPILE_ERROR, RUNTIME_ERROR)
TERMINAL_RESPONSES = (
    SUCCESS_ATOM,
    SUCCESS_SEQUENCE,
    WAIT_COMPLETE,
    SERVER_INFO,
) + ERROR_RESPONSES

# Term type for r.db(name), used for the connection's default database
TERM_DB = 14

GLOBAL_OPTARGS = frozenset([
    'array_limit',
    'binary_format',
    'db',
    'durability',
    'first_batch_scaledown_factor',
    'group_format',
    'max_batch_bytes',
    'max_batch_rows',
    'max_batch_seconds',
    'min_batch_rows',
    'noreply',
    'profile',
    'read_mode',
    'time_format',
    'use_outdated',
])


def pack_frame(token: int, payload: bytes) -> bytes:
    """Prefix a payload with its token and length"""
    return FRAME_HEADER.pack(token, len(payload)) + payload


def unpack_header(header: bytes) -> Tuple[int, int]:
    """Return (token, payload_length) from a 12-byte header"""
    if len(header) != FRAME_HEADER_SIZE:
        raise ProtocolViolation(
            f"Invalid frame header length {len(header)}, expected {FRAME_HEADER_SIZE}."
        )
    return FRAME_HEADER.unpack(header)


def db_term(name: str) -> list:
    """Serialized r.db(name) term"""
    return [TERM_DB, [name]]


def validate_global_optargs(optargs: Mapping[str, Any]) -> None:
    """
    Reject options the server would not understand.

    Raises:
        DriverCompileError: naming the first unrecognized option
    """
    for key in sorted(optargs):
        if key not in GLOBAL_OPTARGS:
            available = ", ".join(sorted(GLOBAL_OPTARGS))
            raise DriverCompileError(
                f"Unrecognized option `{key}` in `run`. Available options are {available}."
            )


def build_global_optargs(optargs: Mapping[str, Any], default_db: Optional[str]) -> Dict[str, Any]:
    """
    Validate and serialize run() options.

    A plain string `db` is wrapped into a db term; the connection's default
    database fills in when the caller did not name one.
    """
    validate_global_optargs(optargs)
    serialized = dict(optargs)
    if 'db' in serialized:
        if isinstance(serialized['db'], str):
            serialized['db'] = db_term(serialized['db'])
    elif default_db is not None:
        serialized['db'] = db_term(default_db)
    return serialized


def encode_start(term: Any, optargs: Mapping[str, Any]) -> bytes:
    """Serialize a START query"""
    return _dumps([QUERY_START, term, dict(optargs)])


def encode_simple(query_type: int) -> bytes:
    """Serialize a CONTINUE, STOP, NOREPLY_WAIT or SERVER_INFO query"""
    return _dumps([query_type])


def decode_response(payload: bytes) -> Dict[str, Any]:
    """
    Parse a response payload.

    Raises:
        ProtocolViolation: payload is not a JSON object with a type tag
    """
    try:
        response = json.loads(payload.decode('utf-8'))
    except (UnicodeDecodeError, ValueError) as e:
        raise ProtocolViolation(f"Invalid response payload: {e}") from e

    if not isinstance(response, dict) or 't' not in response:
        raise ProtocolViolation("Response payload is missing its type tag.")
    return response


def encode_handshake_v0_4(auth_key: str) -> bytes:
    """
    V0_4 handshake: magic, auth key length, auth key, protocol magic.

    The whole handshake goes out in a single write.
    """
    key = (auth_key or "").encode('utf-8')
    return struct.pack('<L', V0_4) + struct.pack('<L', len(key)) + key + struct.pack('<L', JSON_PROTOCOL)


def encode_handshake_message(message: Mapping[str, Any]) -> bytes:
    """V1_0 handshake messages are NUL-terminated JSON objects"""
    return _dumps(message) + b'\x00'


def response_items(response: Mapping[str, Any]) -> Iterable[Any]:
    return response.get('r') or []


def _dumps(value: Any) -> bytes:
    return json.dumps(value, separators=(',', ':'), ensure_ascii=False).encode('utf-8')


__all__ = [
    "V0_4",
    "V1_0",
    "JSON_PROTOCOL",
    "HANDSHAKE_VERSIONS",
    "FRAME_HEADER_SIZE",
    "GLOBAL_OPTARGS",
    "pack_frame",
    "unpack_header",
    "db_term",
    "validate_global_optargs",
    "build_global_optargs",
    "encode_start",
    "encode_simple",
    "decode_response",
    "encode_handshake_v0_4",
    "encode_handshake_message",
]
