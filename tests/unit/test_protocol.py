"""
Unit tests for wire protocol framing and serialization
"""

import json
import struct

import pytest

from reql_wire import protocol
from reql_wire.exceptions import DriverCompileError, ProtocolViolation


@pytest.mark.unit
class TestFraming:
    """Frame header packing and unpacking"""

    def test_pack_frame_layout(self):
        """Token u64 LE, length u32 LE, then the payload"""
        frame = protocol.pack_frame(7, b'[1]')

        assert frame[:8] == (7).to_bytes(8, 'little')
        assert frame[8:12] == (3).to_bytes(4, 'little')
        assert frame[12:] == b'[1]'

    def test_unpack_header(self):
        header = protocol.pack_frame(2 ** 40, b'x' * 5)[:protocol.FRAME_HEADER_SIZE]

        assert protocol.unpack_header(header) == (2 ** 40, 5)

    def test_unpack_short_header(self):
        """A truncated header is a protocol violation, not a struct error"""
        with pytest.raises(ProtocolViolation):
            protocol.unpack_header(b'\x01\x00')


@pytest.mark.unit
class TestQueries:
    """Request payload encoding"""

    def test_encode_start(self):
        payload = protocol.encode_start([1, [2]], {"noreply": True})

        assert json.loads(payload) == [protocol.QUERY_START, [1, [2]], {"noreply": True}]

    def test_encode_simple(self):
        assert json.loads(protocol.encode_simple(protocol.QUERY_CONTINUE)) == [2]
        assert json.loads(protocol.encode_simple(protocol.QUERY_STOP)) == [3]
        assert json.loads(protocol.encode_simple(protocol.QUERY_NOREPLY_WAIT)) == [4]

    def test_encode_start_is_compact_utf8(self):
        payload = protocol.encode_start("héllo", {})

        assert b' ' not in payload
        assert "héllo".encode('utf-8') in payload


@pytest.mark.unit
class TestGlobalOptargs:
    """run() option validation and db wrapping"""

    def test_unrecognized_option_message(self):
        """The error names the option and lists every accepted one"""
        with pytest.raises(DriverCompileError) as exc_info:
            protocol.validate_global_optargs({"nonsense": 1})

        available = ", ".join(sorted(protocol.GLOBAL_OPTARGS))
        assert str(exc_info.value) == (
            f"Unrecognized option `nonsense` in `run`. Available options are {available}."
        )

    def test_known_options_pass(self):
        protocol.validate_global_optargs({"noreply": True, "read_mode": "outdated", "profile": False})

    def test_default_db_added(self):
        optargs = protocol.build_global_optargs({}, "blog")

        assert optargs == {"db": [protocol.TERM_DB, ["blog"]]}

    def test_explicit_db_wins(self):
        optargs = protocol.build_global_optargs({"db": "other"}, "blog")

        assert optargs["db"] == [protocol.TERM_DB, ["other"]]

    def test_no_default_db(self):
        assert protocol.build_global_optargs({"noreply": True}, None) == {"noreply": True}

    def test_caller_mapping_not_mutated(self):
        options = {"db": "x"}
        protocol.build_global_optargs(options, None)

        assert options == {"db": "x"}


@pytest.mark.unit
class TestResponses:
    """Response payload decoding"""

    def test_decode_atom(self):
        response = protocol.decode_response(b'{"t":1,"r":[42]}')

        assert response["t"] == protocol.SUCCESS_ATOM
        assert list(protocol.response_items(response)) == [42]

    def test_decode_invalid_json(self):
        with pytest.raises(ProtocolViolation):
            protocol.decode_response(b'{not json')

    def test_decode_missing_type(self):
        with pytest.raises(ProtocolViolation):
            protocol.decode_response(b'{"r":[]}')

    def test_decode_non_object(self):
        with pytest.raises(ProtocolViolation):
            protocol.decode_response(b'[1,2]')


@pytest.mark.unit
class TestHandshakeEncoding:
    """Handshake byte layouts"""

    def test_v0_4_handshake(self):
        data = protocol.encode_handshake_v0_4("hunter2")

        magic, key_length = struct.unpack('<LL', data[:8])
        assert magic == protocol.V0_4
        assert key_length == 7
        assert data[8:15] == b'hunter2'
        assert struct.unpack('<L', data[15:])[0] == protocol.JSON_PROTOCOL

    def test_v0_4_empty_key(self):
        data = protocol.encode_handshake_v0_4("")

        assert len(data) == 12
        assert struct.unpack('<L', data[4:8])[0] == 0

    def test_v1_0_message_nul_terminated(self):
        data = protocol.encode_handshake_message({"protocol_version": 0})

        assert data.endswith(b'\x00')
        assert json.loads(data[:-1]) == {"protocol_version": 0}
