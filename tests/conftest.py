"""
Pytest configuration for reql-wire tests

Unit tests exercise protocol pieces in isolation (mocked send, no sockets).
Integration tests run the real driver against the in-process server in
tests/reql_server.py over loopback TCP.
"""

import socket
import sys
from pathlib import Path

import pytest
import structlog

sys.path.insert(0, str(Path(__file__).parent))

from reql_server import FakeReqlServer, SilentServer  # noqa: E402

from reql_wire import connect  # noqa: E402
from reql_wire.logging_config import configure_logging  # noqa: E402

logger = structlog.get_logger()


def pytest_configure(config):
    """Register markers and quiet driver logging"""
    config.addinivalue_line("markers", "unit: fast tests without sockets")
    config.addinivalue_line("markers", "integration: tests against the in-process server")
    configure_logging(level="WARNING")


@pytest.fixture
async def reql_server():
    """Server accepting the empty auth key and the admin user"""
    server = await FakeReqlServer().start()
    logger.debug("Fake server started", port=server.port)
    yield server
    await server.stop()


@pytest.fixture
async def auth_server():
    """Server requiring auth key `hunter2`"""
    server = await FakeReqlServer(auth_key="hunter2").start()
    yield server
    await server.stop()


@pytest.fixture
async def scram_server():
    """Server with SCRAM users `admin` (no password) and `alice`"""
    server = await FakeReqlServer(users={"admin": "", "alice": "s3cret"}).start()
    yield server
    await server.stop()


@pytest.fixture
async def silent_server():
    """Accepts TCP connections but never answers the handshake"""
    server = await SilentServer().start()
    yield server
    await server.stop()


@pytest.fixture
async def conn(reql_server):
    """Open connection to reql_server, closed without draining afterwards"""
    connection = await connect(host=reql_server.host, port=reql_server.port)
    yield connection
    await connection.close(noreply_wait=False)


@pytest.fixture
def closed_port() -> int:
    """A loopback port with nothing listening on it"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
