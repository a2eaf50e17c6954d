"""
ReQL driver exceptions

Every error carries a stable, literal message so callers can match on text
as well as on type. Driver-side failures derive from DriverError; failures
reported by the server for a specific query derive from ServerError.
"""

from typing import Any, Optional


class ReqlError(Exception):
    """Base exception for all ReQL driver errors"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class DriverError(ReqlError):
    """Error generated by the driver rather than the server"""
    pass


class ConnectFailed(DriverError):
    """TCP connection to the server could not be established"""
    pass


class ConnectTimeout(ConnectFailed):
    """Remote did not accept the TCP connection before the deadline"""
    pass


class ConnectRefused(ConnectFailed):
    """Operating system refused the TCP connection"""
    pass


class Unreachable(ConnectFailed):
    """Host could not be resolved or reached"""
    pass


class HandshakeTimeout(DriverError):
    """Server did not complete the handshake before the deadline"""

    def __init__(self, message: str = "Handshake timedout"):
        super().__init__(message)


class AuthenticationRejected(DriverError):
    """Server dropped the connection during the handshake"""
    pass


class ConnectionClosed(DriverError):
    """Operation attempted on a closed connection"""

    def __init__(self, message: str = "Connection is closed."):
        super().__init__(message)


class ProtocolViolation(DriverError):
    """Server sent something the protocol does not allow (fatal)"""
    pass


class QueryTimeout(DriverError):
    """Per-query deadline expired"""
    pass


class QueryCancelled(DriverError):
    """Query was cancelled by the caller"""

    def __init__(self, message: str = "Query was cancelled."):
        super().__init__(message)


class CursorEmpty(DriverError):
    """No more rows in the cursor"""

    def __init__(self, message: str = "No more rows in the cursor."):
        super().__init__(message)


class InvalidArgument(DriverError):
    """Bad option names, missing arguments or a non-open connection"""
    pass


class DriverCompileError(InvalidArgument):
    """Query options rejected before anything was sent"""
    pass


class ServerError(ReqlError):
    """Query failed on the server; message is the server's verbatim text"""

    def __init__(self, message: str, term: Any = None, backtrace: Optional[list] = None):
        super().__init__(message)
        self.term = term
        self.backtrace = backtrace or []


class ClientQueryError(ServerError):
    """Server reports the client sent a malformed query"""
    pass


class CompileError(ServerError):
    """Server could not compile the query"""
    pass


class RuntimeQueryError(ServerError):
    """Query failed while executing"""
    pass


CONNECTIVITY_ERRORS = (
    ConnectFailed,
    HandshakeTimeout,
    ConnectionClosed,
    ProtocolViolation,
    QueryTimeout,
)


def is_connectivity_error(exc: BaseException) -> bool:
    """True when the error means the connection itself is unusable"""
    return isinstance(exc, CONNECTIVITY_ERRORS)
