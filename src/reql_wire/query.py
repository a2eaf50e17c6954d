"""
Query façade

Thin wrapper pairing an already-serialized term with the connection that
runs it. Building terms is the job of the expression layer above.
"""

from typing import Any

from .connection import Connection
from .exceptions import InvalidArgument


class Query:
    """A serialized ReQL term, sent to the server as-is"""

    def __init__(self, term: Any):
        self.term = term

    async def run(self, conn: Connection, **options: Any) -> Any:
        """
        Run the term on `conn`.

        Raises:
            InvalidArgument: `conn` is not a Connection
        """
        if not isinstance(conn, Connection):
            raise InvalidArgument("First argument to run must be an open connection.")
        return await conn.run(self.term, **options)

    def __repr__(self) -> str:
        return f"<Query {self.term!r}>"
