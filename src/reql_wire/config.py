"""
Connection configuration

Connection parameters with validation and environment overrides:

    REQL_HOST, REQL_PORT, REQL_DB, REQL_AUTH_KEY, REQL_USER, REQL_PASSWORD,
    REQL_TIMEOUT, REQL_HANDSHAKE_VERSION
"""

import os
from dataclasses import dataclass, fields, replace
from ssl import SSLContext
from typing import Any, List, Optional

from .exceptions import InvalidArgument
from .protocol import HANDSHAKE_VERSIONS

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 28015
DEFAULT_USER = "admin"
DEFAULT_TIMEOUT = 20.0

ENV_PREFIX = "REQL_"


@dataclass
class ConnectionConfig:
    """Parameters for one server connection"""
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    db: Optional[str] = None
    auth_key: str = ""
    user: str = DEFAULT_USER
    password: str = ""
    timeout: float = DEFAULT_TIMEOUT
    handshake_version: str = "V0_4"
    ssl: Optional[SSLContext] = None

    def validate(self) -> List[str]:
        """
        Validate configuration parameters.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []

        if not self.host:
            errors.append("host must not be empty")

        if not isinstance(self.port, int) or not (1 <= self.port <= 65535):
            errors.append(f"Port must be 1-65535, got {self.port}")

        if not isinstance(self.timeout, (int, float)) or self.timeout <= 0:
            errors.append(f"timeout must be > 0, got {self.timeout}")

        if self.handshake_version not in HANDSHAKE_VERSIONS:
            errors.append(
                f"handshake_version must be one of {', '.join(HANDSHAKE_VERSIONS)}, "
                f"got {self.handshake_version}"
            )

        if self.handshake_version == "V1_0" and self.auth_key:
            errors.append("auth_key is only used by the V0_4 handshake; use user/password with V1_0")

        return errors

    def ensure_valid(self) -> "ConnectionConfig":
        """
        Raises:
            InvalidArgument: listing every validation problem
        """
        errors = self.validate()
        if errors:
            raise InvalidArgument("Invalid connection configuration: " + "; ".join(errors))
        return self

    def with_overrides(self, **overrides: Any) -> "ConnectionConfig":
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise InvalidArgument(f"Unrecognized connection option `{unknown[0]}`.")
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @classmethod
    def from_env(cls, **overrides: Any) -> "ConnectionConfig":
        """
        Build a config from REQL_* environment variables.

        Keyword arguments take precedence over the environment.
        """
        env = os.environ
        values: dict = {}
        if f"{ENV_PREFIX}HOST" in env:
            values["host"] = env[f"{ENV_PREFIX}HOST"]
        if f"{ENV_PREFIX}PORT" in env:
            values["port"] = _parse_number(int, "PORT", env[f"{ENV_PREFIX}PORT"])
        if f"{ENV_PREFIX}DB" in env:
            values["db"] = env[f"{ENV_PREFIX}DB"]
        if f"{ENV_PREFIX}AUTH_KEY" in env:
            values["auth_key"] = env[f"{ENV_PREFIX}AUTH_KEY"]
        if f"{ENV_PREFIX}USER" in env:
            values["user"] = env[f"{ENV_PREFIX}USER"]
        if f"{ENV_PREFIX}PASSWORD" in env:
            values["password"] = env[f"{ENV_PREFIX}PASSWORD"]
        if f"{ENV_PREFIX}TIMEOUT" in env:
            values["timeout"] = _parse_number(float, "TIMEOUT", env[f"{ENV_PREFIX}TIMEOUT"])
        if f"{ENV_PREFIX}HANDSHAKE_VERSION" in env:
            values["handshake_version"] = env[f"{ENV_PREFIX}HANDSHAKE_VERSION"]
        return cls(**values).with_overrides(**overrides)


def _parse_number(kind, name: str, raw: str):
    try:
        return kind(raw)
    except ValueError:
        raise InvalidArgument(f"{ENV_PREFIX}{name} must be a number, got {raw!r}")
