"""Exception hierarchy for the MCP client runtime.

Failures are local to one server: the manager turns transport failures into
an ``error`` status and request-level failures are surfaced to the caller of
that one request.

Exception Hierarchy:
    MCPError (base)
    ├── ConfigError - Bad or unwritable configuration
    ├── NotFoundError - Unknown server or registry entry id
    └── ServerError - Errors tied to one server
        ├── TransportError - Spawn/connect/HTTP failures
        ├── ProtocolError - JSON-RPC ``error`` responses, malformed messages
        ├── RequestTimeoutError - Pending request exceeded its deadline
        ├── RequestCancelledError - Pending request dropped on stop
        └── NotRunningError - Call against a server that is not running
    OAuthTimeoutError - No OAuth callback arrived in time
"""

from __future__ import annotations

from typing import Any


class MCPError(Exception):
    """Base exception for all MCP runtime errors."""

    pass


class ConfigError(MCPError):
    """Configuration errors (unknown scope target, unusable definition)."""

    pass


class NotFoundError(MCPError):
    """Operation on an unknown server or registry entry.

    Attributes:
        item_id: The id that could not be found.
    """

    def __init__(self, item_id: str, message: str | None = None) -> None:
        self.item_id = item_id
        super().__init__(message or f"'{item_id}' not found")


class ServerError(MCPError):
    """Errors raised on behalf of a single server.

    Attributes:
        server_id: The id of the server that encountered the error.
        detail: The message without the server prefix.
    """

    def __init__(self, server_id: str, message: str) -> None:
        self.server_id = server_id
        self.detail = message
        super().__init__(f"MCP server '{server_id}': {message}")


class TransportError(ServerError):
    """Spawn, connection or HTTP-level failure."""

    pass


class ProtocolError(ServerError):
    """JSON-RPC error response or malformed message.

    Attributes:
        code: The JSON-RPC error code, when the server supplied one.
        data: The optional ``data`` member of the JSON-RPC error.
    """

    def __init__(
        self,
        server_id: str,
        message: str,
        *,
        code: int | None = None,
        data: Any = None,
    ) -> None:
        self.code = code
        self.data = data
        super().__init__(server_id, message)


class RequestTimeoutError(ServerError, TimeoutError):
    """A pending request exceeded its deadline."""

    pass


class RequestCancelledError(ServerError):
    """A pending request was cancelled because its server stopped."""

    pass


class NotRunningError(ServerError):
    """Request against a server that is not in the running state."""

    def __init__(self, server_id: str, status: str = "stopped") -> None:
        self.status = status
        super().__init__(server_id, f"server is not running (status: {status})")


class OAuthTimeoutError(MCPError, TimeoutError):
    """No OAuth callback was received before the deadline.

    Attributes:
        server_id: The server being authenticated.
        timeout: The timeout that elapsed, in seconds.
    """

    def __init__(self, server_id: str, timeout: float) -> None:
        self.server_id = server_id
        self.timeout = timeout
        super().__init__(f"OAuth callback for '{server_id}' not received within {timeout}s")
