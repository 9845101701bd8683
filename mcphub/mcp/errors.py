"""Exceptions raised by MCP clients and the server manager."""

from __future__ import annotations

from typing import Any, Optional


class MCPError(Exception):
    """Base class for every MCP failure."""


class MCPSpawnError(MCPError):
    """The server process could not be started."""

    def __init__(self, server: str, reason: str):
        self.server = server
        self.reason = reason
        super().__init__(f"Failed to spawn MCP server '{server}': {reason}")


class MCPInitializeError(MCPError):
    """The initialize handshake failed; the client is unusable."""

    def __init__(self, server: str, reason: str):
        self.server = server
        self.reason = reason
        super().__init__(f"Failed to initialize MCP server '{server}': {reason}")


class MCPJsonRpcError(MCPError):
    """The server answered with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"MCP error {code}: {message}")

    @classmethod
    def from_payload(cls, payload: Any) -> "MCPJsonRpcError":
        """Build from the ``error`` member of a response, tolerating odd shapes."""
        if not isinstance(payload, dict):
            return cls(-32603, str(payload))
        code = payload.get("code")
        if not isinstance(code, int) or isinstance(code, bool):
            code = -32603
        return cls(code, str(payload.get("message", "")), payload.get("data"))


class MCPTimeoutError(MCPError):
    """No response arrived within the request timeout."""

    def __init__(self, method: str, timeout: float):
        self.method = method
        self.timeout = timeout
        super().__init__(f"Request '{method}' timed out after {timeout:g}s")


class MCPCancelledError(MCPError):
    """The transport closed before a response arrived."""

    def __init__(self, message: str = "Request cancelled"):
        super().__init__(message)


class MCPTransportError(MCPError):
    """Raised when writing to the server process fails."""


class MCPClientStateError(MCPError):
    """The operation is not valid in the client's current state."""


class MCPServerNotFoundError(MCPError):
    """No server with that name is loaded."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Server '{name}' not found")
