"""
MCP client and server manager.

Standard MCP over stdio:   MCPManager --name--> MCPClient --JSON-RPC lines--> server process
"""

from mcphub.mcp.errors import (
    MCPCancelledError,
    MCPClientStateError,
    MCPError,
    MCPInitializeError,
    MCPJsonRpcError,
    MCPServerNotFoundError,
    MCPSpawnError,
    MCPTimeoutError,
    MCPTransportError,
)
from mcphub.mcp.schema import MCPResource, MCPTool, ServerConfig, ServerInfo
from mcphub.mcp.client import ClientState, MCPClient
from mcphub.mcp.config import MCPConfig, MCPConfigStore
from mcphub.mcp.manager import MCPManager

__all__ = [
    "ClientState",
    "MCPCancelledError",
    "MCPClient",
    "MCPClientStateError",
    "MCPConfig",
    "MCPConfigStore",
    "MCPError",
    "MCPInitializeError",
    "MCPJsonRpcError",
    "MCPManager",
    "MCPResource",
    "MCPServerNotFoundError",
    "MCPSpawnError",
    "MCPTimeoutError",
    "MCPTool",
    "MCPTransportError",
    "ServerConfig",
    "ServerInfo",
]
