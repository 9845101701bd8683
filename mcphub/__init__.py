"""
MCPHub - Manager for local MCP tool servers.

Spawns Model Context Protocol servers as subprocesses, talks JSON-RPC 2.0 to
them over stdio, and routes tool calls and resource reads by server name.

Servers come from two places:
- The desktop client's claude_desktop_config.json (``mcpServers``)
- Installed, enabled extensions whose manifests declare an MCP server
"""

__version__ = "0.1.0"
__license__ = "Apache-2.0"

from mcphub.mcp.client import MCPClient
from mcphub.mcp.manager import MCPManager
from mcphub.validation.config import Config

__all__ = [
    "MCPClient",
    "MCPManager",
    "Config",
    "__version__",
]
