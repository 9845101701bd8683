"""Data models for MCP server launch specs, tools, resources and snapshots."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ServerConfig(BaseModel):
    """How to launch one MCP server."""

    model_config = ConfigDict(frozen=True)

    command: str
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)

    def command_line(self) -> List[str]:
        return [self.command, *self.args]


class MCPTool(BaseModel):
    """A tool advertised by ``tools/list``."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: Optional[str] = None
    input_schema: Any = Field(default_factory=dict, alias="inputSchema")


class MCPResource(BaseModel):
    """A resource advertised by ``resources/list``."""

    model_config = ConfigDict(populate_by_name=True)

    uri: str
    name: str
    description: Optional[str] = None
    mime_type: Optional[str] = Field(default=None, alias="mimeType")


class ServerInfo(BaseModel):
    """Snapshot of a ready server, as returned by ``MCPManager.list_servers()``."""

    name: str
    tools: List[MCPTool] = Field(default_factory=list)
    resources: List[MCPResource] = Field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape for the application layer (camelCase keys)."""
        return self.model_dump(by_alias=True)
