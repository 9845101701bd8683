"""
MCP server configuration file.

The file is the desktop-client format::

    {
      "mcpServers": {
        "filesystem": {"command": "npx", "args": ["-y", "server-fs", "/tmp"], "env": {}}
      }
    }

Older files may use ``mcp_servers`` instead of ``mcpServers``; both are read,
only ``mcpServers`` is written.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError

from mcphub.mcp.schema import ServerConfig
from mcphub.validation.config import ConfigError

logger = logging.getLogger(__name__)

SERVERS_KEY = "mcpServers"
LEGACY_SERVERS_KEY = "mcp_servers"
CONFIG_FILENAME = "claude_desktop_config.json"


def default_config_dir() -> Path:
    """Per-user configuration directory of the desktop client."""
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config")
    return base / "Claude"


class MCPConfig(BaseModel):
    """Named server launch specs."""

    servers: Dict[str, ServerConfig] = Field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {SERVERS_KEY: {name: cfg.model_dump() for name, cfg in self.servers.items()}}


class MCPConfigStore:
    """
    Load and save ``MCPConfig`` from a JSON file.

    A missing or unreadable file is an empty configuration. A file that is
    not valid JSON raises ``ConfigError``.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else default_config_dir() / CONFIG_FILENAME

    def load(self) -> MCPConfig:
        data = self._read()
        if data is None:
            return MCPConfig()

        if SERVERS_KEY in data:
            raw_servers = data[SERVERS_KEY]
        else:
            raw_servers = data.get(LEGACY_SERVERS_KEY, {})

        try:
            return MCPConfig(servers=raw_servers)
        except ValidationError as e:
            logger.warning("Ignoring invalid server section in %s: %s", self.path, e)
            return MCPConfig()

    def save(self, config: MCPConfig) -> None:
        """Write the servers under ``mcpServers``, keeping unrelated top-level keys."""
        try:
            existing = self._read() or {}
        except ConfigError:
            existing = {}
        existing.pop(LEGACY_SERVERS_KEY, None)
        existing.update(config.to_dict())

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(existing, f, indent=2)
                f.write("\n")
        except OSError as e:
            raise ConfigError(f"Failed to write config {self.path}: {e}")

        logger.info("Saved %d MCP server(s) to %s", len(config.servers), self.path)

    def _read(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None

        try:
            with open(self.path, encoding="utf-8") as f:
                content = f.read()
        except OSError as e:
            logger.warning("Could not read MCP config %s: %s", self.path, e)
            return None

        if not content.strip():
            return None
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Failed to parse config {self.path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Config {self.path} must contain a JSON object")
        return data
