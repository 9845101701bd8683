"""
MCPHub Configuration - Settings loading and validation.

This module provides the Config class for managing MCPHub settings from both
global (~/.mcphub/config.yaml) and local (.mcphub/config.yaml) sources. The
MCP server list itself lives in the desktop client's JSON file, see
``mcphub.mcp.config``.
"""

from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from mcphub import __version__

if TYPE_CHECKING:
    from mcphub.extensions.resolver import ExtensionResolver
    from mcphub.mcp.config import MCPConfigStore
    from mcphub.mcp.manager import MCPManager


class ConfigError(Exception):
    """Raised when there's a configuration error."""

    pass


class ClientSettings(BaseModel):
    """Settings applied to every spawned MCP client."""

    request_timeout: float = Field(default=30.0, gt=0)
    protocol_version: str = "2024-11-05"
    client_name: str = "mcphub"
    client_version: str = __version__


class PathSettings(BaseModel):
    """Locations of the server config and the extension directories."""

    mcp_config: Optional[Path] = None
    extensions_dir: Optional[Path] = None
    extension_settings_dir: Optional[Path] = None

    @field_validator("mcp_config", "extensions_dir", "extension_settings_dir")
    @classmethod
    def _expand_user(cls, value: Optional[Path]) -> Optional[Path]:
        return value.expanduser() if value is not None else None


class LoggingSettings(BaseModel):
    """Log output settings."""

    level: str = "WARNING"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {value}")
        return level


class HubConfig(BaseModel):
    """Complete MCPHub settings schema."""

    client: ClientSettings = Field(default_factory=ClientSettings)
    paths: PathSettings = Field(default_factory=PathSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


class Config:
    """
    MCPHub settings manager.

    Handles loading, merging, and validating settings from:
    - Global: ~/.mcphub/config.yaml
    - Local: .mcphub/config.yaml (nearest one above the working directory)

    Local settings override global settings.

    Example:
        >>> config = Config.load()
        >>> manager = config.build_manager()
        >>> names = await manager.load_servers()
    """

    GLOBAL_CONFIG_DIR = Path.home() / ".mcphub"
    LOCAL_CONFIG_DIR = Path(".mcphub")

    def __init__(
        self,
        global_config: Optional[Dict[str, Any]] = None,
        local_config: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize Config.

        Args:
            global_config: Global settings dictionary.
            local_config: Local (project) settings dictionary.
        """
        self._global_config = global_config or {}
        self._local_config = local_config or {}
        self._merged: Optional[HubConfig] = None

    @classmethod
    def load(cls) -> "Config":
        """
        Load settings from default locations.

        Returns:
            Config instance with loaded settings.
        """
        global_config = cls._load_yaml(cls.GLOBAL_CONFIG_DIR / "config.yaml")
        local_config = cls._load_yaml(cls._find_local_config())

        return cls(global_config=global_config, local_config=local_config)

    @classmethod
    def _load_yaml(cls, path: Optional[Path]) -> Dict[str, Any]:
        """Load YAML file if it exists."""
        if path is None or not path.exists():
            return {}

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config from {path}: {e}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config {path} must be a mapping")
        return data

    @classmethod
    def _find_local_config(cls) -> Optional[Path]:
        """Find the local config file by walking up the directory tree."""
        current = Path.cwd()
        while current != current.parent:
            config_path = current / cls.LOCAL_CONFIG_DIR / "config.yaml"
            if config_path.exists():
                return config_path
            current = current.parent
        return None

    def get_merged_config(self) -> Dict[str, Any]:
        """Get the merged settings as a dictionary."""
        return self._deep_merge(self._global_config.copy(), self._local_config)

    @property
    def merged(self) -> HubConfig:
        """Get the validated merged settings."""
        if self._merged is None:
            try:
                self._merged = HubConfig(**self.get_merged_config())
            except ValidationError as e:
                raise ConfigError(f"Invalid configuration: {e}")
        return self._merged

    def set_value(self, dotted_key: str, value: Any, global_: bool = False) -> None:
        """
        Set a single setting, e.g. ``client.request_timeout``.

        Args:
            dotted_key: Section and key joined by dots.
            value: New value.
            global_: Whether to set globally or locally.
        """
        config = self._global_config if global_ else self._local_config

        *sections, key = dotted_key.split(".")
        node = config
        for section in sections:
            node = node.setdefault(section, {})
        node[key] = value
        self._merged = None  # Reset cache

    # ── Wiring ────────────────────────────────────────────────────────────

    def config_store(self) -> "MCPConfigStore":
        from mcphub.mcp.config import MCPConfigStore

        return MCPConfigStore(self.merged.paths.mcp_config)

    def extension_resolver(self) -> "ExtensionResolver":
        from mcphub.extensions.resolver import ExtensionResolver

        paths = self.merged.paths
        return ExtensionResolver(paths.extensions_dir, paths.extension_settings_dir)

    def build_manager(self) -> "MCPManager":
        """Create an MCPManager wired to the configured files and client settings."""
        from mcphub.mcp.manager import MCPManager

        client = self.merged.client
        return MCPManager(
            config_store=self.config_store(),
            extension_resolver=self.extension_resolver(),
            request_timeout=client.request_timeout,
            protocol_version=client.protocol_version,
            client_info={"name": client.client_name, "version": client.client_version},
        )

    # ── Persistence ───────────────────────────────────────────────────────

    def save(self) -> None:
        """Save settings to files."""
        self._save_yaml(self.GLOBAL_CONFIG_DIR / "config.yaml", self._global_config)

        local_path = self._find_local_config()
        if local_path:
            self._save_yaml(local_path, self._local_config)

    def _save_yaml(self, path: Path, data: Dict[str, Any]) -> None:
        """Save data to a YAML file."""
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result
