"""Data models for extension manifests and per-extension settings."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class UserConfigField(BaseModel):
    """A user-configurable parameter declared by an extension."""

    type: str
    title: Optional[str] = None
    description: Optional[str] = None
    multiple: Optional[bool] = None
    required: Optional[bool] = None
    default: Optional[Any] = None

    @property
    def is_required(self) -> bool:
        return bool(self.required)


class ExtensionAuthor(BaseModel):
    name: str
    email: Optional[str] = None
    url: Optional[str] = None


class ExtensionMCPConfig(BaseModel):
    """Templated launch spec; placeholders are resolved per installation."""

    command: str
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)


class ExtensionServerEntry(BaseModel):
    type: str
    entry_point: str
    mcp_config: Optional[ExtensionMCPConfig] = None


class ExtensionManifest(BaseModel):
    """Contents of an installed extension's ``manifest.json``."""

    name: str
    display_name: Optional[str] = None
    version: str
    description: Optional[str] = None
    author: Optional[ExtensionAuthor] = None
    server: Optional[ExtensionServerEntry] = None
    user_config: Optional[Dict[str, UserConfigField]] = None

    @property
    def title(self) -> str:
        return self.display_name or self.name

    @property
    def config_fields(self) -> Dict[str, UserConfigField]:
        return self.user_config or {}


class ExtensionSettings(BaseModel):
    """Stored state of one extension: enabled flag and user-supplied values."""

    model_config = ConfigDict(populate_by_name=True)

    is_enabled: bool = Field(default=True, alias="isEnabled")
    user_config: Dict[str, Any] = Field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class InstalledExtension(BaseModel):
    id: str
    manifest: ExtensionManifest
    path: str
    enabled: bool = True


class ExtensionServer(BaseModel):
    """A launch spec resolved from an enabled extension."""

    extension_id: str
    name: str
    command: str
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)

    @property
    def server_name(self) -> str:
        """Name under which the manager indexes this server."""
        return f"ext_{self.extension_id}"
