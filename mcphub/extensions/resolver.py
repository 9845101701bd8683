"""Extension resolver — turns installed, enabled extensions into MCP launch specs."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from mcphub.extensions.manifest import (
    ExtensionManifest,
    ExtensionServer,
    ExtensionSettings,
    InstalledExtension,
)
from mcphub.extensions.placeholders import (
    MissingRequiredConfig,
    resolve_args,
    resolve_env,
    resolve_text,
)
from mcphub.mcp.config import default_config_dir

logger = logging.getLogger(__name__)


class ExtensionError(Exception):
    """Raised when an extension or its settings cannot be read or written."""


class ExtensionResolver:
    """
    Reads installed extensions and their settings from disk.

    Layout::

        <extensions_dir>/<extension_id>/manifest.json
        <settings_dir>/<extension_id>.json    {"isEnabled": true, "user_config": {...}}

    Installing and unpacking extensions is done elsewhere; this class only
    reads manifests and manages the settings files.
    """

    def __init__(self, extensions_dir: Optional[Path] = None, settings_dir: Optional[Path] = None):
        self.extensions_dir = Path(extensions_dir) if extensions_dir else default_config_dir() / "extensions"
        self.settings_dir = (
            Path(settings_dir) if settings_dir else default_config_dir() / "extension-settings"
        )

    # ── Discovery ─────────────────────────────────────────────────────────

    def list_extensions(self) -> List[InstalledExtension]:
        """Every extension directory with a readable manifest, sorted by id."""
        if not self.extensions_dir.is_dir():
            return []

        extensions: List[InstalledExtension] = []
        for path in sorted(self.extensions_dir.iterdir()):
            manifest_path = path / "manifest.json"
            if not path.is_dir() or not manifest_path.exists():
                continue

            try:
                manifest = self._read_manifest(manifest_path)
            except ExtensionError as exc:
                logger.warning("Skipping extension %s: %s", path.name, exc)
                continue

            extensions.append(InstalledExtension(
                id=path.name,
                manifest=manifest,
                path=str(path),
                enabled=self.load_settings(path.name).is_enabled,
            ))
        return extensions

    def get_manifest(self, extension_id: str) -> ExtensionManifest:
        return self._read_manifest(self.extensions_dir / extension_id / "manifest.json")

    @staticmethod
    def _read_manifest(path: Path) -> ExtensionManifest:
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return ExtensionManifest.model_validate(data)
        except OSError as exc:
            raise ExtensionError(f"Failed to read manifest {path}: {exc}")
        except (json.JSONDecodeError, ValidationError) as exc:
            raise ExtensionError(f"Failed to parse manifest {path}: {exc}")

    # ── Settings ──────────────────────────────────────────────────────────

    def _settings_path(self, extension_id: str) -> Path:
        return self.settings_dir / f"{extension_id}.json"

    def load_settings(self, extension_id: str) -> ExtensionSettings:
        """Stored settings, or defaults (enabled, no values) if missing or unreadable."""
        path = self._settings_path(extension_id)
        if not path.exists():
            return ExtensionSettings()
        try:
            with open(path, encoding="utf-8") as f:
                return ExtensionSettings.model_validate(json.load(f))
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            logger.warning("Ignoring unreadable settings for %s: %s", extension_id, exc)
            return ExtensionSettings()

    def save_settings(self, extension_id: str, settings: ExtensionSettings) -> None:
        path = self._settings_path(extension_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(settings.to_dict(), f, indent=2)
        except OSError as exc:
            raise ExtensionError(f"Failed to save settings for {extension_id}: {exc}")

    def set_enabled(self, extension_id: str, enabled: bool) -> None:
        settings = self.load_settings(extension_id)
        settings.is_enabled = enabled
        self.save_settings(extension_id, settings)

    def get_user_config(self, extension_id: str) -> Dict[str, Any]:
        return self.load_settings(extension_id).user_config

    def set_user_config(self, extension_id: str, key: str, value: Any) -> None:
        settings = self.load_settings(extension_id)
        settings.user_config[key] = value
        self.save_settings(extension_id, settings)

    # ── Resolution ────────────────────────────────────────────────────────

    def resolve(self, extension: InstalledExtension) -> Optional[ExtensionServer]:
        """
        Resolve one extension's server template.

        Returns None when the extension is disabled, declares no MCP server,
        or leaves a required user_config field without a value.
        """
        if not extension.enabled:
            logger.debug("Skipping disabled extension %s", extension.id)
            return None

        server = extension.manifest.server
        if server is None or server.mcp_config is None:
            return None

        template = server.mcp_config
        values = self.load_settings(extension.id).user_config
        fields = extension.manifest.config_fields

        try:
            command = resolve_text(template.command, extension.path, values, fields)
            args = resolve_args(template.args, extension.path, values, fields)
            env = resolve_env(template.env, extension.path, values, fields)
        except MissingRequiredConfig as exc:
            logger.info("Skipping extension %s: %s", extension.id, exc)
            return None

        if not command:
            logger.info("Skipping extension %s: command resolved to nothing", extension.id)
            return None

        return ExtensionServer(
            extension_id=extension.id,
            name=extension.manifest.title,
            command=command,
            args=args,
            env=env,
        )

    def get_mcp_servers(self) -> List[ExtensionServer]:
        """Launch specs for every enabled extension whose template fully resolves."""
        servers: List[ExtensionServer] = []
        for extension in self.list_extensions():
            resolved = self.resolve(extension)
            if resolved is not None:
                servers.append(resolved)
        logger.debug("Resolved %d extension MCP server(s)", len(servers))
        return servers
