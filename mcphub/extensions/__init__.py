"""
MCPHub extensions module.

Reads installed extension manifests and resolves their MCP server templates.
"""

from mcphub.extensions.manifest import ExtensionManifest, ExtensionServer, InstalledExtension
from mcphub.extensions.placeholders import MissingRequiredConfig, expand_arg, resolve_args
from mcphub.extensions.resolver import ExtensionError, ExtensionResolver

__all__ = [
    "ExtensionError",
    "ExtensionManifest",
    "ExtensionResolver",
    "ExtensionServer",
    "InstalledExtension",
    "MissingRequiredConfig",
    "expand_arg",
    "resolve_args",
]
