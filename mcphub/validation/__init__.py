"""
MCPHub validation module.

This module provides settings validation and schema enforcement.
"""

from mcphub.validation.config import Config, ConfigError

__all__ = ["Config", "ConfigError"]
