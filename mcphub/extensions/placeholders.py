"""
Placeholder substitution for extension launch templates.

Two placeholder kinds are understood:

- ``${__dirname}``: the extension's install directory.
- ``${user_config.<key>}``: a value the user stored for the extension, or the
  manifest default for that key.

In an argument, a string value replaces the placeholder in place, an array
value fans the argument out into one argument per element, and any other
JSON value is replaced by its JSON text. An argument whose placeholder has
no value is dropped, unless the field is required, in which case
``MissingRequiredConfig`` is raised and the whole server entry is unusable.
"""

from __future__ import annotations

import itertools
import json
import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

from mcphub.extensions.manifest import UserConfigField

logger = logging.getLogger(__name__)

DIRNAME_PLACEHOLDER = "${__dirname}"
USER_CONFIG_PATTERN = re.compile(r"\$\{user_config\.([^}]+)\}")


class MissingRequiredConfig(Exception):
    """A required user_config field has no value."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Missing required user_config: {key}")


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value)


def lookup_value(
    key: str,
    values: Mapping[str, Any],
    fields: Mapping[str, UserConfigField],
) -> Optional[Any]:
    """Stored value for ``key``, else the manifest default, else None."""
    value = values.get(key)
    if value is not None:
        return value
    field = fields.get(key)
    if field is not None:
        return field.default
    return None


def _check_unbound(keys: Iterable[str], fields: Mapping[str, UserConfigField]) -> None:
    for key in keys:
        field = fields.get(key)
        if field is not None and field.is_required:
            raise MissingRequiredConfig(key)


def expand_arg(
    arg: str,
    install_dir: str,
    values: Mapping[str, Any],
    fields: Optional[Mapping[str, UserConfigField]] = None,
) -> List[str]:
    """
    Expand one templated argument into zero or more literal arguments.

    >>> expand_arg("--root=${user_config.dirs}", "/ext", {"dirs": ["/a", "/b"]})
    ['--root=/a', '--root=/b']
    """
    fields = fields or {}
    arg = arg.replace(DIRNAME_PLACEHOLDER, install_dir)

    # With one capture group, split() alternates literal text and keys.
    pieces = USER_CONFIG_PATTERN.split(arg)
    literals, keys = pieces[0::2], pieces[1::2]
    if not keys:
        return [arg]

    choices: List[List[str]] = []
    unbound: List[str] = []
    for key in keys:
        value = lookup_value(key, values, fields)
        if value is None:
            options: List[str] = []
        elif isinstance(value, list):
            options = [_as_text(item) for item in value]
        else:
            options = [_as_text(value)]
        if not options:
            unbound.append(key)
        choices.append(options)

    if unbound:
        _check_unbound(unbound, fields)
        logger.debug("Dropping argument %r: no value for %s", arg, ", ".join(unbound))
        return []

    expanded = []
    for combo in itertools.product(*choices):
        parts = [literals[0]]
        for option, literal in zip(combo, literals[1:]):
            parts.append(option)
            parts.append(literal)
        expanded.append("".join(parts))
    return expanded


def resolve_args(
    args: Iterable[str],
    install_dir: str,
    values: Mapping[str, Any],
    fields: Optional[Mapping[str, UserConfigField]] = None,
) -> List[str]:
    """Expand every argument of a launch template, preserving order."""
    resolved: List[str] = []
    for arg in args:
        resolved.extend(expand_arg(arg, install_dir, values, fields))
    return resolved


def resolve_text(
    text: str,
    install_dir: str,
    values: Mapping[str, Any],
    fields: Optional[Mapping[str, UserConfigField]] = None,
) -> Optional[str]:
    """
    Substitute placeholders in a single string such as the command or an env value.

    Arrays are not fanned out here; they become their JSON text. Returns None
    when an optional placeholder has no value.
    """
    fields = fields or {}
    text = text.replace(DIRNAME_PLACEHOLDER, install_dir)

    unbound: List[str] = []

    def substitute(match: "re.Match[str]") -> str:
        value = lookup_value(match.group(1), values, fields)
        if value is None:
            unbound.append(match.group(1))
            return ""
        return _as_text(value)

    result = USER_CONFIG_PATTERN.sub(substitute, text)
    if unbound:
        _check_unbound(unbound, fields)
        return None
    return result


def resolve_env(
    env: Dict[str, str],
    install_dir: str,
    values: Mapping[str, Any],
    fields: Optional[Mapping[str, UserConfigField]] = None,
) -> Dict[str, str]:
    """Resolve env values; entries with an unbound optional placeholder are left out."""
    resolved: Dict[str, str] = {}
    for key, template in env.items():
        value = resolve_text(template, install_dir, values, fields)
        if value is not None:
            resolved[key] = value
    return resolved
