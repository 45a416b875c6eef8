from __future__ import annotations

import json
import re
from typing import Any

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")

_MISSING = object()


def resolve_path(container: Any, path: str, default: Any = None) -> Any:
    """Walk ``a.b.0.c`` through nested mappings and sequences."""
    current = container
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return default
        else:
            return default
    return current


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def interpolate_template(template: Any, state: Any) -> Any:
    """Replace ``{{path}}`` placeholders with values from ``state``.

    Placeholders that do not resolve are left untouched. Dicts and lists are
    interpolated recursively; other values are returned as-is.
    """
    if isinstance(template, dict):
        return {key: interpolate_template(value, state) for key, value in template.items()}
    if isinstance(template, list):
        return [interpolate_template(item, state) for item in template]
    if not isinstance(template, str):
        return template

    def _replace(match: re.Match) -> str:
        value = resolve_path(state, match.group(1), _MISSING)
        if value is _MISSING or value is None:
            return match.group(0)
        return _render(value)

    return _PLACEHOLDER.sub(_replace, template)
