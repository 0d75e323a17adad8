"""``{{placeholder}}`` substitution for node parameters."""

from __future__ import annotations

import re
from typing import Any, Mapping

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")


def render(value: Any, variables: Mapping[str, Any]) -> Any:
    """Replace known ``{{name}}`` tokens in ``value``.

    Strings are rendered directly, dicts and lists recursively; other values
    are returned untouched. Tokens without a matching variable are kept.
    """
    if isinstance(value, str):
        return _PLACEHOLDER.sub(lambda m: _lookup(m, variables), value)
    if isinstance(value, dict):
        return {key: render(item, variables) for key, item in value.items()}
    if isinstance(value, list):
        return [render(item, variables) for item in value]
    return value


def _lookup(match: re.Match[str], variables: Mapping[str, Any]) -> str:
    name = match.group(1)
    if name not in variables:
        return match.group(0)
    found = variables[name]
    return "" if found is None else str(found)
