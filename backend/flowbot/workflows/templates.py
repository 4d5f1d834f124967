# /flowbot/workflows/templates.py

"""
Placeholder substitution for node configs.

Placeholders look like ``{user.balance}`` (``{{user.balance}}`` is accepted
too). Variables come from a mapping, normally a ``ChainMap`` of local
execution variables, computed user variables and project variables, so the
first scope holding a name wins. Unknown placeholders render as an empty
string; rendering never fails.
"""

import re
from collections import ChainMap
from typing import Any, Mapping, Optional

_PATH = r"[A-Za-z_][\w]*(?:\.[\w]+)*"
PLACEHOLDER = re.compile(r"\{\{\s*(" + _PATH + r")\s*\}\}|\{(" + _PATH + r")\}")
_EXACT = re.compile(r"^\s*(?:\{\{\s*(" + _PATH + r")\s*\}\}|\{(" + _PATH + r")\})\s*$")

_MISSING = object()


def build_scope(local: Mapping[str, Any], user: Mapping[str, Any], project: Mapping[str, Any]) -> ChainMap:
    """Local variables shadow computed user variables, which shadow project variables."""
    return ChainMap(local, user, project)


def lookup(variables: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """
    Resolves a dotted path. An exact key wins (``"contact.phone"`` stored
    flat); otherwise the path is walked through nested mappings and lists.
    ``local.x`` addresses the local scope explicitly.
    """
    if path in variables:
        return variables[path]

    if path.startswith("local.") and isinstance(variables, ChainMap):
        return variables.maps[0].get(path[len("local."):], default)

    head, _, rest = path.partition(".")
    if not rest or head not in variables:
        return default

    value = variables[head]
    for part in rest.split("."):
        if isinstance(value, Mapping):
            value = value.get(part, _MISSING)
        elif isinstance(value, (list, tuple)) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            value = _MISSING
        if value is _MISSING:
            return default
    return value


def format_value(value: Any) -> str:
    """Chat-friendly text for a variable. Containers become comma-separated items, never JSON."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, Mapping):
        return ", ".join(f"{key}: {format_value(item)}" for key, item in value.items())
    if isinstance(value, (list, tuple, set)):
        return ", ".join(format_value(item) for item in value)
    return str(value)


def render(template: Optional[str], variables: Mapping[str, Any]) -> str:
    """Substitutes every placeholder in a string. Missing names become ''."""
    if not template:
        return template or ""

    def replace(match: re.Match) -> str:
        path = match.group(1) or match.group(2)
        return format_value(lookup(variables, path))

    return PLACEHOLDER.sub(replace, template)


def resolve(value: Any, variables: Mapping[str, Any]) -> Any:
    """
    Resolves placeholders inside arbitrary config values. A string that is
    exactly one placeholder keeps the variable's type (so ``"{amount}"``
    stays a number); dicts and lists are resolved recursively.
    """
    if isinstance(value, str):
        exact = _EXACT.match(value)
        if exact:
            return lookup(variables, exact.group(1) or exact.group(2))
        return render(value, variables)
    if isinstance(value, dict):
        return {key: resolve(item, variables) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve(item, variables) for item in value]
    return value
