"""Request/response mapping for provider node types.

Request templates use ``{{path}}`` placeholders resolved against the node's
merged input (a leading ``inputs.`` or ``data.`` segment is ignored).  A value
that is exactly one placeholder keeps the resolved value's type; anything else
is string substitution.  Response selectors are ``$.a.b`` dot paths.
"""

from __future__ import annotations

import re
from typing import Any

_PLACEHOLDER_RE = re.compile(r"\{\{\s*(.*?)\s*\}\}")


def _lookup(data: Any, parts: list[str]) -> Any:
    current = data
    for part in parts:
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def resolve_path(data: dict[str, Any], path: str) -> Any:
    parts = [p for p in path.split(".") if p]
    if parts and parts[0] in ("inputs", "data"):
        parts = parts[1:]
    return _lookup(data, parts)


def render_template(template: Any, data: dict[str, Any]) -> Any:
    """Recursively fill ``{{path}}`` placeholders in *template*."""
    if isinstance(template, dict):
        return {k: render_template(v, data) for k, v in template.items()}
    if isinstance(template, list):
        return [render_template(v, data) for v in template]
    if not isinstance(template, str):
        return template

    whole = _PLACEHOLDER_RE.fullmatch(template)
    if whole:
        return resolve_path(data, whole.group(1))

    def _sub(match: re.Match) -> str:
        value = resolve_path(data, match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER_RE.sub(_sub, template)


def extract_response(mapping: dict[str, str], response: Any) -> dict[str, Any]:
    """Apply ``$.path`` selectors in *mapping* to a provider response."""
    out: dict[str, Any] = {}
    for key, selector in mapping.items():
        if isinstance(selector, str) and selector.startswith("$."):
            out[key] = _lookup(response, selector[2:].split("."))
        else:
            out[key] = selector
    return out
