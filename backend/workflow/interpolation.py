"""Template interpolation for step configuration.

Replaces ``{{path.to.value}}`` placeholders inside arbitrarily nested step
config with values from the run context:

    interpolate({"to": "{{customer.email}}"}, {"customer": {"email": "a@b.c"}})
    -> {"to": "a@b.c"}

Paths are dot-delimited and walk nested mappings (numeric segments also
index lists). A path that cannot be resolved renders as an empty string.
Interpolation never mutates its inputs and never raises on missing data.
"""

import json
import re
from collections.abc import Mapping
from typing import Any

PLACEHOLDER_PATTERN = re.compile(r"\{\{([^}]+)\}\}")


def get_nested_value(data: Any, path: str) -> Any:
    """Resolve a dot-notation path like 'step_fetch.data.items.0'.

    Returns None when any segment is missing.
    """
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return None
        else:
            return None
    return current


def _render(value: Any) -> str:
    """Render a resolved value into its string form inside a template."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, default=str, separators=(",", ":"))
    return str(value)


def interpolate_string(template: str, context: Mapping[str, Any]) -> str:
    return PLACEHOLDER_PATTERN.sub(
        lambda match: _render(get_nested_value(context, match.group(1).strip())),
        template,
    )


def interpolate(template: Any, context: Mapping[str, Any]) -> Any:
    """Recursively resolve placeholders in strings, lists and mappings.

    Containers come back as new objects with the same shape and key order;
    any other value passes through unchanged.
    """
    if isinstance(template, str):
        return interpolate_string(template, context)
    if isinstance(template, (list, tuple)):
        return [interpolate(item, context) for item in template]
    if isinstance(template, Mapping):
        return {key: interpolate(value, context) for key, value in template.items()}
    return template

