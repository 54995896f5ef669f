"""Variable resolution for step fields.

Replaces ``{{path}}`` placeholders with values looked up in the workflow
context by dotted path (``variables.user.email``, ``trigger.after.status``,
``variables.items.0.id``). Unresolvable placeholders are left untouched so
a typo shows up in the output instead of silently becoming an empty string.
"""

import json
import re
from collections.abc import Mapping, Sequence
from typing import Any

PLACEHOLDER_RE = re.compile(r"\{\{([^}]+)\}\}")
_MISSING = object()


def get_value_by_path(obj: Any, path: str, default: Any = None) -> Any:
    """Walk ``obj`` along a dotted path.

    Mappings are indexed by key, sequences by integer position and any
    other object by attribute. Returns ``default`` when a segment is missing.
    """
    current = obj
    for part in path.strip().split("."):
        if current is None:
            return default
        if isinstance(current, Mapping):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return default
        elif not part.startswith("_") and hasattr(current, part):
            current = getattr(current, part)
        else:
            return default
    return current


def stringify(value: Any) -> str:
    """Render a looked-up value for interpolation into a string."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def resolve_variables(value: Any, context: Any) -> Any:
    """Substitute placeholders in strings, recursively through lists and dicts.

    Scalars other than strings pass through unchanged; dict keys are kept.
    """
    if isinstance(value, str):
        def _replace(match: re.Match) -> str:
            resolved = get_value_by_path(context, match.group(1), _MISSING)
            if resolved is _MISSING:
                return match.group(0)
            return stringify(resolved)

        return PLACEHOLDER_RE.sub(_replace, value)

    if isinstance(value, list):
        return [resolve_variables(item, context) for item in value]

    if isinstance(value, dict):
        return {key: resolve_variables(val, context) for key, val in value.items()}

    return value


def resolve_value(expression: Any, context: Any) -> Any:
    """Resolve an expression to a raw (non-stringified) value.

    Used where a step needs real data rather than text, e.g. loop items:
    - ``"{{variables.orders}}"`` (a single placeholder) -> the list itself
    - ``"variables.orders"`` (a bare dotted path) -> the list itself
    - lists and dicts are resolved element-wise
    - any other string is interpolated with resolve_variables()
    """
    if isinstance(expression, str):
        expr = expression.strip()
        match = PLACEHOLDER_RE.fullmatch(expr)
        if match:
            resolved = get_value_by_path(context, match.group(1), _MISSING)
            return expression if resolved is _MISSING else resolved
        if expr and "{{" not in expr and " " not in expr:
            resolved = get_value_by_path(context, expr, _MISSING)
            if resolved is not _MISSING:
                return resolved
    return resolve_variables(expression, context)
