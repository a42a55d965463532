"""Parameter coercion: restore types lost in the text encoding of tool calls.

The parser produces only strings (or lists of strings). Each capability
declares a ParamType per field; coercion walks that tag and converts the
raw value. It does not validate presence or ranges -- capabilities do.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from magnus.tools.schemas import ParamKind, ParamSpec, ParamType

logger = logging.getLogger(__name__)

_TRUE_VALUES = frozenset({"true", "1"})


def coerce_parameters(
    raw_parameters: dict[str, Any],
    schema: dict[str, ParamSpec],
) -> dict[str, Any]:
    """Map raw call arguments onto the capability's declared field types.

    Fields missing from the schema pass through untouched.
    """
    typed: dict[str, Any] = {}
    for key, value in raw_parameters.items():
        spec = schema.get(key)
        typed[key] = coerce_value(value, spec.type) if spec else value
    return typed


def coerce_value(value: Any, param_type: ParamType) -> Any:
    """Coerce a single raw value according to its type tag."""
    target = param_type.unwrap()

    if target.kind == ParamKind.NUMBER:
        if isinstance(value, list):
            return [_to_number(v) for v in value]
        return _to_number(value)

    if target.kind == ParamKind.BOOLEAN:
        if isinstance(value, list):
            return [_to_bool(v) for v in value]
        return _to_bool(value)

    if target.kind == ParamKind.ARRAY:
        items = _to_list(value)
        if target.inner is None:
            return items
        return [coerce_value(item, target.inner) for item in items]

    # String and anything unrecognised pass through unchanged
    return value


def _to_number(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    if not isinstance(value, str):
        return value
    text = value.strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        logger.debug("Could not coerce %r to a number, passing through", value)
        return value


def _to_bool(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def _to_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                return parsed
    return [value]
