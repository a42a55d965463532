"""Tools -- capability registry, parameter coercion and dispatch.

Public API: registry, dispatcher, coercion entry point and schema types.
"""

from magnus.tools.coercion import coerce_parameters, coerce_value
from magnus.tools.dispatcher import ToolDispatcher, batch_keys, serialize_result
from magnus.tools.registry import Capability, CapabilityExecutor, CapabilityRegistry
from magnus.tools.schemas import ParamKind, ParamSpec, ParamType

__all__ = [
    "Capability",
    "CapabilityExecutor",
    "CapabilityRegistry",
    "ParamKind",
    "ParamSpec",
    "ParamType",
    "ToolDispatcher",
    "batch_keys",
    "coerce_parameters",
    "coerce_value",
    "serialize_result",
]
