"""Pydantic models describing capability parameters.

Each capability field carries an explicit type tag (Number, Boolean,
String, Array<T>, Optional<T>). Coercion and prompt generation read the
tag directly instead of reflecting over a validation library's internals.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, model_validator


class ParamKind(StrEnum):
    NUMBER = "number"
    BOOLEAN = "boolean"
    STRING = "string"
    ARRAY = "array"
    OPTIONAL = "optional"


_WRAPPER_KINDS = frozenset({ParamKind.ARRAY, ParamKind.OPTIONAL})


class ParamType(BaseModel):
    """Declarative type tag for one capability field."""

    model_config = ConfigDict(frozen=True)

    kind: ParamKind
    inner: ParamType | None = None

    @model_validator(mode="after")
    def _check_inner(self) -> ParamType:
        if self.kind in _WRAPPER_KINDS and self.inner is None:
            raise ValueError(f"{self.kind} type requires an inner type")
        if self.kind not in _WRAPPER_KINDS and self.inner is not None:
            raise ValueError(f"{self.kind} type does not take an inner type")
        return self

    @classmethod
    def number(cls) -> ParamType:
        return cls(kind=ParamKind.NUMBER)

    @classmethod
    def boolean(cls) -> ParamType:
        return cls(kind=ParamKind.BOOLEAN)

    @classmethod
    def string(cls) -> ParamType:
        return cls(kind=ParamKind.STRING)

    @classmethod
    def array(cls, inner: ParamType | None = None) -> ParamType:
        return cls(kind=ParamKind.ARRAY, inner=inner or cls.string())

    @classmethod
    def optional(cls, inner: ParamType) -> ParamType:
        return cls(kind=ParamKind.OPTIONAL, inner=inner)

    def unwrap(self) -> ParamType:
        """Strip any Optional<...> wrappers."""
        current = self
        while current.kind == ParamKind.OPTIONAL and current.inner is not None:
            current = current.inner
        return current

    def label(self) -> str:
        """Human-readable label used in the system prompt, e.g. array<string>."""
        if self.inner is None:
            return str(self.kind)
        return f"{self.kind}<{self.inner.label()}>"


ParamType.model_rebuild()


class ParamSpec(BaseModel):
    """One field of a capability's parameter schema."""

    type: ParamType
    description: str = ""
    required: bool = True
    default: Any = None
