"""
Tagged view over parsed model JSON.

Model output has no guaranteed shape, so lookups never index blindly: every
access returns another `JsonValue`, and a path that runs off the structure
yields the `missing` kind instead of raising.
"""

from __future__ import annotations

import enum
import math
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any


class JsonKind(str, enum.Enum):
    OBJECT = "object"
    ARRAY = "array"
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    NULL = "null"
    MISSING = "missing"


def _kind_of(value: Any) -> JsonKind:
    if value is None:
        return JsonKind.NULL
    if isinstance(value, bool):
        return JsonKind.BOOLEAN
    if isinstance(value, (int, float)):
        return JsonKind.NUMBER
    if isinstance(value, str):
        return JsonKind.STRING
    if isinstance(value, dict):
        return JsonKind.OBJECT
    if isinstance(value, (list, tuple)):
        return JsonKind.ARRAY
    # Anything json.loads cannot produce is treated as a string value.
    return JsonKind.STRING


@dataclass(frozen=True)
class JsonValue:
    kind: JsonKind
    raw: Any = None

    @classmethod
    def of(cls, value: Any) -> JsonValue:
        return cls(kind=_kind_of(value), raw=value)

    @classmethod
    def missing(cls) -> JsonValue:
        return cls(kind=JsonKind.MISSING, raw=None)

    @property
    def is_present(self) -> bool:
        return self.kind not in {JsonKind.MISSING, JsonKind.NULL}

    @property
    def is_object(self) -> bool:
        return self.kind == JsonKind.OBJECT

    @property
    def is_array(self) -> bool:
        return self.kind == JsonKind.ARRAY

    def is_empty(self) -> bool:
        if not self.is_present:
            return True
        if self.kind == JsonKind.STRING:
            return not str(self.raw).strip()
        if self.kind in {JsonKind.OBJECT, JsonKind.ARRAY}:
            return len(self.raw) == 0
        if self.kind == JsonKind.NUMBER:
            return isinstance(self.raw, float) and math.isnan(self.raw)
        return False

    def get(self, key: str) -> JsonValue:
        if self.kind != JsonKind.OBJECT or key not in self.raw:
            return JsonValue.missing()
        return JsonValue.of(self.raw[key])

    def path(self, dotted: str) -> JsonValue:
        current = self
        for part in dotted.split("."):
            current = current.get(part)
            if current.kind == JsonKind.MISSING:
                break
        return current

    def first(self, *paths: str, scalar: bool = False) -> JsonValue:
        """
        Value at the first path that is present and non-empty, else missing.

        With scalar=True, objects and arrays found along the way are skipped.
        """
        for dotted in paths:
            value = self.path(dotted)
            if value.is_empty():
                continue
            if scalar and (value.is_object or value.is_array):
                continue
            return value
        return JsonValue.missing()

    def elements(self) -> Iterator[JsonValue]:
        if self.kind != JsonKind.ARRAY:
            return iter(())
        return (JsonValue.of(item) for item in self.raw)

    def unwrap(self, default: Any = None) -> Any:
        return self.raw if self.is_present else default
