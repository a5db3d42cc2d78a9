"""Store-agnostic predicate AST produced by the segment compiler.

Nodes are immutable and hold already-resolved values (columns, coerced values,
absolute time bounds), so evaluating a predicate needs no audience context.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Union

from audience_automations.models.contact import PropertyType
from audience_automations.models.filters import FilterOperation
from audience_automations.utils import as_utc, from_iso

_TRUE_STRINGS = frozenset({"true", "1", "yes"})
_FALSE_STRINGS = frozenset({"false", "0", "no"})


@dataclass(frozen=True)
class Constant:
    value: bool


@dataclass(frozen=True)
class AllOf:
    children: tuple["Predicate", ...]


@dataclass(frozen=True)
class AnyOf:
    children: tuple["Predicate", ...]


@dataclass(frozen=True)
class Not:
    child: "Predicate"


@dataclass(frozen=True)
class FieldComparison:
    """Compare a contact column against a value.

    ``value`` is a str, a datetime, or a tuple of them for ``in``/``nin``.
    """

    column: str
    operation: FilterOperation
    value: object


@dataclass(frozen=True)
class TimeWindow:
    """The column's timestamp lies in ``[start, end]``, bounds inclusive."""

    column: str
    start: datetime
    end: datetime


@dataclass(frozen=True)
class HasAnyTag:
    tag_ids: tuple[str, ...]


@dataclass(frozen=True)
class PropertyComparison:
    """Compare a custom property, read from the storage slot of ``type``."""

    name: str
    type: PropertyType
    operation: FilterOperation
    value: object


Predicate = Union[
    Constant, AllOf, AnyOf, Not, FieldComparison, TimeWindow, HasAnyTag, PropertyComparison
]

TRUE = Constant(True)
FALSE = Constant(False)


def coerce_property_value(raw: object, type_: PropertyType) -> object:
    """Coerce a raw property value to the Python type backing ``type_``.

    Raises:
        ValueError: If the value cannot be represented in that type.
    """

    if raw is None:
        raise ValueError("Property value is missing")

    if type_ == PropertyType.BOOLEAN:
        if isinstance(raw, bool):
            return raw
        if isinstance(raw, (int, float)):
            return bool(raw)
        lowered = str(raw).strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
        raise ValueError(f"{raw!r} is not a boolean")

    if type_ == PropertyType.FLOAT:
        if isinstance(raw, bool):
            raise ValueError(f"{raw!r} is not a number")
        if isinstance(raw, (int, float)):
            return float(raw)
        return float(str(raw).strip())

    if type_ == PropertyType.DATE:
        if isinstance(raw, datetime):
            return as_utc(raw)
        return from_iso(str(raw).strip())

    if isinstance(raw, (list, tuple)):
        return json.dumps(list(raw))
    if isinstance(raw, datetime):
        return as_utc(raw).isoformat()
    return str(raw)
