"""In-memory evaluation of compiled predicates against a contact.

Null handling mirrors the SQL back end: a missing column or property never
satisfies a comparison, whatever the operation.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from audience_automations.models.contact import Contact
from audience_automations.models.filters import FilterOperation
from audience_automations.segments.predicate import (
    AllOf,
    AnyOf,
    Constant,
    FieldComparison,
    HasAnyTag,
    Not,
    Predicate,
    PropertyComparison,
    TimeWindow,
    coerce_property_value,
)
from audience_automations.utils import as_utc

Op = FilterOperation


def evaluate(predicate: Predicate, contact: Contact) -> bool:
    """Return whether ``contact`` satisfies ``predicate``."""

    if isinstance(predicate, Constant):
        return predicate.value
    if isinstance(predicate, AllOf):
        return all(evaluate(child, contact) for child in predicate.children)
    if isinstance(predicate, AnyOf):
        return any(evaluate(child, contact) for child in predicate.children)
    if isinstance(predicate, Not):
        return not evaluate(predicate.child, contact)
    if isinstance(predicate, HasAnyTag):
        return not contact.tag_ids.isdisjoint(predicate.tag_ids)
    if isinstance(predicate, TimeWindow):
        actual = getattr(contact, predicate.column)
        if actual is None:
            return False
        return predicate.start <= as_utc(actual) <= predicate.end
    if isinstance(predicate, FieldComparison):
        return compare(_column_value(contact, predicate.column), predicate.operation, predicate.value)
    if isinstance(predicate, PropertyComparison):
        raw = contact.properties.get(predicate.name)
        if raw is None:
            return False
        try:
            actual = coerce_property_value(raw, predicate.type)
        except ValueError:
            return False
        return compare(actual, predicate.operation, predicate.value)

    raise TypeError(f"Unknown predicate node: {predicate!r}")


def compare(actual: object, op: FilterOperation, expected: object) -> bool:
    """Apply ``op`` to an already-typed column value."""

    if actual is None:
        return False
    if isinstance(actual, datetime):
        actual = as_utc(actual)

    if op == Op.EQ:
        return actual == expected
    if op == Op.NE:
        return actual != expected
    if op == Op.GT:
        return actual > expected  # type: ignore[operator]
    if op == Op.LT:
        return actual < expected  # type: ignore[operator]
    if op == Op.GTE:
        return actual >= expected  # type: ignore[operator]
    if op == Op.LTE:
        return actual <= expected  # type: ignore[operator]
    if op == Op.IN:
        return actual in expected  # type: ignore[operator]
    if op == Op.NIN:
        return actual not in expected  # type: ignore[operator]

    # Substring operations are case-insensitive.
    haystack = str(actual).lower()
    needle = str(expected).lower()
    if op == Op.STARTS_WITH:
        return haystack.startswith(needle)
    if op == Op.ENDS_WITH:
        return haystack.endswith(needle)
    if op == Op.CONTAINS:
        return needle in haystack
    if op == Op.NOT_CONTAINS:
        return needle not in haystack

    raise ValueError(f"Operation {op.value} cannot be evaluated on a column")


def _column_value(contact: Contact, column: str) -> object:
    value = getattr(contact, column)
    if isinstance(value, Enum):
        return value.value
    return value
