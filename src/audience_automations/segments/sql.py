"""Translate a compiled predicate into a parameterized SQL WHERE fragment.

The fragment is written against the ``contacts`` table and uses correlated
subqueries on ``tags_on_contacts`` and ``contact_properties``. Every leaf is
null-safe (``col IS NOT NULL AND ...``) so that ``NOT`` behaves exactly like the
in-memory evaluator.
"""

from __future__ import annotations

from datetime import datetime

from audience_automations.models.contact import PropertyType
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
)
from audience_automations.utils import to_iso

Op = FilterOperation

CONTACT_COLUMNS = frozenset(
    {
        "email",
        "first_name",
        "last_name",
        "status",
        "source",
        "subscribed_at",
        "unsubscribed_at",
        "last_sent_broadcast_email_at",
        "last_sent_automation_email_at",
        "last_opened_broadcast_email_at",
        "last_opened_automation_email_at",
        "last_clicked_broadcast_email_link_at",
        "last_clicked_automation_email_link_at",
        "last_tracked_activity_from",
        "last_tracked_activity_using_device",
        "last_tracked_activity_using_browser",
    }
)

PROPERTY_COLUMNS: dict[PropertyType, str] = {
    PropertyType.TEXT: "value_text",
    PropertyType.FLOAT: "value_float",
    PropertyType.BOOLEAN: "value_boolean",
    PropertyType.DATE: "value_date",
}

_SQL_OPERATORS = {
    Op.EQ: "=",
    Op.NE: "<>",
    Op.GT: ">",
    Op.LT: "<",
    Op.GTE: ">=",
    Op.LTE: "<=",
}


def build_where(predicate: Predicate, contacts_alias: str = "contacts") -> tuple[str, dict[str, object]]:
    """Return ``(sql, params)`` for use inside ``WHERE``.

    Args:
        predicate: Compiled predicate.
        contacts_alias: Name or alias of the contacts table in the outer query.
    """

    builder = _WhereBuilder(contacts_alias)
    return builder.build(predicate), builder.params


def storage_value(value: object) -> object:
    """Convert a predicate value to the representation stored in the database."""

    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, bool):
        return 1 if value else 0
    return value


def _like_pattern(value: object, *, leading: bool, trailing: bool) -> str:
    escaped = str(value).lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"{'%' if leading else ''}{escaped}{'%' if trailing else ''}"


class _WhereBuilder:
    def __init__(self, contacts_alias: str) -> None:
        self.alias = contacts_alias
        self.params: dict[str, object] = {}
        self._idx = 0

    def _param(self, value: object) -> str:
        self._idx += 1
        key = f"p_{self._idx}"
        self.params[key] = storage_value(value)
        return ":" + key

    def build(self, predicate: Predicate) -> str:
        if isinstance(predicate, Constant):
            return "1 = 1" if predicate.value else "1 = 0"
        if isinstance(predicate, AllOf):
            if not predicate.children:
                return "1 = 1"
            return "(" + " AND ".join(self.build(c) for c in predicate.children) + ")"
        if isinstance(predicate, AnyOf):
            if not predicate.children:
                return "1 = 0"
            return "(" + " OR ".join(self.build(c) for c in predicate.children) + ")"
        if isinstance(predicate, Not):
            return f"(NOT {self.build(predicate.child)})"
        if isinstance(predicate, HasAnyTag):
            return self._has_any_tag(predicate)
        if isinstance(predicate, TimeWindow):
            column = self._column(predicate.column)
            return (
                f"({column} IS NOT NULL AND {column} >= {self._param(predicate.start)} "
                f"AND {column} <= {self._param(predicate.end)})"
            )
        if isinstance(predicate, FieldComparison):
            column = self._column(predicate.column)
            return f"({column} IS NOT NULL AND {self._comparison(column, predicate.operation, predicate.value)})"
        if isinstance(predicate, PropertyComparison):
            return self._property(predicate)

        raise TypeError(f"Unknown predicate node: {predicate!r}")

    def _column(self, name: str) -> str:
        if name not in CONTACT_COLUMNS:
            raise ValueError(f"Unknown contact column: {name}")
        return f"{self.alias}.{name}"

    def _comparison(self, column: str, op: FilterOperation, value: object) -> str:
        if op in _SQL_OPERATORS:
            return f"{column} {_SQL_OPERATORS[op]} {self._param(value)}"

        if op in (Op.IN, Op.NIN):
            values = tuple(value)  # type: ignore[arg-type]
            if not values:
                return "1 = 0" if op == Op.IN else "1 = 1"
            placeholders = ", ".join(self._param(v) for v in values)
            keyword = "IN" if op == Op.IN else "NOT IN"
            return f"{column} {keyword} ({placeholders})"

        if op == Op.STARTS_WITH:
            pattern = _like_pattern(value, leading=False, trailing=True)
        elif op == Op.ENDS_WITH:
            pattern = _like_pattern(value, leading=True, trailing=False)
        elif op in (Op.CONTAINS, Op.NOT_CONTAINS):
            pattern = _like_pattern(value, leading=True, trailing=True)
        else:
            raise ValueError(f"Operation {op.value} cannot be expressed on a column")

        negate = "NOT " if op == Op.NOT_CONTAINS else ""
        return f"LOWER({column}) {negate}LIKE {self._param(pattern)} ESCAPE '\\'"

    def _has_any_tag(self, predicate: HasAnyTag) -> str:
        if not predicate.tag_ids:
            return "1 = 0"
        placeholders = ", ".join(self._param(t) for t in predicate.tag_ids)
        return (
            f"{self.alias}.id IN ("
            f"SELECT toc.contact_id FROM tags_on_contacts toc "
            f"WHERE toc.tag_id IN ({placeholders}))"
        )

    def _property(self, predicate: PropertyComparison) -> str:
        column = f"cp.{PROPERTY_COLUMNS[predicate.type]}"
        comparison = self._comparison(column, predicate.operation, predicate.value)
        name = self._param(predicate.name)
        return (
            f"{self.alias}.id IN ("
            f"SELECT cp.contact_id FROM contact_properties cp "
            f"WHERE cp.name = {name} AND cp.audience_id = {self.alias}.audience_id "
            f"AND {column} IS NOT NULL AND {comparison})"
        )
