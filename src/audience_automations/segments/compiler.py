"""Segment/trigger filter compiler.

Translates ``FilterGroups`` into a predicate AST. Each field class has its own
resolution rule:

- identity/status fields compare the contact column directly
- ``subscribedAt`` is a date column supporting ordered comparisons
- activity timestamps only support ``inTimeWindow``
- ``tags`` only supports ``contains`` / ``notContains``
- ``segmentId`` inlines the referenced segment's filter
- ``properties.<key>`` compares against the storage slot of the key's declared type

Compilation is all-or-nothing: one unsupported condition fails the whole filter.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog

from audience_automations.exceptions import UnsupportedOperationError, ValidationError
from audience_automations.models.contact import Audience, PropertyType, Segment
from audience_automations.models.filters import (
    Combinator,
    ContactField,
    FilterCondition,
    FilterConditionGroup,
    FilterGroups,
    FilterOperation,
    parse_time_window_days,
)
from audience_automations.segments.predicate import (
    FALSE,
    AllOf,
    AnyOf,
    FieldComparison,
    HasAnyTag,
    Not,
    Predicate,
    PropertyComparison,
    TimeWindow,
    coerce_property_value,
)
from audience_automations.utils import from_iso, utc_now

logger = structlog.get_logger()

Op = FilterOperation

IDENTITY_COLUMNS: dict[ContactField, str] = {
    ContactField.EMAIL: "email",
    ContactField.FIRST_NAME: "first_name",
    ContactField.LAST_NAME: "last_name",
    ContactField.STATUS: "status",
    ContactField.SOURCE: "source",
    ContactField.LAST_TRACKED_ACTIVITY_FROM: "last_tracked_activity_from",
    ContactField.LAST_TRACKED_ACTIVITY_USING_DEVICE: "last_tracked_activity_using_device",
    ContactField.LAST_TRACKED_ACTIVITY_USING_BROWSER: "last_tracked_activity_using_browser",
}

DATE_COLUMNS: dict[ContactField, str] = {
    ContactField.SUBSCRIBED_AT: "subscribed_at",
}

ACTIVITY_COLUMNS: dict[ContactField, str] = {
    ContactField.LAST_SENT_BROADCAST_EMAIL_AT: "last_sent_broadcast_email_at",
    ContactField.LAST_SENT_AUTOMATION_EMAIL_AT: "last_sent_automation_email_at",
    ContactField.LAST_OPENED_BROADCAST_EMAIL_AT: "last_opened_broadcast_email_at",
    ContactField.LAST_OPENED_AUTOMATION_EMAIL_AT: "last_opened_automation_email_at",
    ContactField.LAST_CLICKED_BROADCAST_EMAIL_LINK_AT: "last_clicked_broadcast_email_link_at",
    ContactField.LAST_CLICKED_AUTOMATION_EMAIL_LINK_AT: "last_clicked_automation_email_link_at",
}

_ORDERED = frozenset({Op.EQ, Op.NE, Op.GT, Op.LT, Op.GTE, Op.LTE})
_TEXT_OPERATIONS = frozenset(Op) - {Op.IN_TIME_WINDOW}

PROPERTY_OPERATIONS: dict[PropertyType, frozenset[FilterOperation]] = {
    PropertyType.TEXT: _TEXT_OPERATIONS,
    PropertyType.BOOLEAN: frozenset({Op.EQ, Op.NE}),
    PropertyType.FLOAT: _ORDERED | {Op.IN, Op.NIN},
    PropertyType.DATE: _ORDERED | {Op.IN, Op.NIN},
}

IDENTITY_OPERATIONS = _TEXT_OPERATIONS
DATE_OPERATIONS = _ORDERED
ACTIVITY_OPERATIONS = frozenset({Op.IN_TIME_WINDOW})
TAG_OPERATIONS = frozenset({Op.CONTAINS, Op.NOT_CONTAINS})
SEGMENT_OPERATIONS = frozenset({Op.EQ, Op.NE, Op.IN, Op.NIN})


@dataclass(frozen=True)
class AudienceContext:
    """What the compiler needs to know about the audience a filter runs against."""

    audience: Audience
    segments: Mapping[str, Segment] = field(default_factory=dict)


class SegmentCompiler:
    """Compile filter groups against one audience at a fixed point in time."""

    def __init__(self, context: AudienceContext, now: datetime | None = None) -> None:
        self.context = context
        self.now = now or utc_now()
        self._segment_stack: list[str] = []

    def compile(self, filter_groups: FilterGroups) -> Predicate:
        groups = tuple(self._compile_group(g) for g in filter_groups.groups)
        return _combine(filter_groups.type, groups)

    def _compile_group(self, group: FilterConditionGroup) -> Predicate:
        conditions = tuple(self._compile_condition(c) for c in group.conditions)
        return _combine(group.type, conditions)

    def _compile_condition(self, condition: FilterCondition) -> Predicate:
        key = condition.property_key
        if key is not None:
            return self._property_condition(condition, key)

        field_ = ContactField(condition.field)

        if field_ in IDENTITY_COLUMNS:
            return _identity_condition(condition, IDENTITY_COLUMNS[field_])
        if field_ in DATE_COLUMNS:
            return _date_condition(condition, DATE_COLUMNS[field_])
        if field_ in ACTIVITY_COLUMNS:
            return self._activity_condition(condition, ACTIVITY_COLUMNS[field_])
        if field_ == ContactField.TAGS:
            return _tags_condition(condition)
        if field_ == ContactField.SEGMENT_ID:
            return self._segment_condition(condition)

        raise UnsupportedOperationError(condition.field, condition.operation.value)

    def _activity_condition(self, condition: FilterCondition, column: str) -> Predicate:
        if condition.operation not in ACTIVITY_OPERATIONS:
            raise UnsupportedOperationError(condition.field, condition.operation.value)

        days = parse_time_window_days(str(condition.value))
        return TimeWindow(column=column, start=self.now - timedelta(days=days), end=self.now)

    def _segment_condition(self, condition: FilterCondition) -> Predicate:
        op = condition.operation
        if op not in SEGMENT_OPERATIONS:
            raise UnsupportedOperationError(condition.field, op.value)

        segment_ids = _as_strings(condition.value)
        members = AnyOf(tuple(self._inline_segment(sid) for sid in segment_ids))

        if op in (Op.NE, Op.NIN):
            return Not(members)
        return members

    def _inline_segment(self, segment_id: str) -> Predicate:
        if segment_id in self._segment_stack:
            raise ValidationError(
                [{"field": "segmentId", "message": f"Segment {segment_id} references itself."}]
            )

        segment = self.context.segments.get(segment_id)
        if segment is None or segment.audience_id != self.context.audience.id:
            logger.warning(
                "filter_segment_unknown",
                segment_id=segment_id,
                audience_id=self.context.audience.id,
            )
            return FALSE

        self._segment_stack.append(segment_id)
        try:
            return self.compile(segment.filter_groups)
        finally:
            self._segment_stack.pop()

    def _property_condition(self, condition: FilterCondition, key: str) -> Predicate:
        prop = self.context.audience.find_property(key)
        if prop is None:
            # Unregistered keys never match.
            logger.warning(
                "filter_property_unregistered",
                property=key,
                audience_id=self.context.audience.id,
            )
            return FALSE

        op = condition.operation
        if op not in PROPERTY_OPERATIONS[prop.type]:
            raise UnsupportedOperationError(condition.field, op.value)

        try:
            if op in (Op.IN, Op.NIN):
                value: object = tuple(
                    coerce_property_value(v, prop.type) for v in _as_list(condition.value)
                )
            else:
                value = coerce_property_value(condition.value, prop.type)
        except ValueError as e:
            raise ValidationError(
                [
                    {
                        "field": condition.field,
                        "message": f"Value for {condition.field} is not a valid {prop.type.value}: {e}",
                    }
                ]
            ) from e

        return PropertyComparison(name=key, type=prop.type, operation=op, value=value)


def compile_filter(
    filter_groups: FilterGroups,
    context: AudienceContext,
    now: datetime | None = None,
) -> Predicate:
    """Compile ``filter_groups`` for ``context``.

    Raises:
        UnsupportedOperationError: If any condition uses an operation its field does not support.
        ValidationError: If a value cannot be used with its field.
    """

    return SegmentCompiler(context, now=now).compile(filter_groups)


def check_filter_operations(filter_groups: FilterGroups, audience: Audience | None = None) -> None:
    """Reject conditions whose operation the field class never supports.

    Runs without evaluating anything, so filters can be checked when a step is
    written. ``properties.<key>`` conditions are only checked when ``audience``
    declares the key; unregistered keys compile to FALSE later.

    Raises:
        UnsupportedOperationError: For the first unsupported condition.
        ValidationError: If a date value is not ISO-8601.
    """

    for group in filter_groups.groups:
        for condition in group.conditions:
            _check_condition(condition, audience)


def _check_condition(condition: FilterCondition, audience: Audience | None) -> None:
    key = condition.property_key
    if key is not None:
        prop = audience.find_property(key) if audience is not None else None
        if prop is not None and condition.operation not in PROPERTY_OPERATIONS[prop.type]:
            raise UnsupportedOperationError(condition.field, condition.operation.value)
        return

    field_ = ContactField(condition.field)
    if field_ in IDENTITY_COLUMNS:
        _identity_condition(condition, IDENTITY_COLUMNS[field_])
    elif field_ in DATE_COLUMNS:
        _date_condition(condition, DATE_COLUMNS[field_])
    elif field_ in ACTIVITY_COLUMNS:
        if condition.operation not in ACTIVITY_OPERATIONS:
            raise UnsupportedOperationError(condition.field, condition.operation.value)
    elif field_ == ContactField.TAGS:
        _tags_condition(condition)
    elif condition.operation not in SEGMENT_OPERATIONS:
        raise UnsupportedOperationError(condition.field, condition.operation.value)


def _combine(combinator: Combinator, children: tuple[Predicate, ...]) -> Predicate:
    if combinator == Combinator.OR:
        return AnyOf(children)
    return AllOf(children)


def _identity_condition(condition: FilterCondition, column: str) -> Predicate:
    op = condition.operation
    if op not in IDENTITY_OPERATIONS:
        raise UnsupportedOperationError(condition.field, op.value)

    if op in (Op.IN, Op.NIN):
        return FieldComparison(column=column, operation=op, value=_as_strings(condition.value))

    if isinstance(condition.value, list):
        raise UnsupportedOperationError(condition.field, op.value)

    return FieldComparison(column=column, operation=op, value=str(condition.value))


def _date_condition(condition: FilterCondition, column: str) -> Predicate:
    op = condition.operation
    if op not in DATE_OPERATIONS:
        raise UnsupportedOperationError(condition.field, op.value)

    try:
        value = from_iso(str(condition.value))
    except ValueError as e:
        raise ValidationError(
            [{"field": condition.field, "message": f"{condition.value!r} is not an ISO-8601 date."}]
        ) from e

    return FieldComparison(column=column, operation=op, value=value)


def _tags_condition(condition: FilterCondition) -> Predicate:
    op = condition.operation
    tag_ids = _as_strings(condition.value)

    if op == Op.CONTAINS:
        return HasAnyTag(tag_ids)
    if op == Op.NOT_CONTAINS:
        return Not(HasAnyTag(tag_ids))

    raise UnsupportedOperationError(condition.field, op.value)


def _as_list(value: object) -> list[object]:
    if isinstance(value, list):
        return list(value)
    return [value]


def _as_strings(value: object) -> tuple[str, ...]:
    return tuple(str(v) for v in _as_list(value))
