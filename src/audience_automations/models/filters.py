"""Segment and trigger filter model.

A filter is a two-level tree: a top-level AND/OR over condition groups, each of
which combines leaf conditions with its own AND/OR. The same structure is used by
saved segments, automation triggers and IF/ELSE rules.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PROPERTY_FIELD_PREFIX = "properties."

_TIME_WINDOW_RE = re.compile(r"^[A-Za-z]+_(\d+)$")

FilterValue = Union[str, int, float, list[str], list[int], list[float]]


class Combinator(str, Enum):
    """How sibling conditions or groups are combined."""

    AND = "AND"
    OR = "OR"


class FilterOperation(str, Enum):
    """Comparison operations available to filter conditions."""

    EQ = "eq"
    NE = "ne"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    IN = "in"
    NIN = "nin"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    CONTAINS = "contains"
    NOT_CONTAINS = "notContains"
    IN_TIME_WINDOW = "inTimeWindow"


class ContactField(str, Enum):
    """Fixed contact fields a condition may reference (besides ``properties.<key>``)."""

    EMAIL = "email"
    FIRST_NAME = "firstName"
    LAST_NAME = "lastName"
    STATUS = "status"
    SOURCE = "source"
    SUBSCRIBED_AT = "subscribedAt"
    TAGS = "tags"
    SEGMENT_ID = "segmentId"

    LAST_SENT_BROADCAST_EMAIL_AT = "lastSentBroadcastEmailAt"
    LAST_SENT_AUTOMATION_EMAIL_AT = "lastSentAutomationEmailAt"
    LAST_OPENED_BROADCAST_EMAIL_AT = "lastOpenedBroadcastEmailAt"
    LAST_OPENED_AUTOMATION_EMAIL_AT = "lastOpenedAutomationEmailAt"
    LAST_CLICKED_BROADCAST_EMAIL_LINK_AT = "lastClickedBroadcastEmailLinkAt"
    LAST_CLICKED_AUTOMATION_EMAIL_LINK_AT = "lastClickedAutomationEmailLinkAt"

    LAST_TRACKED_ACTIVITY_FROM = "lastTrackedActivityFrom"
    LAST_TRACKED_ACTIVITY_USING_DEVICE = "lastTrackedActivityUsingDevice"
    LAST_TRACKED_ACTIVITY_USING_BROWSER = "lastTrackedActivityUsingBrowser"


LIST_OPERATIONS = frozenset({FilterOperation.IN, FilterOperation.NIN})

# Operations that accept either a scalar (text fields) or a list (tags).
FLEXIBLE_OPERATIONS = frozenset({FilterOperation.CONTAINS, FilterOperation.NOT_CONTAINS})

_ALLOWED_FIELDS = frozenset(f.value for f in ContactField)


def parse_time_window_days(value: str) -> int:
    """Parse an ``inTimeWindow`` value such as ``days_30`` into a day count.

    The unit prefix is informational only; the numeric suffix is always a number of days.
    """

    match = _TIME_WINDOW_RE.match(value)
    if match is None:
        raise ValueError(f"Time window {value!r} must look like '<unit>_<n>'")
    return int(match.group(1))


class FilterCondition(BaseModel):
    """A single ``(field, operation, value)`` leaf."""

    model_config = ConfigDict(frozen=True)

    field: str = Field(description="Contact field or properties.<key> reference")
    operation: FilterOperation = Field(description="Comparison operation")
    value: FilterValue = Field(description="Value to compare against")

    @field_validator("field")
    @classmethod
    def _known_field(cls, v: str) -> str:
        if v in _ALLOWED_FIELDS:
            return v
        if v.startswith(PROPERTY_FIELD_PREFIX) and len(v) > len(PROPERTY_FIELD_PREFIX):
            return v
        allowed = ", ".join(sorted(_ALLOWED_FIELDS))
        raise ValueError(f"Only the following fields are allowed: {allowed}, properties.*")

    @model_validator(mode="after")
    def _value_matches_operation(self) -> "FilterCondition":
        is_list = isinstance(self.value, list)

        if self.operation in LIST_OPERATIONS:
            if not is_list:
                raise ValueError(f"Operation {self.operation.value} requires a list value")
        elif self.operation == FilterOperation.IN_TIME_WINDOW:
            if not isinstance(self.value, str):
                raise ValueError("Operation inTimeWindow requires a '<unit>_<n>' string value")
            parse_time_window_days(self.value)
        elif self.operation not in FLEXIBLE_OPERATIONS and is_list:
            raise ValueError(f"Operation {self.operation.value} requires a scalar value")

        return self

    @property
    def property_key(self) -> str | None:
        """Return the custom property key for ``properties.<key>`` fields."""

        if self.field.startswith(PROPERTY_FIELD_PREFIX):
            return self.field[len(PROPERTY_FIELD_PREFIX):]
        return None


class FilterConditionGroup(BaseModel):
    """Conditions combined with a single AND/OR."""

    model_config = ConfigDict(frozen=True)

    type: Combinator = Field(default=Combinator.AND, description="Condition combinator")
    conditions: list[FilterCondition] = Field(default_factory=list)


class FilterGroups(BaseModel):
    """Top-level filter: groups combined with a single AND/OR."""

    model_config = ConfigDict(frozen=True)

    type: Combinator = Field(default=Combinator.AND, description="Group combinator")
    groups: list[FilterConditionGroup] = Field(default_factory=list)
