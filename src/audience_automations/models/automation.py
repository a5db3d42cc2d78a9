"""Automation graph and execution ledger models.

An automation is a tree of steps rooted at a single trigger. Steps are linked by
``parent_id``; the two children of an IF/ELSE rule are told apart by ``branch``.
The ledger (``LedgerEntry``) records which contacts reached which steps.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from audience_automations.models.filters import FilterGroups


class StepType(str, Enum):
    TRIGGER = "TRIGGER"
    ACTION = "ACTION"
    RULE = "RULE"
    END = "END"


class StepSubtype(str, Enum):
    """Every step subtype; the prefix names the family it belongs to."""

    TRIGGER_EMPTY = "TRIGGER_EMPTY"
    TRIGGER_CONTACT_SUBSCRIBED = "TRIGGER_CONTACT_SUBSCRIBED"
    TRIGGER_CONTACT_UNSUBSCRIBED = "TRIGGER_CONTACT_UNSUBSCRIBED"
    TRIGGER_CONTACT_TAG_ADDED = "TRIGGER_CONTACT_TAG_ADDED"
    TRIGGER_CONTACT_TAG_REMOVED = "TRIGGER_CONTACT_TAG_REMOVED"
    TRIGGER_API_MANUAL = "TRIGGER_API_MANUAL"

    ACTION_EMPTY = "ACTION_EMPTY"
    ACTION_SEND_EMAIL = "ACTION_SEND_EMAIL"
    ACTION_ADD_TAG = "ACTION_ADD_TAG"
    ACTION_REMOVE_TAG = "ACTION_REMOVE_TAG"
    ACTION_SUBSCRIBE_TO_AUDIENCE = "ACTION_SUBSCRIBE_TO_AUDIENCE"
    ACTION_UNSUBSCRIBE_FROM_AUDIENCE = "ACTION_UNSUBSCRIBE_FROM_AUDIENCE"
    ACTION_UPDATE_CONTACT_ATTRIBUTES = "ACTION_UPDATE_CONTACT_ATTRIBUTES"

    RULE_IF_ELSE = "RULE_IF_ELSE"
    RULE_WAIT_FOR_DURATION = "RULE_WAIT_FOR_DURATION"

    END = "END"


SUBTYPES_BY_TYPE: dict[StepType, frozenset[StepSubtype]] = {
    step_type: frozenset(s for s in StepSubtype if s.value.startswith(step_type.value))
    for step_type in StepType
}

TAG_TRIGGERS = frozenset(
    {StepSubtype.TRIGGER_CONTACT_TAG_ADDED, StepSubtype.TRIGGER_CONTACT_TAG_REMOVED}
)


def subtype_belongs_to(step_type: StepType, subtype: StepSubtype) -> bool:
    return subtype in SUBTYPES_BY_TYPE[step_type]


class Branch(str, Enum):
    """Edge label of an IF/ELSE child."""

    YES = "YES"
    NO = "NO"


class ActivationStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ARCHIVED = "ARCHIVED"


class LedgerStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_LEDGER_STATUSES = frozenset({LedgerStatus.COMPLETED, LedgerStatus.FAILED})

# Five years.
MAX_WAIT_SECONDS = 5 * 365 * 24 * 60 * 60


class Automation(BaseModel):
    """A named step graph scoped to one audience."""

    id: str
    audience_id: str
    name: str
    description: Optional[str] = None
    status: ActivationStatus = ActivationStatus.DRAFT


class AutomationStep(BaseModel):
    """A node in an automation graph."""

    id: str
    automation_id: str
    type: StepType
    subtype: StepSubtype
    parent_id: Optional[str] = None
    branch: Optional[Branch] = None
    status: ActivationStatus = ActivationStatus.DRAFT
    configuration: dict[str, Any] = Field(default_factory=dict)

    email_id: Optional[str] = None
    tag_id: Optional[str] = None
    audience_id: Optional[str] = None


class LedgerEntry(BaseModel):
    """One contact's record for one step; unique per (contact_id, automation_step_id)."""

    id: str
    contact_id: str
    automation_step_id: str
    status: LedgerStatus = LedgerStatus.PENDING
    output: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None


# Subtype configuration payloads. Keys are camelCase on the wire.


class _Configuration(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class TriggerConfiguration(_Configuration):
    filter_groups: Optional[FilterGroups] = Field(default=None, alias="filterGroups")
    tag_ids: list[str] = Field(default_factory=list, alias="tagIds")


class TagConfiguration(_Configuration):
    tag_ids: list[str] = Field(default_factory=list, alias="tagIds")


class IfElseConfiguration(_Configuration):
    filter_groups: FilterGroups = Field(alias="filterGroups")


class WaitForDurationConfiguration(_Configuration):
    delay: float = Field(
        ge=0,
        le=MAX_WAIT_SECONDS,
        allow_inf_nan=False,
        description="Seconds to wait before continuing",
    )


class UpdateContactAttributesConfiguration(_Configuration):
    attributes: dict[str, Union[str, list[str]]]


class CreateStepInput(BaseModel):
    """Input for creating a step."""

    type: StepType
    subtype: StepSubtype
    parent_id: Optional[str] = None
    target_id: Optional[str] = Field(
        default=None, description="Existing step to re-parent under the new step"
    )
    branch: Optional[Branch] = None
    configuration: dict[str, Any] = Field(default_factory=dict)
    email_id: Optional[str] = None
    tag_id: Optional[str] = None
    audience_id: Optional[str] = None


class UpdateStepInput(BaseModel):
    """Input for updating a step's configuration and references."""

    configuration: dict[str, Any] = Field(default_factory=dict)
    email_id: Optional[str] = None
    tag_id: Optional[str] = None
    audience_id: Optional[str] = None
