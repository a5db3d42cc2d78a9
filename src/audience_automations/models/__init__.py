"""Data models for Audience Automations.

This package contains Pydantic models for validation and serialization of
automations, steps, the execution ledger, contacts and filters.
"""

from audience_automations.models.automation import (
    ActivationStatus,
    Automation,
    AutomationStep,
    Branch,
    CreateStepInput,
    IfElseConfiguration,
    LedgerEntry,
    LedgerStatus,
    StepSubtype,
    StepType,
    TagConfiguration,
    TriggerConfiguration,
    UpdateContactAttributesConfiguration,
    UpdateStepInput,
    WaitForDurationConfiguration,
)
from audience_automations.models.contact import (
    Audience,
    Contact,
    ContactStatus,
    KnownProperty,
    PropertyType,
    Segment,
)
from audience_automations.models.filters import (
    Combinator,
    ContactField,
    FilterCondition,
    FilterConditionGroup,
    FilterGroups,
    FilterOperation,
)

__all__ = [
    "ActivationStatus",
    "Audience",
    "Automation",
    "AutomationStep",
    "Branch",
    "Combinator",
    "Contact",
    "ContactField",
    "ContactStatus",
    "CreateStepInput",
    "FilterCondition",
    "FilterConditionGroup",
    "FilterGroups",
    "FilterOperation",
    "IfElseConfiguration",
    "KnownProperty",
    "LedgerEntry",
    "LedgerStatus",
    "PropertyType",
    "Segment",
    "StepSubtype",
    "StepType",
    "TagConfiguration",
    "TriggerConfiguration",
    "UpdateContactAttributesConfiguration",
    "UpdateStepInput",
    "WaitForDurationConfiguration",
]
