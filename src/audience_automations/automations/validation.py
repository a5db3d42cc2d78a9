"""Write-time validation of step configuration.

Runners trust what is stored, so every step goes through
``validate_step_configuration`` before it is persisted.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Optional

import pydantic

from audience_automations.exceptions import ValidationError
from audience_automations.models.automation import (
    IfElseConfiguration,
    StepSubtype,
    StepType,
    TagConfiguration,
    TriggerConfiguration,
    UpdateContactAttributesConfiguration,
    WaitForDurationConfiguration,
    subtype_belongs_to,
)
from audience_automations.models.contact import Audience
from audience_automations.segments.compiler import check_filter_operations

_CONFIGURATION_MODELS: dict[StepSubtype, type[pydantic.BaseModel]] = {
    StepSubtype.ACTION_ADD_TAG: TagConfiguration,
    StepSubtype.ACTION_REMOVE_TAG: TagConfiguration,
    StepSubtype.RULE_IF_ELSE: IfElseConfiguration,
    StepSubtype.RULE_WAIT_FOR_DURATION: WaitForDurationConfiguration,
    StepSubtype.ACTION_UPDATE_CONTACT_ATTRIBUTES: UpdateContactAttributesConfiguration,
}

_REQUIRED_REFERENCES: dict[StepSubtype, str] = {
    StepSubtype.ACTION_SEND_EMAIL: "email_id",
    StepSubtype.ACTION_ADD_TAG: "tag_id",
    StepSubtype.ACTION_REMOVE_TAG: "tag_id",
    StepSubtype.ACTION_SUBSCRIBE_TO_AUDIENCE: "audience_id",
    StepSubtype.ACTION_UNSUBSCRIBE_FROM_AUDIENCE: "audience_id",
}


def validate_step_configuration(
    step_type: StepType,
    subtype: StepSubtype,
    configuration: Optional[Mapping[str, Any]] = None,
    *,
    email_id: Optional[str] = None,
    tag_id: Optional[str] = None,
    audience_id: Optional[str] = None,
    audience: Optional[Audience] = None,
) -> None:
    """Validate a step's subtype, references and configuration payload.

    Filter conditions are checked against the operations their field supports;
    pass the automation's ``audience`` to also check custom property conditions.

    Raises:
        ValidationError: With one entry per offending field.
    """

    errors: list[dict[str, str]] = []

    if not subtype_belongs_to(step_type, subtype):
        errors.append(
            {
                "field": "subtype",
                "message": f"Subtype {subtype.value} is not valid for step type {step_type.value}.",
            }
        )

    references = {"email_id": email_id, "tag_id": tag_id, "audience_id": audience_id}
    required = _REQUIRED_REFERENCES.get(subtype)
    if required is not None and not references[required]:
        errors.append({"field": required, "message": f"{subtype.value} requires {required}."})

    model = _configuration_model(subtype)
    if model is not None:
        try:
            parsed = model.model_validate(dict(configuration or {}))
        except pydantic.ValidationError as e:
            errors.extend(_field_errors(e))
        else:
            errors.extend(_filter_errors(parsed, audience))

    if errors:
        raise ValidationError(errors)


def _configuration_model(subtype: StepSubtype) -> Optional[type[pydantic.BaseModel]]:
    if subtype_belongs_to(StepType.TRIGGER, subtype):
        return TriggerConfiguration
    return _CONFIGURATION_MODELS.get(subtype)


def _field_errors(error: pydantic.ValidationError) -> list[dict[str, str]]:
    out = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        field = f"configuration.{location}" if location else "configuration"
        out.append({"field": field, "message": f"{field}: {item['msg']}"})
    return out


def _filter_errors(parsed: pydantic.BaseModel, audience: Optional[Audience]) -> list[dict[str, str]]:
    filter_groups = getattr(parsed, "filter_groups", None)
    if filter_groups is None:
        return []
    try:
        check_filter_operations(filter_groups, audience)
    except ValidationError as e:
        return [
            {"field": "configuration.filterGroups", "message": f"configuration.filterGroups: {item['message']}"}
            for item in e.errors
        ]
    return []
