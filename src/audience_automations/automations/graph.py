"""Step graph editing: automations, step creation and activation.

All structural rules are enforced here, on write:

- a step's subtype belongs to its type's family
- one trigger per automation, and it has no parent
- a plain parent has at most one child; an IF/ELSE has one YES and one NO child
- END steps have no children
"""

from __future__ import annotations

from typing import Optional

import structlog

from audience_automations.automations.validation import validate_step_configuration
from audience_automations.exceptions import NotFoundError, ValidationError
from audience_automations.models.automation import (
    ActivationStatus,
    Automation,
    AutomationStep,
    Branch,
    CreateStepInput,
    StepSubtype,
    StepType,
    UpdateStepInput,
)
from audience_automations.models.contact import Audience
from audience_automations.stores.base import AutomationStore, ContactStore
from audience_automations.utils import new_id

logger = structlog.get_logger()


class StepGraph:
    """Create and mutate automations through an ``AutomationStore``.

    With a ``ContactStore`` filters on custom properties are also checked
    against the automation's audience.
    """

    def __init__(self, automations: AutomationStore, contacts: Optional[ContactStore] = None) -> None:
        self.automations = automations
        self.contacts = contacts

    def create_automation(
        self, audience_id: str, name: str, description: Optional[str] = None
    ) -> Automation:
        automation = Automation(
            id=new_id(), audience_id=audience_id, name=name, description=description
        )
        self.automations.create_automation(automation)
        logger.info("automation_created", automation_id=automation.id, audience_id=audience_id)
        return automation

    def create_step(self, automation_id: str, data: CreateStepInput) -> AutomationStep:
        """Create a step, optionally inserting it above an existing ``target_id``.

        IF/ELSE steps are routed to ``create_if_else_step`` so they always get
        their NO branch.
        """

        if data.subtype == StepSubtype.RULE_IF_ELSE:
            return self.create_if_else_step(automation_id, data, data.target_id)

        step = self._insert(automation_id, data)
        if data.target_id is not None:
            self.automations.set_parent(data.target_id, step.id, None)
        return step

    def create_if_else_step(
        self, automation_id: str, data: CreateStepInput, target_id: Optional[str] = None
    ) -> AutomationStep:
        """Create an IF/ELSE with ``target_id`` on YES and ACTION_EMPTY -> END on NO."""

        if data.subtype != StepSubtype.RULE_IF_ELSE:
            raise ValidationError(
                [{"field": "subtype", "message": "create_if_else_step requires RULE_IF_ELSE."}]
            )

        rule = self._insert(automation_id, data.model_copy(update={"target_id": target_id}))
        if target_id is not None:
            self.automations.set_parent(target_id, rule.id, Branch.YES)

        placeholder = self._insert(
            automation_id,
            CreateStepInput(
                type=StepType.ACTION,
                subtype=StepSubtype.ACTION_EMPTY,
                parent_id=rule.id,
                branch=Branch.NO,
            ),
        )
        self._insert(
            automation_id,
            CreateStepInput(type=StepType.END, subtype=StepSubtype.END, parent_id=placeholder.id),
        )
        return rule

    def update_step(self, step_id: str, data: UpdateStepInput) -> AutomationStep:
        step = self.automations.find_step(step_id)
        if step is None:
            raise NotFoundError(f"Step {step_id} does not exist")

        changes = {name: getattr(data, name) for name in data.model_fields_set}
        updated = step.model_copy(update=changes)
        validate_step_configuration(
            updated.type,
            updated.subtype,
            updated.configuration,
            email_id=updated.email_id,
            tag_id=updated.tag_id,
            audience_id=updated.audience_id,
            audience=self._audience_of(step.automation_id),
        )

        self.automations.update_step(updated)
        logger.info("automation_step_updated", step_id=step_id, fields=sorted(changes))
        return updated

    def activate(self, automation_id: str) -> Automation:
        return self._set_status(automation_id, ActivationStatus.ACTIVE)

    def pause(self, automation_id: str) -> Automation:
        """Stop new trigger matches; jobs already queued still run."""

        return self._set_status(automation_id, ActivationStatus.PAUSED)

    def _set_status(self, automation_id: str, status: ActivationStatus) -> Automation:
        automation = self._require_automation(automation_id)
        trigger = self.automations.find_trigger(automation_id)
        if trigger is None:
            raise ValidationError(
                [{"field": "trigger", "message": f"Automation {automation_id} has no trigger."}]
            )

        self.automations.update_step(trigger.model_copy(update={"status": status}))
        self.automations.set_automation_status(automation_id, status)
        logger.info("automation_status_changed", automation_id=automation_id, status=status.value)
        return automation.model_copy(update={"status": status})

    def _require_automation(self, automation_id: str) -> Automation:
        automation = self.automations.find_automation(automation_id)
        if automation is None:
            raise NotFoundError(f"Automation {automation_id} does not exist")
        return automation

    def _audience_of(self, automation_id: str) -> Optional[Audience]:
        if self.contacts is None:
            return None
        automation = self.automations.find_automation(automation_id)
        if automation is None:
            return None
        return self.contacts.find_audience(automation.audience_id)

    def _insert(self, automation_id: str, data: CreateStepInput) -> AutomationStep:
        automation = self._require_automation(automation_id)
        validate_step_configuration(
            data.type,
            data.subtype,
            data.configuration,
            email_id=data.email_id,
            tag_id=data.tag_id,
            audience_id=data.audience_id,
            audience=self._audience_of(automation.id),
        )

        if data.type == StepType.END and data.target_id is not None:
            raise ValidationError(
                [{"field": "target_id", "message": "END steps cannot have children."}]
            )
        if data.type == StepType.TRIGGER:
            self._check_trigger_slot(automation_id, data)
        else:
            self._check_child_slot(automation_id, data)

        step = AutomationStep(
            id=new_id(),
            automation_id=automation_id,
            type=data.type,
            subtype=data.subtype,
            parent_id=data.parent_id,
            branch=data.branch,
            configuration=dict(data.configuration),
            email_id=data.email_id,
            tag_id=data.tag_id,
            audience_id=data.audience_id,
        )
        self.automations.insert_step(step)
        logger.info(
            "automation_step_created",
            automation_id=automation_id,
            step_id=step.id,
            subtype=step.subtype.value,
            parent_id=step.parent_id,
        )
        return step

    def _check_trigger_slot(self, automation_id: str, data: CreateStepInput) -> None:
        if data.parent_id is not None or data.branch is not None:
            raise ValidationError(
                [{"field": "parent_id", "message": "A trigger cannot have a parent."}]
            )
        if self.automations.find_trigger(automation_id) is not None:
            raise ValidationError(
                [{"field": "type", "message": f"Automation {automation_id} already has a trigger."}]
            )
        if data.target_id is not None:
            self._require_target(automation_id, data.target_id)

    def _check_child_slot(self, automation_id: str, data: CreateStepInput) -> None:
        if data.parent_id is None:
            raise ValidationError(
                [{"field": "parent_id", "message": f"{data.subtype.value} requires a parent step."}]
            )

        parent = self.automations.find_step(data.parent_id)
        if parent is None or parent.automation_id != automation_id:
            raise NotFoundError(f"Step {data.parent_id} does not exist in automation {automation_id}")
        if parent.type == StepType.END:
            raise ValidationError(
                [{"field": "parent_id", "message": "END steps cannot have children."}]
            )

        if parent.subtype == StepSubtype.RULE_IF_ELSE:
            if data.branch is None:
                raise ValidationError(
                    [{"field": "branch", "message": "Children of an IF/ELSE step need a branch."}]
                )
        elif data.branch is not None:
            raise ValidationError(
                [{"field": "branch", "message": "Only children of an IF/ELSE step have a branch."}]
            )

        occupant = self.automations.find_child_step(parent.id, data.branch)
        if data.target_id is not None:
            target = self._require_target(automation_id, data.target_id)
            if occupant is None or occupant.id != target.id:
                raise ValidationError(
                    [
                        {
                            "field": "target_id",
                            "message": "target_id must be the current child of the parent slot.",
                        }
                    ]
                )
        elif occupant is not None:
            raise ValidationError(
                [
                    {
                        "field": "parent_id",
                        "message": f"Step {parent.id} already has a child on this branch.",
                    }
                ]
            )

    def _require_target(self, automation_id: str, target_id: str) -> AutomationStep:
        target = self.automations.find_step(target_id)
        if target is None or target.automation_id != automation_id:
            raise NotFoundError(f"Step {target_id} does not exist in automation {automation_id}")
        if target.type == StepType.TRIGGER:
            raise ValidationError(
                [{"field": "target_id", "message": "A trigger cannot be re-parented."}]
            )
        return target
