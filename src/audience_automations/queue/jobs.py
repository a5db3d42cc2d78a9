"""Job names, payloads and results."""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from audience_automations.models.automation import StepSubtype
from audience_automations.queue.base import JobEntry, JobOptions

RUN_AUTOMATION_FOR_CONTACT = "AUTOMATIONS::RUN_AUTOMATION_FOR_CONTACT"
RUN_AUTOMATION_STEP_FOR_CONTACT = "AUTOMATIONS::RUN_AUTOMATION_STEP_FOR_CONTACT"
RUN_AUTOMATION_STEP = "AUTOMATIONS::RUN_AUTOMATION_STEP"
TRIGGER_AUTOMATIONS_FOR_CONTACT = "AUTOMATIONS::TRIGGER_AUTOMATIONS_FOR_CONTACT"


class _JobPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    job_name: ClassVar[str]

    def entry(self, options: Optional[JobOptions] = None) -> JobEntry:
        return JobEntry(name=self.job_name, payload=self, options=options or JobOptions())


class RunAutomationForContact(_JobPayload):
    """Evaluate an automation's trigger for one contact and start it."""

    job_name: ClassVar[str] = RUN_AUTOMATION_FOR_CONTACT

    automation_id: str
    contact_id: str


class RunAutomationStepForContact(_JobPayload):
    """Run one step for one contact through the idempotency guard."""

    job_name: ClassVar[str] = RUN_AUTOMATION_STEP_FOR_CONTACT

    automation_step_id: str
    contact_id: str


class RunAutomationStep(_JobPayload):
    """Sweep every contact pending at a step."""

    job_name: ClassVar[str] = RUN_AUTOMATION_STEP

    automation_step_id: str
    attempt: int = Field(default=0, ge=0, description="Re-check round of a wait-step sweep")


class TriggerAutomationsForContact(_JobPayload):
    """Fan a contact event out to every matching active trigger."""

    job_name: ClassVar[str] = TRIGGER_AUTOMATIONS_FOR_CONTACT

    contact_id: str
    trigger: StepSubtype


PAYLOAD_TYPES: dict[str, type[_JobPayload]] = {
    cls.job_name: cls
    for cls in (
        RunAutomationForContact,
        RunAutomationStepForContact,
        RunAutomationStep,
        TriggerAutomationsForContact,
    )
}


@dataclass(frozen=True)
class JobResult:
    """Outcome reported by a job handler.

    A failed result is final; raise instead to have the worker retry.
    """

    success: bool
    output: Optional[str] = None

    @classmethod
    def done(cls, output: Optional[str] = None) -> "JobResult":
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, output: str) -> "JobResult":
        return cls(success=False, output=output)
