"""Job handlers wiring the queue to the engine.

Handlers translate outcomes into ``JobResult``s:

- missing automation/step/contact: logged, ``done`` (never retried)
- already executed: ``done``
- configuration/validation errors: ``fail``, ledger untouched
- anything else: raised, so the worker retries the job
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog

from audience_automations.automations.context import ExecutionContext
from audience_automations.automations.dispatcher import StartOutcome, TriggerDispatcher
from audience_automations.automations.guard import GuardOutcome, GuardResult, IdempotencyGuard
from audience_automations.automations.runners import check_runnable, run_step
from audience_automations.automations.scheduler import BatchScheduler
from audience_automations.exceptions import NotFoundError, StepConfigurationError, ValidationError
from audience_automations.queue.jobs import (
    JobResult,
    RunAutomationForContact,
    RunAutomationStep,
    RunAutomationStepForContact,
    TriggerAutomationsForContact,
)
from audience_automations.stores.base import AutomationStore, ContactStore, EmailSender
from audience_automations.utils import utc_now

logger = structlog.get_logger()


class StepExecutor:
    """Run one step for one contact: load, guard, run, schedule a resume if waiting."""

    def __init__(
        self,
        contacts: ContactStore,
        automations: AutomationStore,
        email_sender: EmailSender,
        guard: IdempotencyGuard,
        scheduler: BatchScheduler,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.contacts = contacts
        self.automations = automations
        self.email_sender = email_sender
        self.guard = guard
        self.scheduler = scheduler
        self._clock = clock

    def run(self, step_id: str, contact_id: str) -> GuardResult:
        """Raises:
        NotFoundError: If the step or contact no longer exists.
        StepConfigurationError: If the stored step cannot be run.
        """

        step = self.automations.find_step(step_id)
        if step is None:
            raise NotFoundError(f"Step {step_id} does not exist")
        contact = self.contacts.find_by_id(contact_id)
        if contact is None:
            raise NotFoundError(f"Contact {contact_id} does not exist")
        check_runnable(step)

        def action(entry):
            ctx = ExecutionContext(
                contacts=self.contacts,
                automations=self.automations,
                email_sender=self.email_sender,
                entry=entry,
                now=self._clock(),
            )
            return run_step(step, contact, ctx)

        result = self.guard.execute(contact_id, step_id, action)
        if result.outcome == GuardOutcome.WAITING and result.resume_at is not None:
            self.scheduler.schedule_resume(step_id, result.resume_at)
        return result


class AutomationJobHandlers:
    def __init__(
        self,
        dispatcher: TriggerDispatcher,
        executor: StepExecutor,
        scheduler: BatchScheduler,
    ) -> None:
        self.dispatcher = dispatcher
        self.executor = executor
        self.scheduler = scheduler

    def trigger_automations_for_contact(self, payload: dict[str, Any]) -> JobResult:
        job = TriggerAutomationsForContact.model_validate(payload)
        queued = self.dispatcher.on_event(job.contact_id, job.trigger)
        return JobResult.done(f"queued={queued}")

    def run_automation_for_contact(self, payload: dict[str, Any]) -> JobResult:
        job = RunAutomationForContact.model_validate(payload)
        try:
            outcome = self.dispatcher.start(job.automation_id, job.contact_id)
        except (StepConfigurationError, ValidationError) as e:
            logger.error(
                "automation_start_invalid",
                automation_id=job.automation_id,
                contact_id=job.contact_id,
                error=str(e),
            )
            return JobResult.fail(str(e))

        if outcome == StartOutcome.NOT_FOUND:
            logger.warning(
                "automation_start_skipped", automation_id=job.automation_id, contact_id=job.contact_id
            )
        return JobResult.done(outcome.value)

    def run_automation_step_for_contact(self, payload: dict[str, Any]) -> JobResult:
        job = RunAutomationStepForContact.model_validate(payload)
        try:
            result = self.executor.run(job.automation_step_id, job.contact_id)
        except NotFoundError as e:
            logger.warning(
                "automation_step_target_missing",
                step_id=job.automation_step_id,
                contact_id=job.contact_id,
                error=str(e),
            )
            return JobResult.done("not_found")
        except (StepConfigurationError, ValidationError) as e:
            logger.error(
                "automation_step_invalid",
                step_id=job.automation_step_id,
                contact_id=job.contact_id,
                error=str(e),
            )
            return JobResult.fail(str(e))

        return JobResult.done(result.outcome.value)

    def run_automation_step(self, payload: dict[str, Any]) -> JobResult:
        job = RunAutomationStep.model_validate(payload)
        if self.scheduler.automations.find_step(job.automation_step_id) is None:
            logger.warning("automation_sweep_step_missing", step_id=job.automation_step_id)
            return JobResult.done("not_found")

        enqueued = self.scheduler.sweep(job.automation_step_id, job.attempt)
        return JobResult.done(f"enqueued={enqueued}")

    def as_mapping(self) -> dict[str, Callable[[dict[str, Any]], JobResult]]:
        return {
            TriggerAutomationsForContact.job_name: self.trigger_automations_for_contact,
            RunAutomationForContact.job_name: self.run_automation_for_contact,
            RunAutomationStepForContact.job_name: self.run_automation_step_for_contact,
            RunAutomationStep.job_name: self.run_automation_step,
        }
