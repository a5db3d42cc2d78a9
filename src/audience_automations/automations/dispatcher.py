"""Trigger dispatcher: turn contact events into automation runs."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Optional

import pydantic
import structlog

from audience_automations.automations.context import load_audience_context
from audience_automations.automations.guard import IdempotencyGuard
from audience_automations.config import Settings, get_settings
from audience_automations.exceptions import StepConfigurationError
from audience_automations.models import (
    ActivationStatus,
    AutomationStep,
    LedgerStatus,
    StepSubtype,
    TriggerConfiguration,
)
from audience_automations.queue.base import JobOptions, JobQueue
from audience_automations.queue.jobs import RunAutomationForContact
from audience_automations.segments.compiler import compile_filter
from audience_automations.stores.base import AutomationStore, ContactStore, LedgerStore
from audience_automations.utils import utc_now

logger = structlog.get_logger()


class StartOutcome(str, Enum):
    STARTED = "STARTED"
    FILTERED_OUT = "FILTERED_OUT"
    ALREADY_TRIGGERED = "ALREADY_TRIGGERED"
    NOT_FOUND = "NOT_FOUND"


class TriggerDispatcher:
    def __init__(
        self,
        contacts: ContactStore,
        automations: AutomationStore,
        ledger: LedgerStore,
        queue: JobQueue,
        guard: IdempotencyGuard,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.contacts = contacts
        self.automations = automations
        self.ledger = ledger
        self.queue = queue
        self.guard = guard
        self.settings = settings or get_settings()
        self._clock = clock

    def on_event(self, contact_id: str, event: StepSubtype) -> int:
        """Queue a run of every active automation whose trigger matches the event.

        Returns:
            Number of ``RunAutomationForContact`` jobs queued.
        """

        contact = self.contacts.find_by_id(contact_id)
        if contact is None:
            logger.warning("automation_event_contact_missing", contact_id=contact_id, trigger=event.value)
            return 0

        triggers = self.automations.find_steps_by_subtype_and_status(
            contact.audience_id, event, ActivationStatus.ACTIVE
        )
        tags = self.contacts.list_tags(contact_id) if event in _TAG_MATCHERS else set()

        queued = 0
        for trigger in triggers:
            automation = self.automations.find_automation(trigger.automation_id)
            if automation is None or automation.status != ActivationStatus.ACTIVE:
                continue
            if event in _TAG_MATCHERS and not _TAG_MATCHERS[event](tags, _trigger_tag_ids(trigger)):
                continue
            if self.ledger.find_ledger_entry(contact_id, trigger.id) is not None:
                logger.debug(
                    "automation_already_triggered", contact_id=contact_id, automation_id=automation.id
                )
                continue

            payload = RunAutomationForContact(automation_id=automation.id, contact_id=contact_id)
            job_id = self.queue.enqueue(
                payload.job_name,
                payload,
                JobOptions(
                    attempts=self.settings.job_attempts,
                    key=f"start:{automation.id}:{contact_id}",
                ),
            )
            if job_id is not None:
                queued += 1

        logger.info("automation_event_dispatched", contact_id=contact_id, trigger=event.value, queued=queued)
        return queued

    def start(self, automation_id: str, contact_id: str) -> StartOutcome:
        """Evaluate the trigger filter for the contact and put it on the first step."""

        automation = self.automations.find_automation(automation_id)
        contact = self.contacts.find_by_id(contact_id)
        trigger = self.automations.find_trigger(automation_id)
        if automation is None or contact is None or trigger is None:
            logger.warning(
                "automation_start_target_missing",
                automation_id=automation_id,
                contact_id=contact_id,
                has_trigger=trigger is not None,
            )
            return StartOutcome.NOT_FOUND

        if contact.audience_id != automation.audience_id:
            logger.warning(
                "automation_start_audience_mismatch",
                automation_id=automation_id,
                contact_id=contact_id,
            )
            return StartOutcome.FILTERED_OUT

        config = _trigger_configuration(trigger)
        if config.filter_groups is not None:
            audience = load_audience_context(self.contacts, automation.audience_id)
            predicate = compile_filter(config.filter_groups, audience, now=self._clock())
            if not self.contacts.contact_matches(contact_id, predicate):
                logger.info(
                    "automation_trigger_filtered_out", automation_id=automation_id, contact_id=contact_id
                )
                return StartOutcome.FILTERED_OUT

        created = self.ledger.create_ledger_entry(contact_id, trigger.id, LedgerStatus.COMPLETED)
        first = self.automations.find_child_step(trigger.id)

        if created is None:
            # A retried start may have stopped before queueing the first step.
            if first is not None:
                self.guard.schedule_step(contact_id, first.id)
            return StartOutcome.ALREADY_TRIGGERED

        if first is None:
            logger.warning("automation_has_no_steps", automation_id=automation_id)
        else:
            self.guard.schedule_step(contact_id, first.id)

        logger.info("automation_started", automation_id=automation_id, contact_id=contact_id)
        return StartOutcome.STARTED


def _trigger_configuration(trigger: AutomationStep) -> TriggerConfiguration:
    try:
        return TriggerConfiguration.model_validate(trigger.configuration)
    except pydantic.ValidationError as e:
        raise StepConfigurationError(f"Trigger {trigger.id} has invalid configuration: {e}") from e


def _trigger_tag_ids(trigger: AutomationStep) -> set[str]:
    return set(_trigger_configuration(trigger).tag_ids)


def _tag_added(tags: set[str], tag_ids: set[str]) -> bool:
    if not tag_ids:
        return True
    return not tags.isdisjoint(tag_ids)


def _tag_removed(tags: set[str], tag_ids: set[str]) -> bool:
    if not tag_ids:
        return True
    return not tags or not tags <= tag_ids


_TAG_MATCHERS: dict[StepSubtype, Callable[[set[str], set[str]], bool]] = {
    StepSubtype.TRIGGER_CONTACT_TAG_ADDED: _tag_added,
    StepSubtype.TRIGGER_CONTACT_TAG_REMOVED: _tag_removed,
}
