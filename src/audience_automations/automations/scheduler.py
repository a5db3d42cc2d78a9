"""Batch scheduler: fan a step out to every contact pending at it.

The page function is a pure read of PENDING ledger rows ordered by contact id,
so a sweep can be interrupted at any page and simply started again; contacts
that advanced in the meantime no longer show up.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from datetime import datetime
from typing import Optional

import structlog

from audience_automations.automations.guard import step_job_key
from audience_automations.config import Settings, get_settings
from audience_automations.models.automation import StepSubtype
from audience_automations.queue.base import JobOptions, JobQueue
from audience_automations.queue.jobs import RunAutomationStep, RunAutomationStepForContact
from audience_automations.stores.base import AutomationStore, LedgerStore, PendingContactsPage
from audience_automations.utils import utc_now

logger = structlog.get_logger()


class BatchScheduler:
    def __init__(
        self,
        ledger: LedgerStore,
        automations: AutomationStore,
        queue: JobQueue,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.ledger = ledger
        self.automations = automations
        self.queue = queue
        self.settings = settings or get_settings()
        self._clock = clock

    def page(self, step_id: str, cursor: Optional[str]) -> PendingContactsPage:
        return self.ledger.find_pending_contacts_for_step(step_id, cursor, self.settings.batch_size)

    def advance(self, step_id: str) -> int:
        """Queue a per-contact job for every contact pending at ``step_id``.

        Returns:
            Number of jobs handed to the queue.
        """

        enqueued = 0
        cursor: Optional[str] = None

        while True:
            page = self.page(step_id, cursor)
            if page.contact_ids:
                enqueued += self.queue.enqueue_bulk(
                    RunAutomationStepForContact(
                        automation_step_id=step_id, contact_id=contact_id
                    ).entry(
                        JobOptions(
                            attempts=self.settings.job_attempts,
                            key=step_job_key(step_id, contact_id),
                        )
                    )
                    for contact_id in page.contact_ids
                )
                logger.debug(
                    "automation_sweep_page", step_id=step_id, size=len(page.contact_ids), cursor=cursor
                )

            if page.next_cursor is None:
                break
            cursor = page.next_cursor

        logger.info("automation_sweep_completed", step_id=step_id, enqueued=enqueued)
        return enqueued

    def sweep(self, step_id: str, attempt: int = 0) -> int:
        """Advance a step and, for wait steps with contacts left, re-check later."""

        enqueued = self.advance(step_id)

        step = self.automations.find_step(step_id)
        if step is None or step.subtype != StepSubtype.RULE_WAIT_FOR_DURATION:
            return enqueued
        if not self.page(step_id, None).contact_ids:
            return enqueued

        if attempt >= self.settings.wait_max_recheck_attempts:
            logger.warning("automation_wait_recheck_exhausted", step_id=step_id, attempt=attempt)
            return enqueued

        payload = RunAutomationStep(automation_step_id=step_id, attempt=attempt + 1)
        self.queue.enqueue(
            payload.job_name,
            payload,
            JobOptions(
                delay=self.settings.wait_recheck_seconds,
                key=f"sweep:{step_id}:recheck:{attempt + 1}",
            ),
        )
        return enqueued

    def schedule_resume(self, step_id: str, resume_at: datetime) -> Optional[str]:
        """Queue a sweep of ``step_id`` for when a waiting contact becomes due.

        Resume times are rounded up to the sweep granularity and keyed by the
        rounded time, so contacts resuming close together share one sweep.
        """

        granularity = self.settings.wait_sweep_granularity_seconds
        bucket = math.ceil(resume_at.timestamp() / granularity) * granularity
        delay = max(0.0, bucket - self._clock().timestamp())

        payload = RunAutomationStep(automation_step_id=step_id)
        return self.queue.enqueue(
            payload.job_name,
            payload,
            JobOptions(delay=delay, key=f"sweep:{step_id}:{bucket}"),
        )
