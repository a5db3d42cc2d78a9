"""At-most-once completion of a step for a contact.

The ledger row for ``(contact_id, step_id)`` is the lock. It is created
PENDING, the step's (idempotent) effect runs, then a conditional
``PENDING -> COMPLETED`` update decides the single winner. Only the winner
schedules the next step, so a successor is scheduled exactly once even when
the same job is delivered twice.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

import structlog

from audience_automations.automations.runners import Completed, Failed, StepResult, Waiting
from audience_automations.config import Settings, get_settings
from audience_automations.models import LedgerEntry, LedgerStatus
from audience_automations.models.automation import TERMINAL_LEDGER_STATUSES
from audience_automations.queue.base import JobOptions, JobQueue
from audience_automations.queue.jobs import RunAutomationStepForContact
from audience_automations.stores.base import LedgerStore

logger = structlog.get_logger()


class GuardOutcome(str, Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    WAITING = "WAITING"
    ALREADY_RAN = "ALREADY_RAN"


@dataclass(frozen=True)
class GuardResult:
    outcome: GuardOutcome
    next_step_id: Optional[str] = None
    resume_at: Optional[datetime] = None
    reason: Optional[str] = None


ALREADY_RAN = GuardResult(GuardOutcome.ALREADY_RAN)


def step_job_key(step_id: str, contact_id: str) -> str:
    return f"run:{step_id}:{contact_id}"


class IdempotencyGuard:
    """Run step effects through the ledger and schedule successors."""

    def __init__(
        self, ledger: LedgerStore, queue: JobQueue, settings: Optional[Settings] = None
    ) -> None:
        self.ledger = ledger
        self.queue = queue
        self.settings = settings or get_settings()

    def execute(
        self, contact_id: str, step_id: str, action: Callable[[LedgerEntry], StepResult]
    ) -> GuardResult:
        """Run ``action`` for the pair unless it already reached a terminal state.

        Exceptions raised by ``action`` propagate and leave the row PENDING, so a
        retried job redoes the effect.
        """

        entry = self._pending_entry(contact_id, step_id)
        if entry is None:
            logger.debug("automation_step_already_ran", contact_id=contact_id, step_id=step_id)
            return ALREADY_RAN

        result = action(entry)

        if isinstance(result, Waiting):
            return GuardResult(GuardOutcome.WAITING, resume_at=result.resume_at)

        if isinstance(result, Failed):
            changed = self.ledger.update_ledger_status(
                entry.id, LedgerStatus.FAILED, expected=LedgerStatus.PENDING, output=result.reason
            )
            if not changed:
                return ALREADY_RAN
            logger.warning(
                "automation_step_failed", contact_id=contact_id, step_id=step_id, reason=result.reason
            )
            return GuardResult(GuardOutcome.FAILED, reason=result.reason)

        if not isinstance(result, Completed):
            raise TypeError(f"Unknown step result: {result!r}")

        won = self.ledger.update_ledger_status(
            entry.id, LedgerStatus.COMPLETED, expected=LedgerStatus.PENDING
        )
        if not won:
            logger.debug("automation_step_completion_lost", contact_id=contact_id, step_id=step_id)
            return ALREADY_RAN

        logger.info(
            "automation_step_completed",
            contact_id=contact_id,
            step_id=step_id,
            next_step_id=result.next_step_id,
        )
        if result.next_step_id is not None:
            self.schedule_step(contact_id, result.next_step_id)
        return GuardResult(GuardOutcome.COMPLETED, next_step_id=result.next_step_id)

    def schedule_step(self, contact_id: str, step_id: str) -> bool:
        """Ensure a PENDING row for the pair and queue its step job.

        Returns False when the pair already reached a terminal state.
        """

        entry = self._pending_entry(contact_id, step_id)
        if entry is None:
            return False

        payload = RunAutomationStepForContact(automation_step_id=step_id, contact_id=contact_id)
        self.queue.enqueue(
            payload.job_name,
            payload,
            JobOptions(attempts=self.settings.job_attempts, key=step_job_key(step_id, contact_id)),
        )
        return True

    def _pending_entry(self, contact_id: str, step_id: str) -> Optional[LedgerEntry]:
        """Return the pair's PENDING row, creating it if needed; None if terminal."""

        entry = self.ledger.find_ledger_entry(contact_id, step_id)
        if entry is None:
            entry = self.ledger.create_ledger_entry(contact_id, step_id, LedgerStatus.PENDING)
            if entry is None:
                # Lost the creation race.
                entry = self.ledger.find_ledger_entry(contact_id, step_id)
        if entry is None or entry.status in TERMINAL_LEDGER_STATUSES:
            return None
        return entry
