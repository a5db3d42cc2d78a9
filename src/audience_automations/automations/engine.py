"""Assemble the engine components around a set of stores and a queue."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog

from audience_automations.automations.dispatcher import TriggerDispatcher
from audience_automations.automations.graph import StepGraph
from audience_automations.automations.guard import IdempotencyGuard
from audience_automations.automations.handlers import AutomationJobHandlers, StepExecutor
from audience_automations.automations.scheduler import BatchScheduler
from audience_automations.config import Settings, get_settings
from audience_automations.models import StepSubtype
from audience_automations.queue.base import JobOptions, WorkerQueue
from audience_automations.queue.jobs import TriggerAutomationsForContact
from audience_automations.queue.worker import JobWorker
from audience_automations.stores.base import (
    AutomationStore,
    ContactStore,
    EmailSender,
    LedgerStore,
)
from audience_automations.utils import utc_now

logger = structlog.get_logger()


class LoggingEmailSender:
    """Email sender that only records the request in the log.

    Delivery lives outside this package; deployments pass their own sender.
    """

    def send_transactional(self, email_id: str, contact_id: str) -> None:
        logger.info("transactional_email_requested", email_id=email_id, contact_id=contact_id)


@dataclass
class AutomationEngine:
    graph: StepGraph
    guard: IdempotencyGuard
    scheduler: BatchScheduler
    dispatcher: TriggerDispatcher
    executor: StepExecutor
    handlers: AutomationJobHandlers
    worker: JobWorker
    queue: WorkerQueue
    settings: Settings

    def publish_event(self, contact_id: str, event: StepSubtype) -> Optional[str]:
        """Queue the fan-out of a contact event to matching triggers."""

        payload = TriggerAutomationsForContact(contact_id=contact_id, trigger=event)
        return self.queue.enqueue(
            payload.job_name, payload, JobOptions(attempts=self.settings.job_attempts)
        )


def build_engine(
    contacts: ContactStore,
    automations: AutomationStore,
    ledger: LedgerStore,
    queue: WorkerQueue,
    email_sender: Optional[EmailSender] = None,
    settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = utc_now,
    sleep: Optional[Callable[[float], None]] = None,
) -> AutomationEngine:
    settings = settings or get_settings()
    email_sender = email_sender or LoggingEmailSender()

    guard = IdempotencyGuard(ledger, queue, settings)
    scheduler = BatchScheduler(ledger, automations, queue, settings, clock)
    dispatcher = TriggerDispatcher(contacts, automations, ledger, queue, guard, settings, clock)
    executor = StepExecutor(contacts, automations, email_sender, guard, scheduler, clock)
    handlers = AutomationJobHandlers(dispatcher, executor, scheduler)

    worker_kwargs = {"sleep": sleep} if sleep is not None else {}
    worker = JobWorker(queue, handlers.as_mapping(), settings, **worker_kwargs)

    return AutomationEngine(
        graph=StepGraph(automations, contacts),
        guard=guard,
        scheduler=scheduler,
        dispatcher=dispatcher,
        executor=executor,
        handlers=handlers,
        worker=worker,
        queue=queue,
        settings=settings,
    )
