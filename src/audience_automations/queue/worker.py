"""Job worker: drains due jobs and dispatches them to handlers."""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from typing import Any, Optional

import structlog

from audience_automations.config import Settings, get_settings
from audience_automations.queue.base import QueuedJob, WorkerQueue
from audience_automations.queue.jobs import JobResult

logger = structlog.get_logger()

Handler = Callable[[dict[str, Any]], JobResult]


class JobWorker:
    """Run handlers for due jobs, retrying raised exceptions with backoff.

    A handler returning ``JobResult.fail`` marks the job failed immediately; only
    exceptions are retried, until the job's ``attempts`` are used up.
    """

    def __init__(
        self,
        queue: WorkerQueue,
        handlers: Mapping[str, Handler],
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.queue = queue
        self.handlers = dict(handlers)
        self.settings = settings or get_settings()
        self._sleep = sleep

    def run_pending(self) -> int:
        """Process every job due right now; return how many were handled."""

        handled = 0
        while True:
            jobs = self.queue.claim_due(self.settings.worker_batch_size)
            if not jobs:
                return handled
            for job in jobs:
                self._run(job)
                handled += 1

    def run_forever(self, should_stop: Callable[[], bool] = lambda: False) -> None:
        logger.info("job_worker_started", batch_size=self.settings.worker_batch_size)
        while not should_stop():
            if self.run_pending() == 0:
                self._sleep(self.settings.worker_poll_interval)
        logger.info("job_worker_stopped")

    def _run(self, job: QueuedJob) -> None:
        handler = self.handlers.get(job.name)
        if handler is None:
            logger.error("job_handler_missing", job_id=job.id, name=job.name)
            self.queue.fail(job.id, f"No handler registered for {job.name}")
            return

        try:
            result = handler(job.payload)
        except Exception as e:
            self._handle_error(job, e)
            return

        if result.success:
            self.queue.complete(job.id, result.output)
            logger.debug("job_completed", job_id=job.id, name=job.name, output=result.output)
        else:
            self.queue.fail(job.id, result.output or "failed")
            logger.warning("job_failed", job_id=job.id, name=job.name, output=result.output)

    def _handle_error(self, job: QueuedJob, error: Exception) -> None:
        if job.attempts_made < job.attempts:
            delay = self.settings.job_retry_delay_seconds * (
                self.settings.job_retry_backoff ** (job.attempts_made - 1)
            )
            logger.warning(
                "job_retry",
                job_id=job.id,
                name=job.name,
                attempt=job.attempts_made,
                max_attempts=job.attempts,
                delay=delay,
                error=str(error),
            )
            self.queue.retry(job.id, str(error), delay)
            return

        logger.error(
            "job_retry_exhausted",
            job_id=job.id,
            name=job.name,
            attempts=job.attempts_made,
            error=str(error),
        )
        self.queue.fail(job.id, str(error))
