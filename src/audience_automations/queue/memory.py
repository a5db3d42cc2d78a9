"""Process-local job queue.

Suitable for tests and single-process simulation. Jobs become due at
``enqueued_at + delay`` according to the injected clock.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog

from audience_automations.queue.base import (
    JobEntry,
    JobOptions,
    Payload,
    QueuedJob,
    payload_dict,
)
from audience_automations.utils import new_id, utc_now

logger = structlog.get_logger()

QUEUED = "QUEUED"
RUNNING = "RUNNING"
DONE = "DONE"
FAILED = "FAILED"


@dataclass
class _StoredJob:
    id: str
    name: str
    payload: dict[str, Any]
    key: Optional[str]
    attempts: int
    available_at: datetime
    status: str = QUEUED
    attempts_made: int = 0
    output: Optional[str] = None


class InMemoryJobQueue:
    """Job queue held in dictionaries, guarded by a lock.

    Queued jobs and their dedup keys are indexed separately from finished
    ones. Only the most recent ``keep_finished`` finished jobs are retained
    for ``status_of``.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now, keep_finished: int = 10_000) -> None:
        self._clock = clock
        self._keep_finished = keep_finished
        self._jobs: dict[str, _StoredJob] = {}
        self._queued: dict[str, _StoredJob] = {}
        self._queued_keys: dict[str, list[str]] = {}
        self._finished: deque[str] = deque()
        self._lock = threading.Lock()

    def enqueue(
        self, name: str, payload: Payload, options: Optional[JobOptions] = None
    ) -> Optional[str]:
        options = options or JobOptions()
        with self._lock:
            return self._add(name, payload, options)

    def enqueue_bulk(self, entries: Iterable[JobEntry]) -> int:
        added = 0
        with self._lock:
            for entry in entries:
                if self._add(entry.name, entry.payload, entry.options) is not None:
                    added += 1
        return added

    def claim_due(self, limit: int) -> list[QueuedJob]:
        now = self._clock()
        with self._lock:
            due = sorted(
                (j for j in self._queued.values() if j.available_at <= now),
                key=lambda j: j.available_at,
            )[:limit]
            claimed = []
            for job in due:
                self._unqueue(job)
                job.status = RUNNING
                job.attempts_made += 1
                claimed.append(_snapshot(job))
        return claimed

    def complete(self, job_id: str, output: Optional[str] = None) -> None:
        with self._lock:
            self._finish(self._get(job_id), DONE, output)

    def fail(self, job_id: str, error: str) -> None:
        with self._lock:
            self._finish(self._get(job_id), FAILED, error)

    def retry(self, job_id: str, error: str, delay: float) -> None:
        with self._lock:
            job = self._get(job_id)
            job.output = error
            job.available_at = self._clock() + timedelta(seconds=delay)
            self._queue(job)

    def queued(self, name: Optional[str] = None) -> list[QueuedJob]:
        """Return jobs not yet picked up, optionally filtered by name."""

        with self._lock:
            return [_snapshot(j) for j in self._queued.values() if name is None or j.name == name]

    def status_of(self, job_id: str) -> str:
        with self._lock:
            return self._get(job_id).status

    def next_available_at(self) -> Optional[datetime]:
        """Earliest due time among queued jobs, or None when the queue is idle."""

        with self._lock:
            times = [j.available_at for j in self._queued.values()]
        return min(times) if times else None

    def _add(self, name: str, payload: Payload, options: JobOptions) -> Optional[str]:
        if options.key is not None and options.key in self._queued_keys:
            logger.debug("job_deduplicated", name=name, key=options.key)
            return None

        job = _StoredJob(
            id=new_id(),
            name=name,
            payload=payload_dict(payload),
            key=options.key,
            attempts=max(1, options.attempts),
            available_at=self._clock() + timedelta(seconds=options.delay),
        )
        self._jobs[job.id] = job
        self._queue(job)
        return job.id

    def _queue(self, job: _StoredJob) -> None:
        job.status = QUEUED
        self._queued[job.id] = job
        if job.key is not None:
            # A retried job may share its key with one queued while it ran.
            self._queued_keys.setdefault(job.key, []).append(job.id)

    def _unqueue(self, job: _StoredJob) -> None:
        if self._queued.pop(job.id, None) is None or job.key is None:
            return
        holders = self._queued_keys[job.key]
        holders.remove(job.id)
        if not holders:
            del self._queued_keys[job.key]

    def _finish(self, job: _StoredJob, status: str, output: Optional[str]) -> None:
        self._unqueue(job)
        job.status = status
        job.output = output
        self._finished.append(job.id)
        while len(self._finished) > self._keep_finished:
            self._jobs.pop(self._finished.popleft(), None)

    def _get(self, job_id: str) -> _StoredJob:
        try:
            return self._jobs[job_id]
        except KeyError:
            raise KeyError(f"Job {job_id} does not exist") from None


def _snapshot(job: _StoredJob) -> QueuedJob:
    return QueuedJob(
        id=job.id,
        name=job.name,
        payload=dict(job.payload),
        attempts=job.attempts,
        attempts_made=job.attempts_made,
        key=job.key,
    )
