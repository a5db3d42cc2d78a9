"""Job queue interfaces.

Producers (dispatcher, guard, scheduler) only need ``JobQueue``. The worker
additionally needs the consumer side described by ``WorkerQueue``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Union

from pydantic import BaseModel

Payload = Union[BaseModel, Mapping[str, Any]]


@dataclass(frozen=True)
class JobOptions:
    """Delivery options for one job.

    ``delay`` is in seconds. ``key`` deduplicates against jobs with the same key
    that have not been picked up yet.
    """

    delay: float = 0
    attempts: int = 1
    key: Optional[str] = None


@dataclass(frozen=True)
class JobEntry:
    name: str
    payload: Payload
    options: JobOptions = field(default_factory=JobOptions)


@dataclass
class QueuedJob:
    """A job claimed by a worker."""

    id: str
    name: str
    payload: dict[str, Any]
    attempts: int
    attempts_made: int
    key: Optional[str] = None


def payload_dict(payload: Payload) -> dict[str, Any]:
    """Serialize a payload to its JSON-compatible wire form (camelCase keys)."""

    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json", by_alias=True)
    return dict(payload)


class JobQueue(Protocol):
    def enqueue(
        self, name: str, payload: Payload, options: Optional[JobOptions] = None
    ) -> Optional[str]:
        """Queue a job; return its id, or None when deduplicated by key."""
        ...

    def enqueue_bulk(self, entries: Iterable[JobEntry]) -> int:
        """Queue several jobs; return how many were actually added."""
        ...


class WorkerQueue(JobQueue, Protocol):
    def claim_due(self, limit: int) -> list[QueuedJob]: ...

    def complete(self, job_id: str, output: Optional[str] = None) -> None: ...

    def fail(self, job_id: str, error: str) -> None: ...

    def retry(self, job_id: str, error: str, delay: float) -> None: ...
