"""Outbox-style job queue stored in the ``automation_jobs`` table.

Workers claim due rows with a conditional ``QUEUED -> RUNNING`` update, so two
workers polling the same table never run the same delivery twice.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog
from sqlalchemy import text

from audience_automations.queue.base import (
    JobEntry,
    JobOptions,
    Payload,
    QueuedJob,
    payload_dict,
)
from audience_automations.utils import new_id, to_iso, utc_now

logger = structlog.get_logger()


class SqlJobQueue:
    """Job queue persisted alongside the ledger."""

    def __init__(self, engine, clock: Callable[[], datetime] = utc_now) -> None:
        self._engine = engine
        self._clock = clock

    def enqueue(
        self, name: str, payload: Payload, options: Optional[JobOptions] = None
    ) -> Optional[str]:
        return self._insert([JobEntry(name=name, payload=payload, options=options or JobOptions())])[0]

    def enqueue_bulk(self, entries: Iterable[JobEntry]) -> int:
        return sum(1 for job_id in self._insert(list(entries)) if job_id is not None)

    def claim_due(self, limit: int) -> list[QueuedJob]:
        select_q = text(
            """
            SELECT id, name, payload_json, attempts, attempts_made, job_key
            FROM automation_jobs
            WHERE status = 'QUEUED' AND available_at <= :now
            ORDER BY available_at ASC
            LIMIT :limit
            """
        )
        claim_q = text(
            """
            UPDATE automation_jobs
            SET status = 'RUNNING', attempts_made = attempts_made + 1
            WHERE id = :id AND status = 'QUEUED'
            """
        )

        claimed: list[QueuedJob] = []
        with self._engine.begin() as conn:
            rows = conn.execute(select_q, {"now": to_iso(self._clock()), "limit": limit}).fetchall()
            for r in rows:
                res = conn.execute(claim_q, {"id": r[0]})
                if not res.rowcount:
                    continue
                claimed.append(
                    QueuedJob(
                        id=r[0],
                        name=r[1],
                        payload=json.loads(r[2]),
                        attempts=int(r[3]),
                        attempts_made=int(r[4]) + 1,
                        key=r[5],
                    )
                )
        return claimed

    def complete(self, job_id: str, output: Optional[str] = None) -> None:
        self._finish(job_id, "DONE", output)

    def fail(self, job_id: str, error: str) -> None:
        self._finish(job_id, "FAILED", error)

    def retry(self, job_id: str, error: str, delay: float) -> None:
        q = text(
            """
            UPDATE automation_jobs
            SET status = 'QUEUED', last_error = :error, available_at = :available_at
            WHERE id = :id
            """
        )
        available_at = self._clock() + timedelta(seconds=delay)
        with self._engine.begin() as conn:
            conn.execute(q, {"id": job_id, "error": error, "available_at": to_iso(available_at)})

    def count_by_status(self) -> dict[str, int]:
        q = text("SELECT status, COUNT(*) FROM automation_jobs GROUP BY status")
        with self._engine.begin() as conn:
            rows = conn.execute(q).fetchall()
        return {r[0]: int(r[1]) for r in rows}

    def _finish(self, job_id: str, status: str, output: Optional[str]) -> None:
        q = text("UPDATE automation_jobs SET status = :status, last_error = :output WHERE id = :id")
        with self._engine.begin() as conn:
            conn.execute(q, {"id": job_id, "status": status, "output": output})

    def _insert(self, entries: list[JobEntry]) -> list[Optional[str]]:
        exists_q = text(
            "SELECT 1 FROM automation_jobs WHERE job_key = :key AND status = 'QUEUED' LIMIT 1"
        )
        insert_q = text(
            """
            INSERT INTO automation_jobs (
                id, name, payload_json, job_key, attempts, attempts_made,
                available_at, status, created_at
            )
            VALUES (
                :id, :name, :payload_json, :job_key, :attempts, 0,
                :available_at, 'QUEUED', :created_at
            )
            """
        )

        now = self._clock()
        ids: list[Optional[str]] = []
        with self._engine.begin() as conn:
            for entry in entries:
                key = entry.options.key
                if key is not None and conn.execute(exists_q, {"key": key}).fetchone():
                    logger.debug("job_deduplicated", name=entry.name, key=key)
                    ids.append(None)
                    continue

                params: dict[str, Any] = {
                    "id": new_id(),
                    "name": entry.name,
                    "payload_json": json.dumps(payload_dict(entry.payload)),
                    "job_key": key,
                    "attempts": max(1, entry.options.attempts),
                    "available_at": to_iso(now + timedelta(seconds=entry.options.delay)),
                    "created_at": to_iso(now),
                }
                conn.execute(insert_q, params)
                ids.append(params["id"])
        return ids
