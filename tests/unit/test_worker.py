"""Unit tests for the job worker and in-memory queue."""

from __future__ import annotations

import pytest

from audience_automations.config import Settings
from audience_automations.queue import InMemoryJobQueue, JobEntry, JobOptions, JobResult, JobWorker


@pytest.fixture
def retry_settings() -> Settings:
    return Settings(job_retry_delay_seconds=10, job_retry_backoff=2)


class TestJobWorker:
    """Test suite for JobWorker."""

    def test_successful_job_is_done(self, queue: InMemoryJobQueue, retry_settings) -> None:
        seen = []
        job_id = queue.enqueue("PING", {"n": 1})
        worker = JobWorker(queue, {"PING": lambda p: seen.append(p) or JobResult.done("pong")}, retry_settings)

        assert worker.run_pending() == 1
        assert seen == [{"n": 1}]
        assert queue.status_of(job_id) == "DONE"

    def test_failed_result_is_final(self, queue: InMemoryJobQueue, retry_settings) -> None:
        calls = []

        def handler(payload):
            calls.append(payload)
            return JobResult.fail("bad input")

        job_id = queue.enqueue("JOB", {}, JobOptions(attempts=5))
        JobWorker(queue, {"JOB": handler}, retry_settings).run_pending()

        assert len(calls) == 1
        assert queue.status_of(job_id) == "FAILED"

    def test_exceptions_retry_with_backoff(self, queue: InMemoryJobQueue, retry_settings, clock) -> None:
        calls = []

        def flaky(payload):
            calls.append(clock.now)
            if len(calls) < 3:
                raise ConnectionError("database unavailable")
            return JobResult.done()

        job_id = queue.enqueue("JOB", {}, JobOptions(attempts=3))
        worker = JobWorker(queue, {"JOB": flaky}, retry_settings)
        start = clock.now

        worker.run_pending()
        clock.advance(seconds=10)
        worker.run_pending()
        clock.advance(seconds=19)
        assert worker.run_pending() == 0
        clock.advance(seconds=1)
        worker.run_pending()

        assert [int((t - start).total_seconds()) for t in calls] == [0, 10, 30]
        assert queue.status_of(job_id) == "DONE"

    def test_retries_are_bounded_by_attempts(self, queue: InMemoryJobQueue, settings) -> None:
        calls = []

        def broken(payload):
            calls.append(payload)
            raise RuntimeError("boom")

        job_id = queue.enqueue("JOB", {}, JobOptions(attempts=2))
        JobWorker(queue, {"JOB": broken}, settings).run_pending()

        assert len(calls) == 2
        assert queue.status_of(job_id) == "FAILED"

    def test_missing_handler_fails_job(self, queue: InMemoryJobQueue, settings) -> None:
        job_id = queue.enqueue("UNKNOWN", {})

        JobWorker(queue, {}, settings).run_pending()

        assert queue.status_of(job_id) == "FAILED"

    def test_run_forever_sleeps_when_idle(self, queue: InMemoryJobQueue, settings) -> None:
        sleeps = []
        polls = iter([False, False, True])

        worker = JobWorker(queue, {}, settings, sleep=sleeps.append)
        worker.run_forever(should_stop=lambda: next(polls))

        assert sleeps == [settings.worker_poll_interval, settings.worker_poll_interval]


class TestInMemoryJobQueue:
    def test_dedup_only_among_queued_jobs(self, queue: InMemoryJobQueue) -> None:
        first = queue.enqueue("JOB", {}, JobOptions(key="k"))
        assert queue.enqueue("JOB", {}, JobOptions(key="k")) is None

        job = queue.claim_due(1)[0]
        assert job.id == first
        assert queue.enqueue("JOB", {}, JobOptions(key="k")) is not None

    def test_claim_respects_limit_and_order(self, queue: InMemoryJobQueue, clock) -> None:
        later = queue.enqueue("JOB", {"n": 2}, JobOptions(delay=5))
        sooner = queue.enqueue("JOB", {"n": 1})
        clock.advance(seconds=5)

        claimed = queue.claim_due(1)

        assert [j.id for j in claimed] == [sooner]
        assert [j.id for j in queue.claim_due(5)] == [later]

    def test_bulk_counts_added_jobs(self, queue: InMemoryJobQueue) -> None:
        added = queue.enqueue_bulk(
            [JobEntry("JOB", {}, JobOptions(key="a")), JobEntry("JOB", {}, JobOptions(key="a"))]
        )

        assert added == 1

    def test_retried_job_keeps_its_key_reserved(self, queue: InMemoryJobQueue) -> None:
        first = queue.enqueue("JOB", {}, JobOptions(key="k"))
        queue.claim_due(1)
        second = queue.enqueue("JOB", {}, JobOptions(key="k"))

        queue.retry(first, "boom", 0)
        assert queue.enqueue("JOB", {}, JobOptions(key="k")) is None

        claimed = queue.claim_due(1)
        assert queue.enqueue("JOB", {}, JobOptions(key="k")) is None
        queue.claim_due(1)
        assert {claimed[0].id} < {first, second}
        assert queue.enqueue("JOB", {}, JobOptions(key="k")) is not None

    def test_finished_jobs_release_their_key(self, queue: InMemoryJobQueue) -> None:
        job_id = queue.enqueue("JOB", {}, JobOptions(key="k"))
        queue.claim_due(1)
        queue.complete(job_id)

        assert queue.queued() == []
        assert queue.enqueue("JOB", {}, JobOptions(key="k")) is not None

    def test_only_recent_finished_jobs_are_kept(self, clock) -> None:
        queue = InMemoryJobQueue(clock, keep_finished=2)
        job_ids = [queue.enqueue("JOB", {"n": n}) for n in range(3)]
        for job in queue.claim_due(3):
            queue.complete(job.id)

        with pytest.raises(KeyError):
            queue.status_of(job_ids[0])
        assert [queue.status_of(j) for j in job_ids[1:]] == ["DONE", "DONE"]
