"""Unit tests for the SQL-backed stores and job queue (SQLite)."""

from __future__ import annotations

import pytest
from sqlalchemy import create_engine

from audience_automations.models import (
    ActivationStatus,
    Audience,
    Automation,
    AutomationStep,
    Branch,
    Contact,
    ContactStatus,
    LedgerStatus,
    StepSubtype,
    StepType,
)
from audience_automations.queue import JobEntry, JobOptions, RunAutomationStep, SqlJobQueue
from audience_automations.stores import (
    InMemoryContactStore,
    SqlAutomationStore,
    SqlContactStore,
    SqlLedgerStore,
    ensure_schema,
)


@pytest.fixture
def db(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'automations.sqlite3'}")
    ensure_schema(engine)
    return engine


class TestSchema:
    def test_ensure_schema_is_idempotent(self, db) -> None:
        ensure_schema(db)
        ensure_schema(db)


class TestSqlLedgerStore:
    """Test suite for the ledger table."""

    def test_create_is_unique_per_contact_and_step(self, db, clock) -> None:
        ledger = SqlLedgerStore(db, clock)

        first = ledger.create_ledger_entry("c1", "s1", LedgerStatus.PENDING)
        second = ledger.create_ledger_entry("c1", "s1", LedgerStatus.PENDING)

        assert first is not None
        assert second is None
        found = ledger.find_ledger_entry("c1", "s1")
        assert found is not None
        assert found.id == first.id
        assert found.created_at == clock.now

    def test_conditional_update(self, db, clock) -> None:
        ledger = SqlLedgerStore(db, clock)
        entry = ledger.create_ledger_entry("c1", "s1", LedgerStatus.PENDING)

        assert ledger.update_ledger_status(entry.id, LedgerStatus.COMPLETED, expected=LedgerStatus.PENDING)
        assert not ledger.update_ledger_status(entry.id, LedgerStatus.COMPLETED, expected=LedgerStatus.PENDING)

        found = ledger.find_ledger_entry("c1", "s1")
        assert found.status == LedgerStatus.COMPLETED
        assert found.completed_at == clock.now

    def test_failed_update_records_output(self, db, clock) -> None:
        ledger = SqlLedgerStore(db, clock)
        entry = ledger.create_ledger_entry("c1", "s1", LedgerStatus.PENDING)

        ledger.update_ledger_status(entry.id, LedgerStatus.FAILED, output="audience gone")

        found = ledger.find_ledger_entry("c1", "s1")
        assert found.status == LedgerStatus.FAILED
        assert found.output == "audience gone"
        assert found.failed_at is not None

    def test_pending_pages_are_ordered_and_exhaustive(self, db, clock) -> None:
        ledger = SqlLedgerStore(db, clock)
        for i in range(7):
            ledger.create_ledger_entry(f"c{i}", "s1", LedgerStatus.PENDING)
        done = ledger.create_ledger_entry("c9", "s1", LedgerStatus.PENDING)
        ledger.update_ledger_status(done.id, LedgerStatus.COMPLETED)
        ledger.create_ledger_entry("c1", "other", LedgerStatus.PENDING)

        seen: list[str] = []
        cursor = None
        while True:
            page = ledger.find_pending_contacts_for_step("s1", cursor, 3)
            seen.extend(page.contact_ids)
            if page.next_cursor is None:
                break
            cursor = page.next_cursor

        assert seen == [f"c{i}" for i in range(7)]


class TestSqlAutomationStore:
    def _seed(self, store: SqlAutomationStore) -> None:
        store.create_automation(Automation(id="a1", audience_id="aud-1", name="Welcome"))
        store.insert_step(
            AutomationStep(
                id="t",
                automation_id="a1",
                type=StepType.TRIGGER,
                subtype=StepSubtype.TRIGGER_CONTACT_TAG_ADDED,
                status=ActivationStatus.ACTIVE,
                configuration={"tagIds": ["x"]},
            )
        )
        store.insert_step(
            AutomationStep(
                id="r",
                automation_id="a1",
                type=StepType.RULE,
                subtype=StepSubtype.RULE_IF_ELSE,
                parent_id="t",
                configuration={"filterGroups": {"type": "AND", "groups": []}},
            )
        )
        store.insert_step(
            AutomationStep(
                id="yes",
                automation_id="a1",
                type=StepType.END,
                subtype=StepSubtype.END,
                parent_id="r",
                branch=Branch.YES,
            )
        )

    def test_child_lookup_by_branch(self, db) -> None:
        store = SqlAutomationStore(db)
        self._seed(store)

        assert store.find_child_step("t").id == "r"
        assert store.find_child_step("r", Branch.YES).id == "yes"
        assert store.find_child_step("r", Branch.NO) is None
        assert store.find_child_step("r") is None

    def test_trigger_lookup_and_configuration_round_trip(self, db) -> None:
        store = SqlAutomationStore(db)
        self._seed(store)

        trigger = store.find_trigger("a1")
        assert trigger.id == "t"
        assert trigger.configuration == {"tagIds": ["x"]}

        active = store.find_steps_by_subtype_and_status(
            "aud-1", StepSubtype.TRIGGER_CONTACT_TAG_ADDED, ActivationStatus.ACTIVE
        )
        assert [s.id for s in active] == ["t"]
        assert (
            store.find_steps_by_subtype_and_status(
                "aud-2", StepSubtype.TRIGGER_CONTACT_TAG_ADDED, ActivationStatus.ACTIVE
            )
            == []
        )

    def test_set_parent_and_status(self, db) -> None:
        store = SqlAutomationStore(db)
        self._seed(store)

        store.set_parent("yes", "t", None)
        store.set_automation_status("a1", ActivationStatus.PAUSED)

        assert store.find_step("yes").branch is None
        assert store.find_automation("a1").status == ActivationStatus.PAUSED


class TestSqlContactStore:
    @pytest.fixture
    def store(self, db, clock, audience: Audience) -> SqlContactStore:
        store = SqlContactStore(db, clock)
        store.add_audience(audience)
        store.add_audience(Audience(id="aud-2", name="Customers"))
        store.add_contact(
            Contact(id="c1", audience_id=audience.id, email="jane@example.com", tag_ids={"a"})
        )
        return store

    def test_find_by_id_hydrates_tags_and_properties(self, store: SqlContactStore) -> None:
        store.update_attributes("c1", {"plan": "pro", "interests": ["books", "music"]})

        contact = store.find_by_id("c1")

        assert contact.tag_ids == {"a"}
        assert contact.properties["plan"] == "pro"
        assert contact.properties["interests"] == '["books", "music"]'
        assert store.find_by_id("missing") is None

    def test_update_attributes_overwrites(self, store: SqlContactStore) -> None:
        store.update_attributes("c1", {"plan": "pro"})
        store.update_attributes("c1", {"plan": "free"})

        assert store.find_by_id("c1").properties == {"plan": "free"}

    def test_tags_are_idempotent(self, store: SqlContactStore) -> None:
        store.attach_tags("c1", ["a", "b"])
        store.attach_tags("c1", ["b"])
        store.detach_tags("c1", ["a", "missing"])

        assert store.list_tags("c1") == {"b"}

    def test_subscribe_copies_once(self, store: SqlContactStore) -> None:
        first = store.subscribe_to_audience("c1", "aud-2")
        second = store.subscribe_to_audience("c1", "aud-2")

        assert first is not None
        assert first == second
        copy = store.find_by_id(first)
        assert copy.audience_id == "aud-2"
        assert copy.email == "jane@example.com"
        assert store.subscribe_to_audience("c1", "missing") is None

    def test_unsubscribe(self, store: SqlContactStore, clock) -> None:
        store.unsubscribe("c1")

        contact = store.find_by_id("c1")
        assert contact.status == ContactStatus.UNSUBSCRIBED
        assert contact.unsubscribed_at == clock.now

    def test_audience_registry_round_trip(self, store: SqlContactStore, audience: Audience) -> None:
        assert store.find_audience(audience.id) == audience
        assert store.find_audience("missing") is None


class TestSubscribeToAudience:
    """Both contact stores copy a contact into another audience the same way."""

    @pytest.fixture(params=["memory", "sql"])
    def store(self, request, tmp_path, clock, audience: Audience):
        if request.param == "memory":
            store = InMemoryContactStore(clock)
        else:
            db = create_engine(f"sqlite:///{tmp_path / 'subscribe.sqlite3'}")
            ensure_schema(db)
            store = SqlContactStore(db, clock)
        store.add_audience(audience)
        store.add_audience(Audience(id="aud-2", name="Customers"))
        store.add_contact(
            Contact(
                id="c1",
                audience_id=audience.id,
                email="jane@example.com",
                first_name="Jane",
                status=ContactStatus.UNSUBSCRIBED,
                tag_ids={"a"},
            )
        )
        store.update_attributes("c1", {"plan": "pro"})
        return store

    def test_copy_starts_fresh_in_the_target_audience(self, store, clock) -> None:
        copied_id = store.subscribe_to_audience("c1", "aud-2")

        copy = store.find_by_id(copied_id)
        assert copy.id != "c1"
        assert copy.audience_id == "aud-2"
        assert copy.email == "jane@example.com"
        assert copy.first_name == "Jane"
        assert copy.status == ContactStatus.SUBSCRIBED
        assert copy.subscribed_at == clock.now
        assert copy.tag_ids == set()
        assert copy.properties == {}
        assert store.find_by_id("c1").properties == {"plan": "pro"}

    def test_existing_email_returns_existing_contact(self, store) -> None:
        first = store.subscribe_to_audience("c1", "aud-2")

        assert store.subscribe_to_audience("c1", "aud-2") == first

    def test_missing_audience_returns_none(self, store) -> None:
        assert store.subscribe_to_audience("c1", "missing") is None

    def test_missing_contact_is_checked_first(self, store) -> None:
        with pytest.raises(KeyError):
            store.subscribe_to_audience("ghost", "missing")


class TestSqlJobQueue:
    def test_enqueue_and_claim(self, db, clock) -> None:
        queue = SqlJobQueue(db, clock)
        payload = RunAutomationStep(automation_step_id="s1")

        job_id = queue.enqueue(payload.job_name, payload, JobOptions(attempts=3))
        claimed = queue.claim_due(10)

        assert [j.id for j in claimed] == [job_id]
        assert claimed[0].payload == {"automationStepId": "s1", "attempt": 0}
        assert claimed[0].attempts_made == 1
        assert queue.claim_due(10) == []

    def test_delayed_jobs_wait_for_clock(self, db, clock) -> None:
        queue = SqlJobQueue(db, clock)
        queue.enqueue("JOB", {"n": 1}, JobOptions(delay=60))

        assert queue.claim_due(10) == []
        clock.advance(seconds=60)
        assert len(queue.claim_due(10)) == 1

    def test_key_deduplicates_queued_jobs(self, db, clock) -> None:
        queue = SqlJobQueue(db, clock)

        added = queue.enqueue_bulk(
            [
                JobEntry("JOB", {"n": 1}, JobOptions(key="k")),
                JobEntry("JOB", {"n": 2}, JobOptions(key="k")),
                JobEntry("JOB", {"n": 3}),
            ]
        )

        assert added == 2

    def test_retry_and_complete(self, db, clock) -> None:
        queue = SqlJobQueue(db, clock)
        queue.enqueue("JOB", {"n": 1}, JobOptions(attempts=2))

        job = queue.claim_due(1)[0]
        queue.retry(job.id, "boom", delay=0)
        again = queue.claim_due(1)[0]
        queue.complete(again.id)

        assert again.attempts_made == 2
        assert queue.count_by_status() == {"DONE": 1}
