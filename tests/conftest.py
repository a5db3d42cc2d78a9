"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone

import pytest

from audience_automations.automations import AutomationEngine, build_engine
from audience_automations.config import Settings
from audience_automations.models import Audience, Contact, KnownProperty, PropertyType
from audience_automations.queue import InMemoryJobQueue
from audience_automations.stores import (
    InMemoryAutomationStore,
    InMemoryContactStore,
    InMemoryLedgerStore,
)

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
AUDIENCE_ID = "aud-1"


class FrozenClock:
    """A clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingEmailSender:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send_transactional(self, email_id: str, contact_id: str) -> None:
        self.sent.append((email_id, contact_id))


class CountingContactStore(InMemoryContactStore):
    """In-memory contact store that records tag writes."""

    def __init__(self, clock: Callable[[], datetime]) -> None:
        super().__init__(clock)
        self.attach_calls: list[tuple[str, list[str]]] = []

    def attach_tags(self, contact_id: str, tag_ids: Iterable[str]) -> None:
        tag_ids = list(tag_ids)
        self.attach_calls.append((contact_id, tag_ids))
        super().attach_tags(contact_id, tag_ids)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def settings() -> Settings:
    """Provide settings for testing."""
    return Settings(
        batch_size=75,
        job_attempts=3,
        job_retry_delay_seconds=0,
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def audience() -> Audience:
    return Audience(
        id=AUDIENCE_ID,
        name="Newsletter",
        known_properties=[
            KnownProperty(id="plan", label="Plan", type=PropertyType.TEXT),
            KnownProperty(id="score", label="Score", type=PropertyType.FLOAT),
            KnownProperty(id="vip", label="VIP", type=PropertyType.BOOLEAN),
            KnownProperty(id="renewal", label="Renewal", type=PropertyType.DATE),
        ],
    )


@pytest.fixture
def contacts(clock: FrozenClock, audience: Audience) -> CountingContactStore:
    store = CountingContactStore(clock)
    store.add_audience(audience)
    return store


@pytest.fixture
def automations() -> InMemoryAutomationStore:
    return InMemoryAutomationStore()


@pytest.fixture
def ledger(clock: FrozenClock) -> InMemoryLedgerStore:
    return InMemoryLedgerStore(clock)


@pytest.fixture
def queue(clock: FrozenClock) -> InMemoryJobQueue:
    return InMemoryJobQueue(clock)


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def engine(
    contacts: CountingContactStore,
    automations: InMemoryAutomationStore,
    ledger: InMemoryLedgerStore,
    queue: InMemoryJobQueue,
    email_sender: RecordingEmailSender,
    settings: Settings,
    clock: FrozenClock,
) -> AutomationEngine:
    return build_engine(
        contacts=contacts,
        automations=automations,
        ledger=ledger,
        queue=queue,
        email_sender=email_sender,
        settings=settings,
        clock=clock,
        sleep=lambda _seconds: None,
    )


@pytest.fixture
def add_contact(contacts: CountingContactStore) -> Callable[..., Contact]:
    """Factory adding a contact to the audience under test."""

    def _add(contact_id: str, **fields) -> Contact:
        fields.setdefault("email", f"{contact_id}@example.com")
        fields.setdefault("audience_id", AUDIENCE_ID)
        contact = Contact(id=contact_id, **fields)
        contacts.add_contact(contact)
        return contact

    return _add


@pytest.fixture
def drain(engine: AutomationEngine, queue: InMemoryJobQueue, clock: FrozenClock) -> Callable[[], int]:
    """Run jobs until the queue is idle, jumping the clock to delayed jobs."""

    def _drain(max_rounds: int = 1000) -> int:
        handled = 0
        for _ in range(max_rounds):
            count = engine.worker.run_pending()
            handled += count
            if count:
                continue
            next_at = queue.next_available_at()
            if next_at is None:
                return handled
            if next_at > clock.now:
                clock.now = next_at
        raise AssertionError("queue did not drain")

    return _drain
