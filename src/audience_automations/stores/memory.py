"""In-memory store implementations.

Used by unit tests and local simulations. Records are copied on the way in and
out so callers never mutate store state by accident.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Mapping
from datetime import datetime
from typing import Any, Optional

from audience_automations.models import (
    ActivationStatus,
    Audience,
    Automation,
    AutomationStep,
    Branch,
    Contact,
    ContactStatus,
    LedgerEntry,
    LedgerStatus,
    Segment,
    StepSubtype,
    StepType,
)
from audience_automations.segments.evaluation import evaluate
from audience_automations.segments.predicate import Predicate
from audience_automations.stores.base import PendingContactsPage
from audience_automations.utils import new_id, utc_now

Clock = Callable[[], datetime]


class InMemoryContactStore:
    """Contacts, tags, audiences and segments held in dictionaries."""

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._contacts: dict[str, Contact] = {}
        self._audiences: dict[str, Audience] = {}
        self._segments: dict[str, Segment] = {}

    def add_audience(self, audience: Audience) -> None:
        self._audiences[audience.id] = audience.model_copy(deep=True)

    def add_contact(self, contact: Contact) -> None:
        self._contacts[contact.id] = contact.model_copy(deep=True)

    def add_segment(self, segment: Segment) -> None:
        self._segments[segment.id] = segment.model_copy(deep=True)

    def find_by_id(self, contact_id: str) -> Optional[Contact]:
        contact = self._contacts.get(contact_id)
        return None if contact is None else contact.model_copy(deep=True)

    def find_matching(self, predicate: Predicate, audience_id: str) -> Iterator[Contact]:
        for contact_id in sorted(self._contacts):
            contact = self._contacts[contact_id]
            if contact.audience_id == audience_id and evaluate(predicate, contact):
                yield contact.model_copy(deep=True)

    def contact_matches(self, contact_id: str, predicate: Predicate) -> bool:
        contact = self._contacts.get(contact_id)
        return contact is not None and evaluate(predicate, contact)

    def update_attributes(self, contact_id: str, mapping: Mapping[str, Any]) -> None:
        contact = self._require(contact_id)
        contact.properties.update(dict(mapping))

    def list_tags(self, contact_id: str) -> set[str]:
        contact = self._contacts.get(contact_id)
        return set() if contact is None else set(contact.tag_ids)

    def attach_tags(self, contact_id: str, tag_ids: Iterable[str]) -> None:
        self._require(contact_id).tag_ids.update(tag_ids)

    def detach_tags(self, contact_id: str, tag_ids: Iterable[str]) -> None:
        self._require(contact_id).tag_ids.difference_update(tag_ids)

    def subscribe_to_audience(self, contact_id: str, audience_id: str) -> Optional[str]:
        contact = self._require(contact_id)
        if audience_id not in self._audiences:
            return None

        for existing in self._contacts.values():
            if existing.audience_id == audience_id and existing.email == contact.email:
                return existing.id

        copy = contact.model_copy(
            deep=True,
            update={
                "id": new_id(),
                "audience_id": audience_id,
                "status": ContactStatus.SUBSCRIBED,
                "subscribed_at": self._clock(),
                "unsubscribed_at": None,
                "tag_ids": set(),
                "properties": {},
            },
        )
        self._contacts[copy.id] = copy
        return copy.id

    def unsubscribe(self, contact_id: str) -> None:
        contact = self._require(contact_id)
        if contact.status != ContactStatus.UNSUBSCRIBED:
            contact.status = ContactStatus.UNSUBSCRIBED
            contact.unsubscribed_at = self._clock()

    def find_audience(self, audience_id: str) -> Optional[Audience]:
        audience = self._audiences.get(audience_id)
        return None if audience is None else audience.model_copy(deep=True)

    def list_segments(self, audience_id: str) -> list[Segment]:
        return [s.model_copy(deep=True) for s in self._segments.values() if s.audience_id == audience_id]

    def _require(self, contact_id: str) -> Contact:
        try:
            return self._contacts[contact_id]
        except KeyError:
            raise KeyError(f"Contact {contact_id} does not exist") from None


class InMemoryAutomationStore:
    """Automations and their steps held in dictionaries."""

    def __init__(self) -> None:
        self._automations: dict[str, Automation] = {}
        self._steps: dict[str, AutomationStep] = {}

    def find_automation(self, automation_id: str) -> Optional[Automation]:
        automation = self._automations.get(automation_id)
        return None if automation is None else automation.model_copy(deep=True)

    def find_step(self, step_id: str) -> Optional[AutomationStep]:
        step = self._steps.get(step_id)
        return None if step is None else step.model_copy(deep=True)

    def find_trigger(self, automation_id: str) -> Optional[AutomationStep]:
        for step in self._steps.values():
            if step.automation_id == automation_id and step.type == StepType.TRIGGER:
                return step.model_copy(deep=True)
        return None

    def find_child_step(
        self, parent_id: str, branch: Optional[Branch] = None
    ) -> Optional[AutomationStep]:
        for step in self._steps.values():
            if step.parent_id == parent_id and step.branch == branch:
                return step.model_copy(deep=True)
        return None

    def find_steps_by_subtype_and_status(
        self, audience_id: str, subtype: StepSubtype, status: ActivationStatus
    ) -> list[AutomationStep]:
        out = []
        for step in self._steps.values():
            automation = self._automations.get(step.automation_id)
            if automation is None or automation.audience_id != audience_id:
                continue
            if step.subtype == subtype and step.status == status:
                out.append(step.model_copy(deep=True))
        return out

    def list_steps(self, automation_id: str) -> list[AutomationStep]:
        return [s.model_copy(deep=True) for s in self._steps.values() if s.automation_id == automation_id]

    def create_automation(self, automation: Automation) -> None:
        self._automations[automation.id] = automation.model_copy(deep=True)

    def insert_step(self, step: AutomationStep) -> None:
        if step.id in self._steps:
            raise ValueError(f"Step {step.id} already exists")
        self._steps[step.id] = step.model_copy(deep=True)

    def update_step(self, step: AutomationStep) -> None:
        if step.id not in self._steps:
            raise KeyError(f"Step {step.id} does not exist")
        self._steps[step.id] = step.model_copy(deep=True)

    def set_parent(self, step_id: str, parent_id: Optional[str], branch: Optional[Branch]) -> None:
        step = self._steps[step_id]
        step.parent_id = parent_id
        step.branch = branch

    def set_automation_status(self, automation_id: str, status: ActivationStatus) -> None:
        self._automations[automation_id].status = status


class InMemoryLedgerStore:
    """Ledger rows keyed by id, with a unique index on (contact_id, step_id)."""

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._entries: dict[str, LedgerEntry] = {}
        self._by_pair: dict[tuple[str, str], str] = {}

    def find_ledger_entry(self, contact_id: str, step_id: str) -> Optional[LedgerEntry]:
        entry_id = self._by_pair.get((contact_id, step_id))
        if entry_id is None:
            return None
        return self._entries[entry_id].model_copy()

    def create_ledger_entry(
        self, contact_id: str, step_id: str, status: LedgerStatus
    ) -> Optional[LedgerEntry]:
        if (contact_id, step_id) in self._by_pair:
            return None

        now = self._clock()
        entry = LedgerEntry(
            id=new_id(),
            contact_id=contact_id,
            automation_step_id=step_id,
            status=status,
            created_at=now,
            completed_at=now if status == LedgerStatus.COMPLETED else None,
            failed_at=now if status == LedgerStatus.FAILED else None,
        )
        self._entries[entry.id] = entry
        self._by_pair[(contact_id, step_id)] = entry.id
        return entry.model_copy()

    def update_ledger_status(
        self,
        entry_id: str,
        status: LedgerStatus,
        expected: Optional[LedgerStatus] = None,
        output: Optional[str] = None,
    ) -> bool:
        entry = self._entries.get(entry_id)
        if entry is None:
            return False
        if expected is not None and entry.status != expected:
            return False

        now = self._clock()
        entry.status = status
        if output is not None:
            entry.output = output
        if status == LedgerStatus.COMPLETED:
            entry.completed_at = now
        elif status == LedgerStatus.FAILED:
            entry.failed_at = now
        return True

    def find_pending_contacts_for_step(
        self, step_id: str, cursor: Optional[str], page_size: int
    ) -> PendingContactsPage:
        pending = sorted(
            e.contact_id
            for e in self._entries.values()
            if e.automation_step_id == step_id
            and e.status == LedgerStatus.PENDING
            and (cursor is None or e.contact_id > cursor)
        )
        page = pending[:page_size]
        next_cursor = page[-1] if len(pending) > page_size else None
        return PendingContactsPage(contact_ids=page, next_cursor=next_cursor)

    def entries(self) -> list[LedgerEntry]:
        """Return a snapshot of every row (for diagnostics and tests)."""

        return [e.model_copy() for e in self._entries.values()]
