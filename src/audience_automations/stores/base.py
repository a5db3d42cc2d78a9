"""Collaborator interfaces consumed by the engine.

Each component receives the stores it needs through its constructor. Two
implementations ship with the package: ``stores.memory`` and ``stores.sql``.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from audience_automations.models import (
    ActivationStatus,
    Audience,
    Automation,
    AutomationStep,
    Branch,
    Contact,
    LedgerEntry,
    LedgerStatus,
    Segment,
    StepSubtype,
)
from audience_automations.segments.predicate import Predicate


@dataclass(frozen=True)
class PendingContactsPage:
    """One page of contacts pending at a step; ``next_cursor`` is None on the last page."""

    contact_ids: list[str]
    next_cursor: Optional[str]


class ContactStore(Protocol):
    def find_by_id(self, contact_id: str) -> Optional[Contact]: ...

    def find_matching(self, predicate: Predicate, audience_id: str) -> Iterator[Contact]: ...

    def contact_matches(self, contact_id: str, predicate: Predicate) -> bool: ...

    def update_attributes(self, contact_id: str, mapping: Mapping[str, Any]) -> None: ...

    def list_tags(self, contact_id: str) -> set[str]: ...

    def attach_tags(self, contact_id: str, tag_ids: Iterable[str]) -> None: ...

    def detach_tags(self, contact_id: str, tag_ids: Iterable[str]) -> None: ...

    def subscribe_to_audience(self, contact_id: str, audience_id: str) -> Optional[str]: ...

    def unsubscribe(self, contact_id: str) -> None: ...

    def find_audience(self, audience_id: str) -> Optional[Audience]: ...

    def list_segments(self, audience_id: str) -> list[Segment]: ...


class AutomationStore(Protocol):
    def find_automation(self, automation_id: str) -> Optional[Automation]: ...

    def find_step(self, step_id: str) -> Optional[AutomationStep]: ...

    def find_trigger(self, automation_id: str) -> Optional[AutomationStep]: ...

    def find_child_step(
        self, parent_id: str, branch: Optional[Branch] = None
    ) -> Optional[AutomationStep]: ...

    def find_steps_by_subtype_and_status(
        self, audience_id: str, subtype: StepSubtype, status: ActivationStatus
    ) -> list[AutomationStep]: ...

    def list_steps(self, automation_id: str) -> list[AutomationStep]: ...

    def create_automation(self, automation: Automation) -> None: ...

    def insert_step(self, step: AutomationStep) -> None: ...

    def update_step(self, step: AutomationStep) -> None: ...

    def set_parent(self, step_id: str, parent_id: Optional[str], branch: Optional[Branch]) -> None: ...

    def set_automation_status(self, automation_id: str, status: ActivationStatus) -> None: ...


class LedgerStore(Protocol):
    def find_ledger_entry(self, contact_id: str, step_id: str) -> Optional[LedgerEntry]: ...

    def create_ledger_entry(
        self, contact_id: str, step_id: str, status: LedgerStatus
    ) -> Optional[LedgerEntry]:
        """Insert a row; return None if one already exists for the pair."""
        ...

    def update_ledger_status(
        self,
        entry_id: str,
        status: LedgerStatus,
        expected: Optional[LedgerStatus] = None,
        output: Optional[str] = None,
    ) -> bool:
        """Set the status, only from ``expected`` when given; return whether the row changed."""
        ...

    def find_pending_contacts_for_step(
        self, step_id: str, cursor: Optional[str], page_size: int
    ) -> PendingContactsPage: ...


class EmailSender(Protocol):
    def send_transactional(self, email_id: str, contact_id: str) -> None: ...
