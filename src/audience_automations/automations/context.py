"""Execution context handed to step runners."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from audience_automations.models import Audience, LedgerEntry
from audience_automations.segments.compiler import AudienceContext
from audience_automations.stores.base import AutomationStore, ContactStore, EmailSender


@dataclass(frozen=True)
class ExecutionContext:
    """Collaborators plus the ledger row of the contact at the step being run."""

    contacts: ContactStore
    automations: AutomationStore
    email_sender: EmailSender
    entry: LedgerEntry
    now: datetime


def load_audience_context(contacts: ContactStore, audience_id: str) -> AudienceContext:
    """Load the property registry and saved segments a filter compiles against."""

    audience = contacts.find_audience(audience_id) or Audience(id=audience_id)
    segments = {s.id: s for s in contacts.list_segments(audience_id)}
    return AudienceContext(audience=audience, segments=segments)
