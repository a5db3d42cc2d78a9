"""Storage collaborators for the automation engine."""

from .base import AutomationStore, ContactStore, EmailSender, LedgerStore, PendingContactsPage
from .memory import InMemoryAutomationStore, InMemoryContactStore, InMemoryLedgerStore
from .schema import ensure_schema
from .sql import SqlAutomationStore, SqlContactStore, SqlLedgerStore

__all__ = [
    "AutomationStore",
    "ContactStore",
    "EmailSender",
    "InMemoryAutomationStore",
    "InMemoryContactStore",
    "InMemoryLedgerStore",
    "LedgerStore",
    "PendingContactsPage",
    "SqlAutomationStore",
    "SqlContactStore",
    "SqlLedgerStore",
    "ensure_schema",
]
