"""Utility functions for Audience Automations."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Return ``dt`` as an aware UTC datetime (naive values are taken to be UTC)."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize a datetime for storage.

    Always UTC with microseconds so that stored values sort lexicographically.
    """

    return as_utc(dt).isoformat(timespec="microseconds")


def from_iso(raw: str) -> datetime:
    """Parse an ISO-8601 timestamp (a trailing Z is accepted) into aware UTC."""

    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(raw))


def new_id() -> str:
    return str(uuid.uuid4())
