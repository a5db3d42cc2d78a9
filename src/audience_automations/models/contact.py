"""Audience, contact and segment models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from audience_automations.models.filters import FilterGroups


class PropertyType(str, Enum):
    """Storage type of a known audience property."""

    BOOLEAN = "boolean"
    FLOAT = "float"
    TEXT = "text"
    DATE = "date"


class ContactStatus(str, Enum):
    """Subscription status of a contact."""

    SUBSCRIBED = "SUBSCRIBED"
    UNSUBSCRIBED = "UNSUBSCRIBED"


class KnownProperty(BaseModel):
    """A custom property registered on an audience."""

    id: str = Field(description="Property key, referenced as properties.<id> in filters")
    label: str = Field(default="", description="Human readable label")
    type: PropertyType = Field(default=PropertyType.TEXT, description="Storage type")


class Audience(BaseModel):
    """A list of contacts with its custom property registry."""

    id: str
    name: str = ""
    known_properties: list[KnownProperty] = Field(default_factory=list)

    def find_property(self, key: str) -> Optional[KnownProperty]:
        return next((p for p in self.known_properties if p.id == key), None)


class Segment(BaseModel):
    """A saved filter over an audience."""

    id: str
    audience_id: str
    name: str = ""
    filter_groups: FilterGroups = Field(default_factory=FilterGroups)


class Contact(BaseModel):
    """A contact row with its custom properties and tags."""

    id: str
    audience_id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    status: ContactStatus = ContactStatus.SUBSCRIBED
    source: Optional[str] = None

    subscribed_at: Optional[datetime] = None
    unsubscribed_at: Optional[datetime] = None

    # Engagement timestamps used by inTimeWindow filters.
    last_sent_broadcast_email_at: Optional[datetime] = None
    last_sent_automation_email_at: Optional[datetime] = None
    last_opened_broadcast_email_at: Optional[datetime] = None
    last_opened_automation_email_at: Optional[datetime] = None
    last_clicked_broadcast_email_link_at: Optional[datetime] = None
    last_clicked_automation_email_link_at: Optional[datetime] = None

    last_tracked_activity_from: Optional[str] = None
    last_tracked_activity_using_device: Optional[str] = None
    last_tracked_activity_using_browser: Optional[str] = None

    properties: dict[str, Any] = Field(
        default_factory=dict,
        description="Custom properties (string, list of strings, number, boolean or datetime)",
    )
    tag_ids: set[str] = Field(default_factory=set, description="Ids of tags on the contact")
