"""SQL-backed stores.

Raw SQL through SQLAlchemy ``text()`` so the same statements run on SQLite and
Postgres. Call ``ensure_schema(engine)`` once before using them.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Iterator, Mapping
from datetime import datetime
from typing import Any, Optional

import structlog
from sqlalchemy import text

from audience_automations.models import (
    ActivationStatus,
    Audience,
    Automation,
    AutomationStep,
    Branch,
    Contact,
    ContactStatus,
    FilterGroups,
    KnownProperty,
    LedgerEntry,
    LedgerStatus,
    PropertyType,
    Segment,
    StepSubtype,
    StepType,
)
from audience_automations.segments.predicate import Predicate, coerce_property_value
from audience_automations.segments.sql import build_where
from audience_automations.stores.base import PendingContactsPage
from audience_automations.utils import from_iso, new_id, to_iso, utc_now

logger = structlog.get_logger()

Clock = Callable[[], datetime]

_CONTACT_COLUMNS = (
    "id",
    "audience_id",
    "email",
    "first_name",
    "last_name",
    "status",
    "source",
    "subscribed_at",
    "unsubscribed_at",
    "last_sent_broadcast_email_at",
    "last_sent_automation_email_at",
    "last_opened_broadcast_email_at",
    "last_opened_automation_email_at",
    "last_clicked_broadcast_email_link_at",
    "last_clicked_automation_email_link_at",
    "last_tracked_activity_from",
    "last_tracked_activity_using_device",
    "last_tracked_activity_using_browser",
)

_CONTACT_DATE_COLUMNS = frozenset(c for c in _CONTACT_COLUMNS if c.endswith("_at"))

_STEP_COLUMNS = (
    "id, automation_id, type, subtype, parent_id, branch, status, "
    "configuration_json, email_id, tag_id, audience_id"
)

_LEDGER_COLUMNS = (
    "id, contact_id, automation_step_id, status, output, created_at, completed_at, failed_at"
)


def _opt_iso(value: Optional[datetime]) -> Optional[str]:
    return None if value is None else to_iso(value)


def _opt_dt(value: Optional[str]) -> Optional[datetime]:
    return None if value is None else from_iso(value)


def _property_slots(value: Any) -> dict[str, Any]:
    """Spread a raw property value across every typed column it can be read as."""

    slots: dict[str, Any] = {
        "value_text": None,
        "value_float": None,
        "value_boolean": None,
        "value_date": None,
    }
    if value is None:
        return slots

    slots["value_text"] = coerce_property_value(value, PropertyType.TEXT)
    for type_, column in (
        (PropertyType.FLOAT, "value_float"),
        (PropertyType.BOOLEAN, "value_boolean"),
        (PropertyType.DATE, "value_date"),
    ):
        try:
            coerced = coerce_property_value(value, type_)
        except (TypeError, ValueError):
            continue
        if isinstance(coerced, bool):
            coerced = 1 if coerced else 0
        elif isinstance(coerced, datetime):
            coerced = to_iso(coerced)
        slots[column] = coerced
    return slots


class SqlContactStore:
    """Contacts, tags, properties, audiences and segments."""

    def __init__(self, engine, clock: Clock = utc_now) -> None:
        self._engine = engine
        self._clock = clock

    # Seeding

    def add_audience(self, audience: Audience) -> None:
        q = text(
            """
            INSERT INTO audiences (id, name, known_properties_json)
            VALUES (:id, :name, :known_properties_json)
            ON CONFLICT (id) DO UPDATE SET
                name = excluded.name,
                known_properties_json = excluded.known_properties_json
            """
        )
        payload = json.dumps([p.model_dump(mode="json") for p in audience.known_properties])
        with self._engine.begin() as conn:
            conn.execute(
                q, {"id": audience.id, "name": audience.name, "known_properties_json": payload}
            )

    def add_segment(self, segment: Segment) -> None:
        q = text(
            """
            INSERT INTO segments (id, audience_id, name, filter_groups_json)
            VALUES (:id, :audience_id, :name, :filter_groups_json)
            ON CONFLICT (id) DO UPDATE SET
                name = excluded.name,
                filter_groups_json = excluded.filter_groups_json
            """
        )
        with self._engine.begin() as conn:
            conn.execute(
                q,
                {
                    "id": segment.id,
                    "audience_id": segment.audience_id,
                    "name": segment.name,
                    "filter_groups_json": segment.filter_groups.model_dump_json(),
                },
            )

    def add_contact(self, contact: Contact) -> None:
        params: dict[str, Any] = {}
        for column in _CONTACT_COLUMNS:
            value = getattr(contact, column)
            if column in _CONTACT_DATE_COLUMNS:
                value = _opt_iso(value)
            elif isinstance(value, ContactStatus):
                value = value.value
            params[column] = value

        columns = ", ".join(_CONTACT_COLUMNS)
        placeholders = ", ".join(f":{c}" for c in _CONTACT_COLUMNS)
        q = text(f"INSERT INTO contacts ({columns}) VALUES ({placeholders})")

        with self._engine.begin() as conn:
            conn.execute(q, params)

        if contact.tag_ids:
            self.attach_tags(contact.id, contact.tag_ids)
        if contact.properties:
            self.update_attributes(contact.id, contact.properties)

    # Reads

    def find_by_id(self, contact_id: str) -> Optional[Contact]:
        q = text(f"SELECT {', '.join(_CONTACT_COLUMNS)} FROM contacts WHERE id = :contact_id")
        with self._engine.begin() as conn:
            row = conn.execute(q, {"contact_id": contact_id}).mappings().fetchone()
            if not row:
                return None
            return self._hydrate(conn, row)

    def find_matching(self, predicate: Predicate, audience_id: str) -> Iterator[Contact]:
        where, params = build_where(predicate)
        q = text(
            f"""
            SELECT {', '.join('contacts.' + c for c in _CONTACT_COLUMNS)}
            FROM contacts
            WHERE contacts.audience_id = :audience_id AND {where}
            ORDER BY contacts.id
            """
        )
        with self._engine.begin() as conn:
            rows = conn.execute(q, {**params, "audience_id": audience_id}).mappings().fetchall()
            contacts = [self._hydrate(conn, r) for r in rows]

        yield from contacts

    def contact_matches(self, contact_id: str, predicate: Predicate) -> bool:
        where, params = build_where(predicate)
        q = text(f"SELECT 1 FROM contacts WHERE contacts.id = :contact_id AND {where}")
        with self._engine.begin() as conn:
            row = conn.execute(q, {**params, "contact_id": contact_id}).fetchone()
        return row is not None

    def list_tags(self, contact_id: str) -> set[str]:
        q = text("SELECT tag_id FROM tags_on_contacts WHERE contact_id = :contact_id")
        with self._engine.begin() as conn:
            rows = conn.execute(q, {"contact_id": contact_id}).fetchall()
        return {r[0] for r in rows}

    def find_audience(self, audience_id: str) -> Optional[Audience]:
        q = text("SELECT id, name, known_properties_json FROM audiences WHERE id = :audience_id")
        with self._engine.begin() as conn:
            row = conn.execute(q, {"audience_id": audience_id}).fetchone()
        if not row:
            return None
        return Audience(
            id=row[0],
            name=row[1],
            known_properties=[KnownProperty.model_validate(p) for p in json.loads(row[2])],
        )

    def list_segments(self, audience_id: str) -> list[Segment]:
        q = text(
            """
            SELECT id, audience_id, name, filter_groups_json
            FROM segments
            WHERE audience_id = :audience_id
            ORDER BY id
            """
        )
        with self._engine.begin() as conn:
            rows = conn.execute(q, {"audience_id": audience_id}).fetchall()
        return [
            Segment(
                id=r[0],
                audience_id=r[1],
                name=r[2],
                filter_groups=FilterGroups.model_validate_json(r[3]),
            )
            for r in rows
        ]

    # Writes

    def update_attributes(self, contact_id: str, mapping: Mapping[str, Any]) -> None:
        if not mapping:
            return

        q = text(
            """
            INSERT INTO contact_properties (
                contact_id, audience_id, name, value_text, value_float, value_boolean, value_date
            )
            VALUES (
                :contact_id, :audience_id, :name, :value_text, :value_float, :value_boolean, :value_date
            )
            ON CONFLICT (contact_id, name) DO UPDATE SET
                value_text = excluded.value_text,
                value_float = excluded.value_float,
                value_boolean = excluded.value_boolean,
                value_date = excluded.value_date
            """
        )
        with self._engine.begin() as conn:
            audience_id = self._audience_of(conn, contact_id)
            for name, value in mapping.items():
                conn.execute(
                    q,
                    {
                        "contact_id": contact_id,
                        "audience_id": audience_id,
                        "name": name,
                        **_property_slots(value),
                    },
                )

    def attach_tags(self, contact_id: str, tag_ids: Iterable[str]) -> None:
        q = text(
            """
            INSERT INTO tags_on_contacts (contact_id, tag_id)
            VALUES (:contact_id, :tag_id)
            ON CONFLICT (contact_id, tag_id) DO NOTHING
            """
        )
        rows = [{"contact_id": contact_id, "tag_id": t} for t in tag_ids]
        if not rows:
            return
        with self._engine.begin() as conn:
            conn.execute(q, rows)

    def detach_tags(self, contact_id: str, tag_ids: Iterable[str]) -> None:
        q = text("DELETE FROM tags_on_contacts WHERE contact_id = :contact_id AND tag_id = :tag_id")
        rows = [{"contact_id": contact_id, "tag_id": t} for t in tag_ids]
        if not rows:
            return
        with self._engine.begin() as conn:
            conn.execute(q, rows)

    def subscribe_to_audience(self, contact_id: str, audience_id: str) -> Optional[str]:
        contact = self.find_by_id(contact_id)
        if contact is None:
            raise KeyError(f"Contact {contact_id} does not exist")
        if self.find_audience(audience_id) is None:
            return None

        q = text("SELECT id FROM contacts WHERE audience_id = :audience_id AND email = :email")
        with self._engine.begin() as conn:
            row = conn.execute(q, {"audience_id": audience_id, "email": contact.email}).fetchone()
        if row:
            return row[0]

        copy = contact.model_copy(
            update={
                "id": new_id(),
                "audience_id": audience_id,
                "status": ContactStatus.SUBSCRIBED,
                "subscribed_at": self._clock(),
                "unsubscribed_at": None,
                "tag_ids": set(),
                "properties": {},
            }
        )
        self.add_contact(copy)
        return copy.id

    def unsubscribe(self, contact_id: str) -> None:
        q = text(
            """
            UPDATE contacts
            SET status = 'UNSUBSCRIBED', unsubscribed_at = :now
            WHERE id = :contact_id AND status <> 'UNSUBSCRIBED'
            """
        )
        with self._engine.begin() as conn:
            conn.execute(q, {"contact_id": contact_id, "now": to_iso(self._clock())})

    # Helpers

    def _audience_of(self, conn, contact_id: str) -> str:
        row = conn.execute(
            text("SELECT audience_id FROM contacts WHERE id = :contact_id"),
            {"contact_id": contact_id},
        ).fetchone()
        if not row:
            raise KeyError(f"Contact {contact_id} does not exist")
        return row[0]

    def _hydrate(self, conn, row: Mapping[str, Any]) -> Contact:
        data = dict(row)
        for column in _CONTACT_DATE_COLUMNS:
            data[column] = _opt_dt(data[column])

        tags = conn.execute(
            text("SELECT tag_id FROM tags_on_contacts WHERE contact_id = :contact_id"),
            {"contact_id": data["id"]},
        ).fetchall()
        props = conn.execute(
            text("SELECT name, value_text FROM contact_properties WHERE contact_id = :contact_id"),
            {"contact_id": data["id"]},
        ).fetchall()

        data["tag_ids"] = {t[0] for t in tags}
        data["properties"] = {p[0]: p[1] for p in props}
        return Contact.model_validate(data)


class SqlAutomationStore:
    """Automations and their step graphs."""

    def __init__(self, engine) -> None:
        self._engine = engine

    def find_automation(self, automation_id: str) -> Optional[Automation]:
        q = text(
            """
            SELECT id, audience_id, name, description, status
            FROM automations
            WHERE id = :automation_id
            """
        )
        with self._engine.begin() as conn:
            row = conn.execute(q, {"automation_id": automation_id}).fetchone()
        if not row:
            return None
        return Automation(
            id=row[0], audience_id=row[1], name=row[2], description=row[3], status=row[4]
        )

    def find_step(self, step_id: str) -> Optional[AutomationStep]:
        return self._one(f"SELECT {_STEP_COLUMNS} FROM automation_steps WHERE id = :id", {"id": step_id})

    def find_trigger(self, automation_id: str) -> Optional[AutomationStep]:
        return self._one(
            f"""
            SELECT {_STEP_COLUMNS} FROM automation_steps
            WHERE automation_id = :automation_id AND type = :type
            """,
            {"automation_id": automation_id, "type": StepType.TRIGGER.value},
        )

    def find_child_step(
        self, parent_id: str, branch: Optional[Branch] = None
    ) -> Optional[AutomationStep]:
        if branch is None:
            return self._one(
                f"""
                SELECT {_STEP_COLUMNS} FROM automation_steps
                WHERE parent_id = :parent_id AND branch IS NULL
                """,
                {"parent_id": parent_id},
            )
        return self._one(
            f"""
            SELECT {_STEP_COLUMNS} FROM automation_steps
            WHERE parent_id = :parent_id AND branch = :branch
            """,
            {"parent_id": parent_id, "branch": branch.value},
        )

    def find_steps_by_subtype_and_status(
        self, audience_id: str, subtype: StepSubtype, status: ActivationStatus
    ) -> list[AutomationStep]:
        columns = ", ".join(f"s.{c.strip()}" for c in _STEP_COLUMNS.split(","))
        q = text(
            f"""
            SELECT {columns}
            FROM automation_steps s
            JOIN automations a ON a.id = s.automation_id
            WHERE a.audience_id = :audience_id
              AND s.subtype = :subtype
              AND s.status = :status
            ORDER BY s.id
            """
        )
        with self._engine.begin() as conn:
            rows = conn.execute(
                q, {"audience_id": audience_id, "subtype": subtype.value, "status": status.value}
            ).fetchall()
        return [self._step(r) for r in rows]

    def list_steps(self, automation_id: str) -> list[AutomationStep]:
        q = text(
            f"SELECT {_STEP_COLUMNS} FROM automation_steps WHERE automation_id = :automation_id ORDER BY id"
        )
        with self._engine.begin() as conn:
            rows = conn.execute(q, {"automation_id": automation_id}).fetchall()
        return [self._step(r) for r in rows]

    def create_automation(self, automation: Automation) -> None:
        q = text(
            """
            INSERT INTO automations (id, audience_id, name, description, status)
            VALUES (:id, :audience_id, :name, :description, :status)
            """
        )
        with self._engine.begin() as conn:
            conn.execute(q, automation.model_dump(mode="json"))

    def insert_step(self, step: AutomationStep) -> None:
        q = text(
            """
            INSERT INTO automation_steps (
                id, automation_id, type, subtype, parent_id, branch, status,
                configuration_json, email_id, tag_id, audience_id
            )
            VALUES (
                :id, :automation_id, :type, :subtype, :parent_id, :branch, :status,
                :configuration_json, :email_id, :tag_id, :audience_id
            )
            """
        )
        with self._engine.begin() as conn:
            conn.execute(q, self._step_params(step))

    def update_step(self, step: AutomationStep) -> None:
        q = text(
            """
            UPDATE automation_steps SET
                type = :type,
                subtype = :subtype,
                parent_id = :parent_id,
                branch = :branch,
                status = :status,
                configuration_json = :configuration_json,
                email_id = :email_id,
                tag_id = :tag_id,
                audience_id = :audience_id
            WHERE id = :id
            """
        )
        with self._engine.begin() as conn:
            res = conn.execute(q, self._step_params(step))
        if not res.rowcount:
            raise KeyError(f"Step {step.id} does not exist")

    def set_parent(self, step_id: str, parent_id: Optional[str], branch: Optional[Branch]) -> None:
        q = text("UPDATE automation_steps SET parent_id = :parent_id, branch = :branch WHERE id = :id")
        with self._engine.begin() as conn:
            conn.execute(
                q,
                {"id": step_id, "parent_id": parent_id, "branch": branch.value if branch else None},
            )

    def set_automation_status(self, automation_id: str, status: ActivationStatus) -> None:
        q = text("UPDATE automations SET status = :status WHERE id = :id")
        with self._engine.begin() as conn:
            conn.execute(q, {"id": automation_id, "status": status.value})

    def _one(self, sql: str, params: dict[str, Any]) -> Optional[AutomationStep]:
        with self._engine.begin() as conn:
            row = conn.execute(text(sql), params).fetchone()
        return self._step(row) if row else None

    @staticmethod
    def _step(row) -> AutomationStep:
        return AutomationStep(
            id=row[0],
            automation_id=row[1],
            type=row[2],
            subtype=row[3],
            parent_id=row[4],
            branch=row[5],
            status=row[6],
            configuration=json.loads(row[7] or "{}"),
            email_id=row[8],
            tag_id=row[9],
            audience_id=row[10],
        )

    @staticmethod
    def _step_params(step: AutomationStep) -> dict[str, Any]:
        return {
            "id": step.id,
            "automation_id": step.automation_id,
            "type": step.type.value,
            "subtype": step.subtype.value,
            "parent_id": step.parent_id,
            "branch": step.branch.value if step.branch else None,
            "status": step.status.value,
            "configuration_json": json.dumps(step.configuration),
            "email_id": step.email_id,
            "tag_id": step.tag_id,
            "audience_id": step.audience_id,
        }


class SqlLedgerStore:
    """The contact/step execution ledger (``contact_automation_steps``)."""

    def __init__(self, engine, clock: Clock = utc_now) -> None:
        self._engine = engine
        self._clock = clock

    def find_ledger_entry(self, contact_id: str, step_id: str) -> Optional[LedgerEntry]:
        q = text(
            f"""
            SELECT {_LEDGER_COLUMNS}
            FROM contact_automation_steps
            WHERE contact_id = :contact_id AND automation_step_id = :step_id
            """
        )
        with self._engine.begin() as conn:
            row = conn.execute(q, {"contact_id": contact_id, "step_id": step_id}).fetchone()
        return self._entry(row) if row else None

    def create_ledger_entry(
        self, contact_id: str, step_id: str, status: LedgerStatus
    ) -> Optional[LedgerEntry]:
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
        q = text(
            """
            INSERT INTO contact_automation_steps (
                id, contact_id, automation_step_id, status, output,
                created_at, completed_at, failed_at
            )
            VALUES (
                :id, :contact_id, :automation_step_id, :status, NULL,
                :created_at, :completed_at, :failed_at
            )
            ON CONFLICT (contact_id, automation_step_id) DO NOTHING
            """
        )
        with self._engine.begin() as conn:
            res = conn.execute(
                q,
                {
                    "id": entry.id,
                    "contact_id": contact_id,
                    "automation_step_id": step_id,
                    "status": status.value,
                    "created_at": to_iso(now),
                    "completed_at": _opt_iso(entry.completed_at),
                    "failed_at": _opt_iso(entry.failed_at),
                },
            )

        if not res.rowcount:
            logger.debug("ledger_entry_exists", contact_id=contact_id, step_id=step_id)
            return None
        return entry

    def update_ledger_status(
        self,
        entry_id: str,
        status: LedgerStatus,
        expected: Optional[LedgerStatus] = None,
        output: Optional[str] = None,
    ) -> bool:
        assignments = ["status = :status"]
        params: dict[str, Any] = {"id": entry_id, "status": status.value}

        if output is not None:
            assignments.append("output = :output")
            params["output"] = output
        if status == LedgerStatus.COMPLETED:
            assignments.append("completed_at = :now")
            params["now"] = to_iso(self._clock())
        elif status == LedgerStatus.FAILED:
            assignments.append("failed_at = :now")
            params["now"] = to_iso(self._clock())

        where = "id = :id"
        if expected is not None:
            where += " AND status = :expected"
            params["expected"] = expected.value

        q = text(f"UPDATE contact_automation_steps SET {', '.join(assignments)} WHERE {where}")
        with self._engine.begin() as conn:
            res = conn.execute(q, params)
        return bool(res.rowcount and res.rowcount > 0)

    def find_pending_contacts_for_step(
        self, step_id: str, cursor: Optional[str], page_size: int
    ) -> PendingContactsPage:
        params: dict[str, Any] = {
            "step_id": step_id,
            "status": LedgerStatus.PENDING.value,
            "limit": page_size + 1,
        }
        cursor_clause = ""
        if cursor is not None:
            cursor_clause = "AND contact_id > :cursor"
            params["cursor"] = cursor

        q = text(
            f"""
            SELECT contact_id
            FROM contact_automation_steps
            WHERE automation_step_id = :step_id AND status = :status {cursor_clause}
            ORDER BY contact_id
            LIMIT :limit
            """
        )
        with self._engine.begin() as conn:
            ids = [r[0] for r in conn.execute(q, params).fetchall()]

        page = ids[:page_size]
        next_cursor = page[-1] if len(ids) > page_size else None
        return PendingContactsPage(contact_ids=page, next_cursor=next_cursor)

    @staticmethod
    def _entry(row) -> LedgerEntry:
        return LedgerEntry(
            id=row[0],
            contact_id=row[1],
            automation_step_id=row[2],
            status=row[3],
            output=row[4],
            created_at=from_iso(row[5]),
            completed_at=_opt_dt(row[6]),
            failed_at=_opt_dt(row[7]),
        )
