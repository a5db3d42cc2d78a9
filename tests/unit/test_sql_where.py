"""SQL WHERE compilation, checked against in-memory evaluation on SQLite."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine

from audience_automations.models import Audience, Contact, FilterGroups, Segment
from audience_automations.segments import AudienceContext, build_where, compile_filter, evaluate
from audience_automations.segments.predicate import FALSE, AllOf, Not
from audience_automations.stores import SqlContactStore, ensure_schema

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _contacts() -> list[Contact]:
    return [
        Contact(
            id="c1",
            audience_id="aud-1",
            email="jane.doe@example.com",
            first_name="Jane",
            source="api",
            subscribed_at=datetime(2025, 1, 15, tzinfo=timezone.utc),
            last_opened_broadcast_email_at=NOW - timedelta(days=7),
            properties={"plan": "Pro Annual", "score": 42, "vip": True},
            tag_ids={"a", "vip"},
        ),
        Contact(
            id="c2",
            audience_id="aud-1",
            email="BOB_100%@Example.org",
            first_name="Bob",
            source="import",
            status="UNSUBSCRIBED",
            subscribed_at=datetime(2024, 12, 1, tzinfo=timezone.utc),
            last_opened_broadcast_email_at=NOW - timedelta(days=7, seconds=1),
            properties={"plan": "free", "score": "7.5", "renewal": "2025-06-01T00:00:00Z"},
            tag_ids={"b"},
        ),
        Contact(
            id="c3",
            audience_id="aud-1",
            email="nobody@example.net",
            properties={"vip": "no"},
        ),
        Contact(
            id="c4",
            audience_id="aud-2",
            email="jane.doe@example.com",
            first_name="Jane",
            tag_ids={"a"},
        ),
    ]


@pytest.fixture
def sql_store(tmp_path, audience: Audience) -> SqlContactStore:
    engine = create_engine(f"sqlite:///{tmp_path / 'contacts.sqlite3'}")
    ensure_schema(engine)

    store = SqlContactStore(engine)
    store.add_audience(audience)
    store.add_audience(Audience(id="aud-2"))
    for contact in _contacts():
        store.add_contact(contact)
    return store


def _conditions(field: str, operation: str, value: object) -> FilterGroups:
    return FilterGroups.model_validate(
        {"groups": [{"conditions": [{"field": field, "operation": operation, "value": value}]}]}
    )


CASES = [
    ("email", "eq", "jane.doe@example.com"),
    ("email", "ne", "jane.doe@example.com"),
    ("email", "startsWith", "JANE"),
    ("email", "endsWith", ".ORG"),
    ("email", "contains", "_100%"),
    ("email", "notContains", "example.com"),
    ("firstName", "ne", "Jane"),
    ("firstName", "in", ["Jane", "Bob"]),
    ("firstName", "nin", ["Jane"]),
    ("status", "eq", "UNSUBSCRIBED"),
    ("source", "eq", "api"),
    ("subscribedAt", "gte", "2025-01-01T00:00:00Z"),
    ("subscribedAt", "lt", "2025-01-15T00:00:00Z"),
    ("lastOpenedBroadcastEmailAt", "inTimeWindow", "days_7"),
    ("tags", "contains", ["a", "b"]),
    ("tags", "notContains", ["vip"]),
    ("properties.plan", "contains", "annual"),
    ("properties.plan", "ne", "free"),
    ("properties.score", "gt", 10),
    ("properties.score", "lte", "7.5"),
    ("properties.score", "in", [7.5, 99]),
    ("properties.vip", "eq", "true"),
    ("properties.vip", "ne", "true"),
    ("properties.renewal", "gt", "2025-05-01T00:00:00Z"),
    ("properties.unknown", "eq", "x"),
]


@pytest.mark.parametrize("field,operation,value", CASES)
def test_sql_agrees_with_memory(
    sql_store: SqlContactStore, audience: Audience, field: str, operation: str, value: object
) -> None:
    context = AudienceContext(audience=audience)
    predicate = compile_filter(_conditions(field, operation, value), context, now=NOW)

    in_memory = {c.id for c in _contacts() if c.audience_id == "aud-1" and evaluate(predicate, c)}
    in_sql = {c.id for c in sql_store.find_matching(predicate, "aud-1")}

    assert in_sql == in_memory


def test_negation_excludes_null_columns(sql_store: SqlContactStore, audience: Audience) -> None:
    predicate = compile_filter(_conditions("firstName", "eq", "Jane"), AudienceContext(audience=audience), now=NOW)

    negated = {c.id for c in sql_store.find_matching(Not(predicate), "aud-1")}

    assert negated == {"c2", "c3"}


def test_segment_reference(sql_store: SqlContactStore, audience: Audience) -> None:
    vip = Segment(id="seg-vip", audience_id="aud-1", filter_groups=_conditions("tags", "contains", ["vip"]))
    sql_store.add_segment(vip)
    context = AudienceContext(audience=audience, segments={s.id: s for s in sql_store.list_segments("aud-1")})

    predicate = compile_filter(_conditions("segmentId", "nin", ["seg-vip"]), context, now=NOW)

    assert {c.id for c in sql_store.find_matching(predicate, "aud-1")} == {"c2", "c3"}


def test_contact_matches(sql_store: SqlContactStore, audience: Audience) -> None:
    predicate = compile_filter(_conditions("tags", "contains", ["a"]), AudienceContext(audience=audience), now=NOW)

    assert sql_store.contact_matches("c1", predicate)
    assert not sql_store.contact_matches("c2", predicate)
    assert not sql_store.contact_matches("missing", predicate)


def test_build_where_is_parameterized() -> None:
    predicate = compile_filter(
        _conditions("email", "eq", "x'; DROP TABLE contacts; --"),
        AudienceContext(audience=Audience(id="aud-1")),
        now=NOW,
    )

    sql, params = build_where(predicate)

    assert "DROP TABLE" not in sql
    assert "x'; DROP TABLE contacts; --" in params.values()


def test_empty_combinators() -> None:
    assert build_where(AllOf(()))[0] == "1 = 1"
    assert build_where(FALSE)[0] == "1 = 0"
