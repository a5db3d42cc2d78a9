"""Unit tests for per-subtype step runners."""

from __future__ import annotations

from datetime import timedelta

import pytest

from audience_automations.automations import RUNNERS, Completed, Failed, Waiting, run_step
from audience_automations.automations.context import ExecutionContext
from audience_automations.exceptions import StepConfigurationError
from audience_automations.models import (
    Audience,
    AutomationStep,
    Branch,
    ContactStatus,
    LedgerEntry,
    StepSubtype,
    StepType,
)
from audience_automations.models.automation import SUBTYPES_BY_TYPE
from audience_automations.segments.predicate import AllOf


def _step(step_id: str, subtype: StepSubtype, **fields) -> AutomationStep:
    step_type = next(t for t, subtypes in SUBTYPES_BY_TYPE.items() if subtype in subtypes)
    return AutomationStep(id=step_id, automation_id="a1", type=step_type, subtype=subtype, **fields)


@pytest.fixture
def context(contacts, automations, email_sender, clock):
    def _make(step_id: str = "s1", created_at=None) -> ExecutionContext:
        entry = LedgerEntry(
            id="l1",
            contact_id="c1",
            automation_step_id=step_id,
            created_at=created_at or clock.now,
        )
        return ExecutionContext(
            contacts=contacts,
            automations=automations,
            email_sender=email_sender,
            entry=entry,
            now=clock.now,
        )

    return _make


def test_every_runnable_subtype_has_a_runner() -> None:
    runnable = set(StepSubtype) - SUBTYPES_BY_TYPE[StepType.TRIGGER]

    assert set(RUNNERS) == runnable


def test_trigger_is_not_runnable(add_contact, context) -> None:
    contact = add_contact("c1")

    with pytest.raises(StepConfigurationError):
        run_step(_step("t", StepSubtype.TRIGGER_API_MANUAL), contact, context("t"))


class TestActions:
    def test_empty_continues_to_child(self, add_contact, automations, context) -> None:
        contact = add_contact("c1")
        automations.insert_step(_step("s1", StepSubtype.ACTION_EMPTY))
        automations.insert_step(_step("s2", StepSubtype.END, parent_id="s1"))

        assert run_step(automations.find_step("s1"), contact, context()) == Completed("s2")

    def test_leaf_step_halts(self, add_contact, context) -> None:
        contact = add_contact("c1")

        assert run_step(_step("s1", StepSubtype.ACTION_EMPTY), contact, context()) == Completed(None)
        assert run_step(_step("s1", StepSubtype.END), contact, context()) == Completed(None)

    def test_send_email(self, add_contact, context, email_sender) -> None:
        contact = add_contact("c1")

        run_step(_step("s1", StepSubtype.ACTION_SEND_EMAIL, email_id="welcome"), contact, context())

        assert email_sender.sent == [("welcome", "c1")]

    def test_add_and_remove_tags(self, add_contact, contacts, context) -> None:
        contact = add_contact("c1", tag_ids={"old"})

        run_step(
            _step("s1", StepSubtype.ACTION_ADD_TAG, tag_id="a", configuration={"tagIds": ["b", "a"]}),
            contact,
            context(),
        )
        assert contacts.list_tags("c1") == {"old", "a", "b"}

        run_step(_step("s1", StepSubtype.ACTION_REMOVE_TAG, tag_id="old"), contact, context())
        assert contacts.list_tags("c1") == {"a", "b"}

    def test_subscribe_to_missing_audience_fails(self, add_contact, context) -> None:
        contact = add_contact("c1")

        result = run_step(
            _step("s1", StepSubtype.ACTION_SUBSCRIBE_TO_AUDIENCE, audience_id="missing"), contact, context()
        )

        assert isinstance(result, Failed)

    def test_subscribe_copies_contact(self, add_contact, contacts, context) -> None:
        contacts.add_audience(Audience(id="aud-2"))
        contact = add_contact("c1")

        run_step(_step("s1", StepSubtype.ACTION_SUBSCRIBE_TO_AUDIENCE, audience_id="aud-2"), contact, context())

        copied = list(contacts.find_matching(AllOf(()), "aud-2"))
        assert [c.email for c in copied] == ["c1@example.com"]
        assert copied[0].id != "c1"

    def test_unsubscribe(self, add_contact, contacts, context) -> None:
        contact = add_contact("c1")

        run_step(
            _step("s1", StepSubtype.ACTION_UNSUBSCRIBE_FROM_AUDIENCE, audience_id="aud-1"), contact, context()
        )

        assert contacts.find_by_id("c1").status == ContactStatus.UNSUBSCRIBED

    def test_update_attributes(self, add_contact, contacts, context) -> None:
        contact = add_contact("c1")

        run_step(
            _step(
                "s1",
                StepSubtype.ACTION_UPDATE_CONTACT_ATTRIBUTES,
                configuration={"attributes": {"plan": "pro"}},
            ),
            contact,
            context(),
        )

        assert contacts.find_by_id("c1").properties["plan"] == "pro"

    def test_missing_reference_is_a_configuration_error(self, add_contact, context) -> None:
        contact = add_contact("c1")

        with pytest.raises(StepConfigurationError):
            run_step(_step("s1", StepSubtype.ACTION_ADD_TAG), contact, context())

    def test_malformed_configuration_is_a_configuration_error(self, add_contact, context) -> None:
        contact = add_contact("c1")

        with pytest.raises(StepConfigurationError):
            run_step(_step("s1", StepSubtype.RULE_WAIT_FOR_DURATION, configuration={}), contact, context())


class TestIfElse:
    CONFIG = {
        "filterGroups": {
            "type": "OR",
            "groups": [
                {
                    "type": "AND",
                    "conditions": [
                        {"field": "tags", "operation": "contains", "value": ["a"]},
                        {"field": "properties.score", "operation": "gte", "value": 50},
                    ],
                },
                {
                    "type": "AND",
                    "conditions": [{"field": "source", "operation": "eq", "value": "vip-import"}],
                },
            ],
        }
    }

    @pytest.fixture
    def rule(self, automations) -> AutomationStep:
        rule = _step("r", StepSubtype.RULE_IF_ELSE, configuration=self.CONFIG)
        automations.insert_step(rule)
        automations.insert_step(_step("yes", StepSubtype.END, parent_id="r", branch=Branch.YES))
        automations.insert_step(_step("no", StepSubtype.END, parent_id="r", branch=Branch.NO))
        return rule

    @pytest.mark.parametrize(
        "fields,expected",
        [
            ({"tag_ids": {"a"}, "properties": {"score": 80}}, "yes"),
            ({"tag_ids": {"a"}, "properties": {"score": 10}}, "no"),
            ({"source": "vip-import"}, "yes"),
            ({"properties": {"score": 99}}, "no"),
        ],
    )
    def test_branch_selection(self, add_contact, context, rule, fields, expected) -> None:
        contact = add_contact("c1", **fields)

        assert run_step(rule, contact, context("r")) == Completed(expected)

    def test_missing_branch_child_halts(self, add_contact, automations, context) -> None:
        rule = _step("r2", StepSubtype.RULE_IF_ELSE, configuration=self.CONFIG)
        automations.insert_step(rule)
        contact = add_contact("c1", tag_ids={"a"}, properties={"score": 80})

        assert run_step(rule, contact, context("r2")) == Completed(None)


class TestWaitForDuration:
    def test_waits_until_delay_after_arrival(self, add_contact, automations, context, clock) -> None:
        contact = add_contact("c1")
        wait = _step("w", StepSubtype.RULE_WAIT_FOR_DURATION, configuration={"delay": 3600})
        automations.insert_step(wait)
        automations.insert_step(_step("next", StepSubtype.END, parent_id="w"))

        arrived = clock.now - timedelta(minutes=30)
        assert run_step(wait, contact, context("w", created_at=arrived)) == Waiting(
            arrived + timedelta(hours=1)
        )

        arrived = clock.now - timedelta(hours=1)
        assert run_step(wait, contact, context("w", created_at=arrived)) == Completed("next")

    def test_zero_delay_continues_immediately(self, add_contact, automations, context) -> None:
        contact = add_contact("c1")
        wait = _step("w", StepSubtype.RULE_WAIT_FOR_DURATION, configuration={"delay": 0})
        automations.insert_step(wait)

        assert run_step(wait, contact, context("w")) == Completed(None)

    @pytest.mark.parametrize("delay", [float("inf"), 1e300])
    def test_unbounded_stored_delay_is_a_configuration_error(self, add_contact, context, delay) -> None:
        contact = add_contact("c1")
        wait = _step("w", StepSubtype.RULE_WAIT_FOR_DURATION, configuration={"delay": delay})

        with pytest.raises(StepConfigurationError):
            run_step(wait, contact, context("w"))
