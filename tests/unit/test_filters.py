"""Unit tests for the filter model."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from audience_automations.models import FilterCondition, FilterGroups
from audience_automations.models.filters import parse_time_window_days


class TestFilterCondition:
    """Test suite for FilterCondition."""

    def test_known_field_and_scalar_value(self) -> None:
        condition = FilterCondition(field="email", operation="eq", value="a@example.com")

        assert condition.field == "email"
        assert condition.property_key is None

    def test_property_field_exposes_key(self) -> None:
        condition = FilterCondition(field="properties.plan", operation="eq", value="pro")

        assert condition.property_key == "plan"

    def test_unknown_field_is_rejected(self) -> None:
        with pytest.raises(PydanticValidationError):
            FilterCondition(field="favouriteColour", operation="eq", value="red")

    def test_empty_property_key_is_rejected(self) -> None:
        with pytest.raises(PydanticValidationError):
            FilterCondition(field="properties.", operation="eq", value="x")

    @pytest.mark.parametrize("operation", ["in", "nin"])
    def test_list_operations_require_list(self, operation: str) -> None:
        with pytest.raises(PydanticValidationError):
            FilterCondition(field="email", operation=operation, value="a@example.com")

    def test_scalar_operation_rejects_list(self) -> None:
        with pytest.raises(PydanticValidationError):
            FilterCondition(field="email", operation="eq", value=["a", "b"])

    def test_contains_accepts_list_and_scalar(self) -> None:
        FilterCondition(field="tags", operation="contains", value=["t1", "t2"])
        FilterCondition(field="email", operation="contains", value="example")

    def test_time_window_requires_unit_and_count(self) -> None:
        FilterCondition(field="lastOpenedBroadcastEmailAt", operation="inTimeWindow", value="days_7")

        with pytest.raises(PydanticValidationError):
            FilterCondition(field="lastOpenedBroadcastEmailAt", operation="inTimeWindow", value="7")


class TestFilterGroups:
    """Test suite for FilterGroups."""

    def test_parses_camel_case_wire_form(self) -> None:
        groups = FilterGroups.model_validate(
            {
                "type": "OR",
                "groups": [
                    {
                        "type": "AND",
                        "conditions": [
                            {"field": "status", "operation": "eq", "value": "SUBSCRIBED"},
                            {"field": "tags", "operation": "contains", "value": ["vip"]},
                        ],
                    }
                ],
            }
        )

        assert groups.type.value == "OR"
        assert len(groups.groups[0].conditions) == 2

    def test_defaults_to_empty_and(self) -> None:
        groups = FilterGroups()

        assert groups.type.value == "AND"
        assert groups.groups == []


def test_parse_time_window_days() -> None:
    assert parse_time_window_days("days_30") == 30
    assert parse_time_window_days("weeks_2") == 2

    with pytest.raises(ValueError):
        parse_time_window_days("days-30")
