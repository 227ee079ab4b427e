"""Tests for identify attribute filtering and type coercion."""

from __future__ import annotations

from datetime import datetime

import pytest

from src.hub.integrations.attributes import coerce_attribute_value, map_attributes
from src.hub.integrations.schemas import AttributeType, UserAttributeDefinition


def _definition(key: str, attr_type: AttributeType, external_key: str | None) -> UserAttributeDefinition:
    return UserAttributeDefinition(id=f"attr_{key}", key=key, type=attr_type, external_key=external_key)


class TestCoerceAttributeValue:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("42", 42), ("3.5", 3.5), (7, 7), (2.25, 2.25), (" 10 ", 10), ("-3", -3)],
    )
    def test_number(self, raw, expected):
        assert coerce_attribute_value(raw, AttributeType.NUMBER) == expected

    @pytest.mark.parametrize("raw", ["abc", "", True, float("nan"), "inf", {"a": 1}])
    def test_number_rejects(self, raw):
        assert coerce_attribute_value(raw, AttributeType.NUMBER) is None

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [(True, True), ("yes", True), ("FALSE", False), ("0", False), (1, True), (0, False)],
    )
    def test_boolean(self, raw, expected):
        assert coerce_attribute_value(raw, AttributeType.BOOLEAN) is expected

    @pytest.mark.parametrize("raw", ["maybe", 2, [True]])
    def test_boolean_rejects(self, raw):
        assert coerce_attribute_value(raw, AttributeType.BOOLEAN) is None

    def test_date_from_iso_string(self):
        value = coerce_attribute_value("2024-03-01T12:00:00Z", AttributeType.DATE)
        assert datetime.fromisoformat(value).year == 2024
        assert value.endswith("+00:00")

    def test_date_from_unix_seconds_and_millis(self):
        seconds = coerce_attribute_value(1_700_000_000, AttributeType.DATE)
        millis = coerce_attribute_value(1_700_000_000_000, AttributeType.DATE)
        assert datetime.fromisoformat(seconds) == datetime.fromisoformat(millis)

    def test_date_rejects_garbage(self):
        assert coerce_attribute_value("next tuesday", AttributeType.DATE) is None
        assert coerce_attribute_value(True, AttributeType.DATE) is None

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("$1,234.567", 1234.57), (99, 99.0), ("12.5", 12.5), ("€10", 10.0)],
    )
    def test_currency(self, raw, expected):
        assert coerce_attribute_value(raw, AttributeType.CURRENCY) == expected

    def test_currency_rejects(self):
        assert coerce_attribute_value("ten dollars", AttributeType.CURRENCY) is None
        assert coerce_attribute_value(False, AttributeType.CURRENCY) is None

    def test_string(self):
        assert coerce_attribute_value(12, AttributeType.STRING) == "12"
        assert coerce_attribute_value(True, AttributeType.STRING) == "true"
        assert coerce_attribute_value({"nested": 1}, AttributeType.STRING) is None

    def test_none_is_dropped_for_every_type(self):
        for attr_type in AttributeType:
            assert coerce_attribute_value(None, attr_type) is None


class TestMapAttributes:
    def test_only_defined_external_keys_are_kept(self):
        definitions = [
            _definition("plan", AttributeType.STRING, "plan_name"),
            _definition("mrr", AttributeType.CURRENCY, "mrr"),
        ]
        attributes = {"plan_name": "Pro", "mrr": "49.99", "favorite_color": "blue"}

        assert map_attributes(attributes, definitions) == {"plan": "Pro", "mrr": 49.99}

    def test_definition_without_external_key_is_ignored(self):
        definitions = [_definition("plan", AttributeType.STRING, None)]
        assert map_attributes({"plan": "Pro"}, definitions) == {}

    def test_uncoercible_values_are_dropped(self):
        definitions = [
            _definition("seats", AttributeType.NUMBER, "seats"),
            _definition("beta", AttributeType.BOOLEAN, "beta"),
        ]
        assert map_attributes({"seats": "lots", "beta": "yes"}, definitions) == {"beta": True}

    def test_no_definitions_writes_nothing(self):
        assert map_attributes({"plan": "Pro"}, []) == {}
