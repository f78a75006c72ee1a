"""
tests/test_coercion.py — Property Type Coercion Tests
======================================================
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from troupesync.engine.coercion import (
    BaseType,
    CoercionError,
    PropertyType,
    coerce_value,
    parse_date,
    parse_number,
)

REQUIRED_STRING = PropertyType.parse("string!")
OPTIONAL_NUMBER = PropertyType.parse("number?")
REQUIRED_NUMBER = PropertyType.parse("number!")
OPTIONAL_DATE = PropertyType.parse("date?")
REQUIRED_BOOLEAN = PropertyType.parse("boolean!")


class TestPropertyType:
    """Parsing ``<base><modifier>`` declarations."""

    def test_parse_required_and_optional(self):
        assert REQUIRED_STRING == PropertyType(BaseType.STRING, True)
        assert OPTIONAL_NUMBER == PropertyType(BaseType.NUMBER, False)

    def test_round_trips_to_text(self):
        assert str(PropertyType.parse("date?")) == "date?"

    @pytest.mark.parametrize("text", ["string", "text!", "", "!", "number*"])
    def test_rejects_unknown_declarations(self, text):
        with pytest.raises(ValueError):
            PropertyType.parse(text)


class TestEmptyValues:
    """Null/empty is valid only for optional types."""

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_optional_accepts_empty(self, raw):
        assert coerce_value(OPTIONAL_NUMBER, raw) is None

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_required_rejects_empty(self, raw):
        with pytest.raises(CoercionError):
            coerce_value(REQUIRED_STRING, raw)


class TestNumbers:
    def test_whole_numbers_come_back_as_int(self):
        assert coerce_value(REQUIRED_NUMBER, "42") == 42
        assert isinstance(coerce_value(REQUIRED_NUMBER, "42.0"), int)

    def test_fractions_and_exponents(self):
        assert coerce_value(REQUIRED_NUMBER, "2.5") == 2.5
        assert coerce_value(REQUIRED_NUMBER, "1e3") == 1000

    @pytest.mark.parametrize("raw", ["12abc", "1_000", "nan", "inf", "1,5", "--1"])
    def test_partial_or_special_values_rejected(self, raw):
        assert parse_number(raw) is None
        with pytest.raises(CoercionError):
            coerce_value(REQUIRED_NUMBER, raw)

    def test_booleans_are_not_numbers(self):
        assert parse_number(True) is None


class TestDates:
    @pytest.mark.parametrize("raw, expected", [
        ("3/5/2026", datetime(2026, 3, 5, tzinfo=UTC)),
        ("3/5/2026 14:30:00", datetime(2026, 3, 5, 14, 30, tzinfo=UTC)),
        ("2026-03-05", datetime(2026, 3, 5, tzinfo=UTC)),
        ("2026-03-05 14:30", datetime(2026, 3, 5, 14, 30, tzinfo=UTC)),
        ("March 5, 2026", datetime(2026, 3, 5, tzinfo=UTC)),
        ("2026-03-05T14:30:00Z", datetime(2026, 3, 5, 14, 30, tzinfo=UTC)),
    ])
    def test_common_formats(self, raw, expected):
        assert parse_date(raw) == expected

    def test_coerced_dates_are_iso_strings(self):
        assert coerce_value(OPTIONAL_DATE, "3/5/2026") == "2026-03-05T00:00:00+00:00"

    def test_unparsable_date_rejected(self):
        with pytest.raises(CoercionError):
            coerce_value(OPTIONAL_DATE, "next tuesday")


class TestBooleans:
    """Booleans need a true/false pair declared by the source."""

    def test_pair_maps_labels(self):
        assert coerce_value(REQUIRED_BOOLEAN, "Yes", ("Yes", "No")) is True
        assert coerce_value(REQUIRED_BOOLEAN, "No", ("Yes", "No")) is False

    def test_without_pair_rejected(self):
        with pytest.raises(CoercionError):
            coerce_value(REQUIRED_BOOLEAN, "Yes")

    def test_label_outside_pair_rejected(self):
        with pytest.raises(CoercionError):
            coerce_value(REQUIRED_BOOLEAN, "Maybe", ("Yes", "No"))
