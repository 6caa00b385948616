"""
Tests for field coercion helpers.
"""
from datetime import date, datetime
from decimal import Decimal

import pytest

from coercion import (
    CoercionError,
    decimal_to_number,
    decimal_to_str,
    is_acceptable_occupancy_text,
    parse_localized_fraction,
    to_bool,
    to_date,
    to_decimal,
    to_int,
    to_month,
    to_optional_decimal,
    to_optional_text,
    to_year,
)


class TestDecimals:
    """Tests for decimal coercion."""

    def test_accepts_numbers_and_strings(self):
        assert to_decimal(3) == Decimal("3")
        assert to_decimal("12.50") == Decimal("12.50")
        assert to_decimal("0,75") == Decimal("0.75")

    def test_float_has_no_binary_drift(self):
        assert to_decimal(0.1) == Decimal("0.1")

    def test_preserves_full_precision(self):
        assert to_decimal("19.999") == Decimal("19.999")

    @pytest.mark.parametrize("value", [True, "", "abc", "NaN", "Infinity", None, [1]])
    def test_rejects_invalid_values(self, value):
        with pytest.raises(CoercionError):
            to_decimal(value)

    def test_coercion_error_is_value_error(self):
        with pytest.raises(ValueError):
            to_decimal("x")

    def test_optional_decimal(self):
        assert to_optional_decimal(None) is None
        assert to_optional_decimal("  ") is None
        assert to_optional_decimal("2") == Decimal("2")

    def test_transport_forms(self):
        assert decimal_to_str(Decimal("1E+1")) == "10"
        assert decimal_to_str(None) is None
        assert decimal_to_number(Decimal("10.0")) == 10
        assert isinstance(decimal_to_number(Decimal("10.0")), int)
        assert decimal_to_number(Decimal("0.25")) == 0.25


class TestOccupancyText:
    """Tests for the occupancy cell acceptance rule."""

    @pytest.mark.parametrize("text", ["", "0", "0,", "0,5", "0,75", "1"])
    def test_accepted(self, text):
        assert is_acceptable_occupancy_text(text)

    @pytest.mark.parametrize(
        "text",
        ["2", "1,5", "abc", "0,123", "0.5", " 0,5", "0,5\n", "0,\u0665", "0,\u0661\u0662"],
    )
    def test_rejected(self, text):
        assert not is_acceptable_occupancy_text(text)

    def test_parse_localized_fraction(self):
        assert parse_localized_fraction("0,75") == Decimal("0.75")
        assert parse_localized_fraction("0,") == Decimal("0")
        assert parse_localized_fraction("") == Decimal("0")
        assert parse_localized_fraction("1") == Decimal("1")


class TestIntegers:
    """Tests for integer, month and year coercion."""

    def test_to_int(self):
        assert to_int("4") == 4
        assert to_int(Decimal("4.0")) == 4
        with pytest.raises(CoercionError):
            to_int("4.5")
        with pytest.raises(CoercionError):
            to_int(False)

    def test_month_range(self):
        assert to_month("12") == 12
        with pytest.raises(CoercionError):
            to_month(13)
        with pytest.raises(CoercionError):
            to_month(0)

    def test_year_range(self):
        assert to_year(2024) == 2024
        with pytest.raises(CoercionError):
            to_year(24)


class TestDatesTextFlags:
    """Tests for date, text and boolean coercion."""

    def test_to_date(self):
        assert to_date(None) is None
        assert to_date("") is None
        assert to_date("2024-03-01") == date(2024, 3, 1)
        assert to_date("2024-03-01T10:00:00Z") == date(2024, 3, 1)
        assert to_date(datetime(2024, 3, 1, 23, 59)) == date(2024, 3, 1)
        assert to_date(date(2024, 3, 1)) == date(2024, 3, 1)

    def test_to_date_rejects_garbage(self):
        with pytest.raises(CoercionError):
            to_date("01/03/2024")
        with pytest.raises(CoercionError):
            to_date(20240301)

    def test_optional_text(self):
        assert to_optional_text("   ") is None
        assert to_optional_text(None) is None
        assert to_optional_text("notes") == "notes"

    def test_to_bool(self):
        assert to_bool("true") is True
        assert to_bool("0") is False
        assert to_bool(1) is True
        assert to_bool(None) is False
        with pytest.raises(CoercionError):
            to_bool("maybe")
