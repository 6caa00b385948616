"""
coercion.py

Canonicalisation of loosely-typed field values for the project draft model.

Draft fields arrive from several places: HTTP request bodies, restored draft
content (plain JSON), spreadsheet imports and direct Python callers.  Numbers
may come in as ints, floats, Decimals or strings using either "." or the
Portuguese "," as the decimal separator; dates may be ``date`` objects,
``datetime`` objects or ISO-8601 strings.  Every value is funnelled through
the helpers below before it reaches the aggregate, so the in-memory model only
ever holds:

- ``Decimal`` for money, rates and occupancy (never float)
- ``int`` for quantities, months and years
- ``date`` (or None) for calendar fields
- ``str`` (or None) for optional free text

Invalid input raises CoercionError, a ValueError subclass, with a message
that names the offending value.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union


class CoercionError(ValueError):
    """Raised when a raw value cannot be converted to the canonical type."""


Number = Union[int, float, Decimal]

_LOCALIZED_FRACTION = re.compile(r"0,[0-9]{0,2}")


# ---------------------------------------------------------------------------
# Decimals
# ---------------------------------------------------------------------------

def to_decimal(value: Any) -> Decimal:
    """Convert ``value`` to a finite Decimal at full precision."""
    if isinstance(value, bool):
        raise CoercionError(f"Expected a number, got boolean {value!r}.")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        # str() keeps the shortest repr, so 0.1 stays 0.1 rather than 0.1000000000000000055...
        result = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip().replace(",", ".")
        if not text:
            raise CoercionError("Expected a number, got an empty string.")
        try:
            result = Decimal(text)
        except InvalidOperation as exc:
            raise CoercionError(f"{value!r} is not a valid number.") from exc
    else:
        raise CoercionError(f"Cannot convert {type(value).__name__} {value!r} to a number.")

    if not result.is_finite():
        raise CoercionError(f"{value!r} is not a finite number.")
    return result


def to_optional_decimal(value: Any) -> Optional[Decimal]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return to_decimal(value)


def decimal_to_str(value: Optional[Decimal]) -> Optional[str]:
    """Transport form of a Decimal: a plain decimal string, never exponent notation."""
    if value is None:
        return None
    return format(value, "f")


def decimal_to_number(value: Optional[Decimal]) -> Optional[Number]:
    """Plain JSON number for submission payloads (int when integral)."""
    if value is None:
        return None
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def parse_localized_fraction(text: str) -> Decimal:
    """
    Parse an occupancy cell value such as "0,75".

    "" and "0," are partial inputs and read as zero.  The text is assumed to
    have passed the occupancy acceptance rule already.
    """
    text = text.strip()
    if text in ("", "0,"):
        return Decimal("0")
    return to_decimal(text)


def is_acceptable_occupancy_text(text: str) -> bool:
    """
    True for "", "1", "0", "0," and "0," followed by one or two digits.

    Models a fixed-point fraction in [0, 1] typed with a decimal comma.
    """
    if text == "" or text == "1":
        return True
    return bool(_LOCALIZED_FRACTION.fullmatch(text)) or text == "0"


# ---------------------------------------------------------------------------
# Integers
# ---------------------------------------------------------------------------

def to_int(value: Any) -> int:
    if isinstance(value, bool):
        raise CoercionError(f"Expected an integer, got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal, str)):
        number = to_decimal(value)
        if number != number.to_integral_value():
            raise CoercionError(f"{value!r} is not a whole number.")
        return int(number)
    raise CoercionError(f"Cannot convert {type(value).__name__} {value!r} to an integer.")


def to_non_negative_int(value: Any) -> int:
    number = to_int(value)
    if number < 0:
        raise CoercionError(f"{value!r} must not be negative.")
    return number


def to_month(value: Any) -> int:
    month = to_int(value)
    if not 1 <= month <= 12:
        raise CoercionError(f"Month must be between 1 and 12, got {value!r}.")
    return month


def to_year(value: Any) -> int:
    year = to_int(value)
    if not 1900 <= year <= 9999:
        raise CoercionError(f"Year {value!r} is out of range.")
    return year


# ---------------------------------------------------------------------------
# Dates, text, flags
# ---------------------------------------------------------------------------

def to_date(value: Any) -> Optional[date]:
    """
    Convert ``value`` to a ``date``.

    Accepts None / "" (-> None), ``date``, ``datetime`` (its calendar date)
    and ISO-8601 date or datetime strings, including a trailing "Z".
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            if len(text) == 10:
                return date.fromisoformat(text)
            return datetime.fromisoformat(text).date()
        except ValueError as exc:
            raise CoercionError(f"{value!r} is not an ISO-8601 date.") from exc
    raise CoercionError(f"Cannot convert {type(value).__name__} {value!r} to a date.")


def to_optional_text(value: Any) -> Optional[str]:
    """Blank strings collapse to None; everything else is kept as text."""
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def to_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in ("true", "false", "1", "0"):
        return value.strip().lower() in ("true", "1")
    raise CoercionError(f"{value!r} is not a boolean.")
