"""
troupesync.engine.coercion — Property Types & Value Coercion
=============================================================

Every member property has a declared type written as ``<base><modifier>``:
``string``, ``number``, ``boolean`` or ``date`` followed by ``!`` (required)
or ``?`` (optional).  External sources hand us untyped values; this module
decides whether a value is acceptable for a type and converts it to its
JSON-storable form.

Pure functions only — no I/O, no database.
"""

from __future__ import annotations

import enum
import math
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any


class CoercionError(ValueError):
    """A raw value is not acceptable for a property type."""


class BaseType(enum.StrEnum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"


@dataclass(frozen=True, slots=True)
class PropertyType:
    base: BaseType
    required: bool

    @classmethod
    def parse(cls, text: str) -> PropertyType:
        """Parse ``"string!"``-style declarations.

        Raises
        ------
        ValueError
            If *text* is not a known base type followed by ``!`` or ``?``.
        """
        if not isinstance(text, str) or len(text) < 2 or text[-1] not in "!?":
            raise ValueError(f"Invalid property type: {text!r}")
        try:
            base = BaseType(text[:-1])
        except ValueError:
            raise ValueError(f"Invalid property type: {text!r}") from None
        return cls(base=base, required=text[-1] == "!")

    def __str__(self) -> str:
        return f"{self.base}{'!' if self.required else '?'}"


def parse_property_types(raw: dict[str, str]) -> dict[str, PropertyType]:
    return {name: PropertyType.parse(text) for name, text in raw.items()}


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------
_DATE_FORMATS: tuple[str, ...] = (
    "%m/%d/%Y",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%B %d, %Y",
    "%b %d, %Y",
)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite hands them back naive)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_date(raw: Any) -> datetime | None:
    """Tolerant calendar parser.  Returns ``None`` when nothing fits."""
    if isinstance(raw, datetime):
        return as_utc(raw)
    if not isinstance(raw, str):
        return None
    text = raw.strip()
    if not text:
        return None
    try:
        return as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=UTC)
        except ValueError:
            continue
    return None


# ---------------------------------------------------------------------------
# Numbers
# ---------------------------------------------------------------------------
_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


def parse_number(raw: Any) -> int | float | None:
    """Parse the whole of *raw* as a finite number, or return ``None``.

    Partial numeric prefixes (``"12abc"``), ``nan``/``inf`` and digit
    separators are rejected.  Integral values come back as ``int``.
    """
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int | float):
        number = float(raw)
    elif isinstance(raw, str) and _NUMBER_RE.match(raw.strip()):
        number = float(raw.strip())
    else:
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------
def is_empty(raw: Any) -> bool:
    return raw is None or (isinstance(raw, str) and not raw.strip())


def coerce_value(
    ptype: PropertyType,
    raw: Any,
    boolean_pair: tuple[str, str] | None = None,
) -> Any:
    """Convert *raw* to the JSON-storable value for *ptype*.

    Parameters
    ----------
    ptype:
        The declared property type.
    raw:
        Untyped value from an external source.
    boolean_pair:
        ``(true_label, false_label)`` declared by the source (e.g. the two
        options of a multiple-choice question).  Booleans cannot be read
        without one.

    Returns
    -------
    str | int | float | bool | None
        Dates are returned as ISO-8601 strings in UTC.

    Raises
    ------
    CoercionError
        If *raw* is empty for a required type or cannot be converted.
    """
    if is_empty(raw):
        if ptype.required:
            raise CoercionError(f"Missing value for required {ptype}")
        return None

    if ptype.base is BaseType.STRING:
        return raw.strip() if isinstance(raw, str) else str(raw)

    if ptype.base is BaseType.NUMBER:
        number = parse_number(raw)
        if number is None:
            raise CoercionError(f"Not a number: {raw!r}")
        return number

    if ptype.base is BaseType.DATE:
        parsed = parse_date(raw)
        if parsed is None:
            raise CoercionError(f"Not a date: {raw!r}")
        return parsed.isoformat()

    # Boolean
    if isinstance(raw, bool):
        return raw
    if boolean_pair is None:
        raise CoercionError("Boolean values need a true/false pair from the source")
    text = raw.strip() if isinstance(raw, str) else str(raw)
    if text == boolean_pair[0]:
        return True
    if text == boolean_pair[1]:
        return False
    raise CoercionError(f"{raw!r} is neither {boolean_pair[0]!r} nor {boolean_pair[1]!r}")
