"""
Per-type cell coercion for spreadsheet uploads.

Each ``coerce_*`` function takes a raw cell (whatever openpyxl produced:
str, int, float, bool, date, datetime or None) and returns one of the typed
values from ``docforge.schema.types``, or raises ``CoercionError`` with a
reason phrased to follow the field's display name ("is required",
"must be one of: A, B").
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta
from typing import Any, Optional, Sequence

from docforge.schema.types import (
    FALSE_TOKENS,
    TRUE_TOKENS,
    BoolValue,
    DateValue,
    FieldSpec,
    FieldType,
    NumberValue,
    TextValue,
)

# Excel day 0, shifted one day back so that serials from 1900-03-01 onward
# land right despite Excel's phantom 1900-02-29.
EXCEL_EPOCH = datetime(1899, 12, 30)
_EXCEL_LEAP_BUG_SERIAL = 60
_EXCEL_MAX_SERIAL = 2958466  # 10000-01-01

NOON = time(12, 0)
MAX_TEXT_LENGTH = 255

_NON_NUMERIC = re.compile(r"[^0-9.\-]")
_DMY = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})(?:\s+(\d{1,2}):(\d{2})(?::(\d{2}))?)?$")


class CoercionError(ValueError):
    """
    ``strict`` errors (range, option list, length) reject the row even for
    optional fields; unparseable optional cells are stored as NULL instead.
    """

    def __init__(self, reason: str, strict: bool = False):
        self.reason = reason
        self.strict = strict
        super().__init__(reason)


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

def from_excel_serial(serial: float) -> datetime:
    """Excel serial day number → naive datetime (fraction = time of day)."""
    if serial < 0 or serial >= _EXCEL_MAX_SERIAL:
        raise CoercionError("is not a valid date")
    days = int(serial)
    if 0 < days < _EXCEL_LEAP_BUG_SERIAL:
        days += 1
    fraction = serial - int(serial)
    return EXCEL_EPOCH + timedelta(days=days, seconds=round(fraction * 86400))


def _finish_date(moment: datetime, field_type: FieldType, has_time: bool) -> DateValue:
    if moment.tzinfo is not None:
        moment = moment.replace(tzinfo=None)
    if field_type is FieldType.DATETIME and has_time:
        return DateValue(moment, with_time=True)
    noon = datetime.combine(moment.date(), NOON)
    return DateValue(noon, with_time=field_type is FieldType.DATETIME)


def coerce_date(value: Any, field_type: FieldType = FieldType.DATE) -> DateValue:
    """
    Accepts a native date/datetime, ``DD/MM/YYYY`` (optionally with
    ``HH:MM[:SS]``), an ISO string, or an Excel serial in a numeric cell.
    DATE values and time-less DATETIME values are pinned to local noon so
    no timezone shift can move them to a neighbouring day.
    """
    if isinstance(value, bool):
        raise CoercionError("is not a valid date")
    if isinstance(value, datetime):
        return _finish_date(value, field_type, value.time() != time(0, 0))
    if isinstance(value, date):
        return _finish_date(datetime.combine(value, NOON), field_type, False)
    if isinstance(value, (int, float)):
        moment = from_excel_serial(float(value))
        return _finish_date(moment, field_type, float(value) != int(value))

    # serials only come from numeric cells; digit text such as "2023" is not a date
    raw = str(value).strip()
    match = _DMY.match(raw)
    if match:
        day, month, year, hour, minute, second = match.groups()
        try:
            moment = datetime(
                int(year), int(month), int(day),
                int(hour or 0), int(minute or 0), int(second or 0),
            )
        except ValueError:
            raise CoercionError("is not a valid date")
        return _finish_date(moment, field_type, hour is not None)

    try:
        moment = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        raise CoercionError("is not a valid date")
    return _finish_date(moment, field_type, len(raw) > 10)


# ---------------------------------------------------------------------------
# Scalars
# ---------------------------------------------------------------------------

def coerce_number(value: Any, spec: FieldSpec) -> NumberValue:
    if isinstance(value, bool):
        raise CoercionError("is not a valid number")
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        cleaned = _NON_NUMERIC.sub("", str(value))
        try:
            number = float(cleaned)
        except ValueError:
            raise CoercionError("is not a valid number")
    if spec.min_value is not None and number < spec.min_value:
        raise CoercionError(f"must be at least {_fmt(spec.min_value)}", strict=True)
    if spec.max_value is not None and number > spec.max_value:
        raise CoercionError(f"must be at most {_fmt(spec.max_value)}", strict=True)
    return NumberValue(number, integer=spec.field_type is FieldType.NUMBER)


def _fmt(number: float) -> str:
    return str(int(number)) if float(number).is_integer() else str(number)


def coerce_boolean(value: Any) -> BoolValue:
    if isinstance(value, bool):
        return BoolValue(value)
    if isinstance(value, (int, float)):
        if value in (0, 1):
            return BoolValue(bool(value))
        raise CoercionError("must be yes/no")
    token = str(value).strip().lower()
    if token in TRUE_TOKENS:
        return BoolValue(True)
    if token in FALSE_TOKENS:
        return BoolValue(False)
    raise CoercionError("must be yes/no")


def coerce_select(value: Any, options: Sequence[str]) -> TextValue:
    """Case-insensitive match; returns the option's declared casing."""
    raw = _cell_text(value)
    if not options:
        return TextValue(raw)
    for option in options:
        if option.lower() == raw.lower():
            return TextValue(option)
    raise CoercionError(f"must be one of: {', '.join(options)}", strict=True)


def coerce_text(value: Any) -> TextValue:
    raw = _cell_text(value)
    if len(raw) > MAX_TEXT_LENGTH:
        raise CoercionError(f"must be at most {MAX_TEXT_LENGTH} characters", strict=True)
    return TextValue(raw)


def _cell_text(value: Any) -> str:
    # 12.0 from a numeric cell should read as "12"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    return str(value).strip()


def coerce_scalar(spec: FieldSpec, value: Any) -> Any:
    """Coerce a non-blank cell for every type except REFERENCE."""
    field_type = spec.field_type
    if field_type.is_temporal:
        return coerce_date(value, field_type)
    if field_type.is_numeric:
        return coerce_number(value, spec)
    if field_type is FieldType.BOOLEAN:
        return coerce_boolean(value)
    if field_type is FieldType.SELECT:
        return coerce_select(value, spec.options)
    if field_type is FieldType.TEXT:
        return coerce_text(value)
    raise CoercionError(f"has unsupported type {field_type.value}")


def default_for(spec: FieldSpec) -> Optional[Any]:
    """The field's default value as a raw cell, or None."""
    if is_blank(spec.default_value):
        return None
    return spec.default_value
