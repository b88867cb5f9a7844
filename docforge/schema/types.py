"""
Field types, their physical column mapping, and the typed cell values that
flow from the Ingestion Pipeline into the Query Builder.

Column mapping:
    TEXT      → VARCHAR(255)
    NUMBER    → INT
    CURRENCY  → DECIMAL(20,2)
    DATE      → DATE
    DATETIME  → DATETIME
    SELECT    → VARCHAR(100)
    BOOLEAN   → TINYINT(1) on MySQL, BOOLEAN elsewhere
    REFERENCE → INT + FOREIGN KEY
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import Boolean, Date, DateTime, Integer, Numeric, String, false, text, true
from sqlalchemy.dialects import mysql
from sqlalchemy.sql.elements import ColumnElement, TextClause
from sqlalchemy.types import TypeEngine

SYSTEM_COLUMNS: Tuple[str, ...] = ("id", "created_at", "created_by", "updated_at", "updated_by")


class FieldType(str, enum.Enum):
    TEXT = "TEXT"
    NUMBER = "NUMBER"
    CURRENCY = "CURRENCY"
    DATE = "DATE"
    DATETIME = "DATETIME"
    SELECT = "SELECT"
    BOOLEAN = "BOOLEAN"
    REFERENCE = "REFERENCE"

    @property
    def is_temporal(self) -> bool:
        return self in (FieldType.DATE, FieldType.DATETIME)

    @property
    def is_numeric(self) -> bool:
        return self in (FieldType.NUMBER, FieldType.CURRENCY)


INDEXED_TYPES = frozenset({FieldType.DATE, FieldType.DATETIME, FieldType.REFERENCE})

TRUE_TOKENS = frozenset({"true", "yes", "ya", "y", "1"})
FALSE_TOKENS = frozenset({"false", "no", "tidak", "n", "0"})


def column_type_for(field_type: FieldType) -> TypeEngine:
    """SQLAlchemy column type for a field type."""
    field_type = FieldType(field_type)
    if field_type is FieldType.TEXT:
        return String(255)
    if field_type is FieldType.NUMBER:
        return Integer()
    if field_type is FieldType.CURRENCY:
        return Numeric(20, 2)
    if field_type is FieldType.DATE:
        return Date()
    if field_type is FieldType.DATETIME:
        return DateTime()
    if field_type is FieldType.SELECT:
        return String(100)
    if field_type is FieldType.BOOLEAN:
        return Boolean().with_variant(mysql.TINYINT(1), "mysql")
    return Integer()  # REFERENCE


# ---------------------------------------------------------------------------
# Field description shared by the Table Manager and the pipeline
# ---------------------------------------------------------------------------

@dataclass
class FieldSpec:
    """A DocTypeField detached from the ORM session."""

    field_name: str
    field_type: FieldType
    name: str = ""
    is_required: bool = False
    is_unique: bool = False
    default_value: Optional[str] = None
    options: List[str] = field(default_factory=list)
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    reference_table: Optional[str] = None
    reference_field: Optional[str] = None
    excel_column: Optional[str] = None
    sort_order: int = 0
    show_in_list: bool = True
    show_in_form: bool = True

    def __post_init__(self) -> None:
        self.field_type = FieldType(self.field_type)
        if not self.name:
            self.name = self.field_name
        if self.field_type is FieldType.REFERENCE and not self.reference_field:
            self.reference_field = "id"

    @property
    def display_name(self) -> str:
        return self.name or self.field_name

    @classmethod
    def from_model(cls, model: Any) -> "FieldSpec":
        return cls(
            field_name=model.field_name,
            field_type=FieldType(model.field_type),
            name=model.name,
            is_required=bool(model.is_required),
            is_unique=bool(model.is_unique),
            default_value=model.default_value,
            options=list(model.options or []),
            min_value=model.min_value,
            max_value=model.max_value,
            reference_table=model.reference_table,
            reference_field=model.reference_field,
            excel_column=model.excel_column,
            sort_order=model.sort_order or 0,
            show_in_list=bool(model.show_in_list),
            show_in_form=bool(model.show_in_form),
        )


@dataclass
class DocTypeSpec:
    """Read-only snapshot of a DocType and its ordered fields."""

    name: str
    table_name: str
    fields: List[FieldSpec] = field(default_factory=list)
    id: Optional[int] = None
    slug: str = ""
    upload_deadline_hour: Optional[int] = None
    upload_deadline_minute: int = 0
    is_active: bool = True
    is_upload_active: bool = True
    is_system: bool = False

    @classmethod
    def from_model(cls, model: Any) -> "DocTypeSpec":
        return cls(
            id=model.id,
            name=model.name,
            slug=model.slug,
            table_name=model.table_name,
            fields=sorted(
                (FieldSpec.from_model(f) for f in model.fields),
                key=lambda f: f.sort_order,
            ),
            upload_deadline_hour=model.upload_deadline_hour,
            upload_deadline_minute=model.upload_deadline_minute or 0,
            is_active=bool(model.is_active),
            is_upload_active=bool(model.is_upload_active),
            is_system=bool(model.is_system),
        )

    @property
    def form_fields(self) -> List[FieldSpec]:
        return [f for f in self.fields if f.show_in_form]

    @property
    def date_field(self) -> Optional[FieldSpec]:
        """First DATE/DATETIME field; uploads replace data by this column."""
        for f in self.fields:
            if f.field_type.is_temporal:
                return f
        return None

    def get_field(self, field_name: str) -> Optional[FieldSpec]:
        for f in self.fields:
            if f.field_name == field_name:
                return f
        return None


def server_default_for(spec: FieldSpec) -> Optional[Union[str, TextClause, ColumnElement]]:
    """
    Typed DEFAULT clause for a field: BOOLEAN → 1/0, NUMBER/CURRENCY →
    numeric literal, anything else → quoted string literal.
    """
    raw = spec.default_value
    if raw is None or str(raw).strip() == "":
        return None
    raw = str(raw).strip()
    if spec.field_type is FieldType.BOOLEAN:
        # rendered as 1/0 where the dialect has no native boolean
        return true() if raw.lower() in TRUE_TOKENS else false()
    if spec.field_type is FieldType.NUMBER:
        return text(str(int(float(raw))))
    if spec.field_type is FieldType.CURRENCY:
        return text(repr(round(float(raw), 2)))
    # SQLAlchemy renders plain strings as escaped literals
    return raw


# ---------------------------------------------------------------------------
# Typed cell values
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TextValue:
    value: str

    def to_db(self) -> str:
        return self.value


@dataclass(frozen=True)
class NumberValue:
    value: float
    integer: bool = False

    def to_db(self) -> Union[int, float]:
        if self.integer:
            return int(round(self.value))
        return round(self.value, 2)


@dataclass(frozen=True)
class DateValue:
    """A calendar value normalized to local noon unless it carries a time."""

    value: datetime
    with_time: bool = False

    @property
    def day(self) -> date:
        return self.value.date()

    def to_db(self) -> Union[date, datetime]:
        if self.with_time:
            return self.value
        return self.value.date()


@dataclass(frozen=True)
class BoolValue:
    value: bool

    def to_db(self) -> bool:
        return self.value


@dataclass(frozen=True)
class RefValue:
    id: int

    def to_db(self) -> int:
        return self.id


CellValue = Union[TextValue, NumberValue, DateValue, BoolValue, RefValue]
TypedRow = Dict[str, Optional[CellValue]]


def row_to_db(row: TypedRow) -> Dict[str, Any]:
    """Plain bindable values for a parsed row."""
    return {key: (value.to_db() if value is not None else None) for key, value in row.items()}


def day_range(field_type: FieldType, start: date, end: Optional[date] = None) -> Dict[str, Any]:
    """
    Where-condition covering whole days ``start``..``end`` of a temporal
    column: plain dates for DATE, 00:00:00 to 23:59:59.999999 for DATETIME.
    """
    end = end or start
    if FieldType(field_type) is FieldType.DATETIME:
        return {
            "gte": datetime.combine(start, time.min),
            "lte": datetime.combine(end, time.max),
        }
    return {"gte": start, "lte": end}
