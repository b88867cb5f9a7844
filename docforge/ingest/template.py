"""
Upload template workbooks.

``build_template`` returns an .xlsx with:
- "Template Kosong": one header row, exactly the headers the pipeline maps
- "Petunjuk": one row per column with required/optional, format and a sample
"""

from __future__ import annotations

from io import BytesIO
from typing import List, Tuple

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from docforge.schema.types import DocTypeSpec, FieldSpec, FieldType

TEMPLATE_SHEET = "Template Kosong"
GUIDE_SHEET = "Petunjuk"

HEADER_FONT = Font(name="Calibri", bold=True, size=11, color="FFFFFF")
HEADER_FILL = PatternFill(start_color="2F5496", end_color="2F5496", fill_type="solid")
HEADER_ALIGN = Alignment(horizontal="center", vertical="center", wrap_text=True)
CELL_ALIGN = Alignment(vertical="top", wrap_text=True)

GUIDE_HEADERS = ["Column", "Required", "Type", "Format", "Example"]

_SAMPLE_REFERENCES = {
    "locations": ("Location code or name", "LOCAL-BGR"),
    "categories": ("Category name", "FURNITURE"),
    "users": ("User name or email", "uploader@example.com"),
}


def column_header(spec: FieldSpec) -> str:
    return spec.excel_column or spec.display_name


def _range_note(spec: FieldSpec) -> str:
    parts = []
    if spec.min_value is not None:
        parts.append(f"min {spec.min_value:g}")
    if spec.max_value is not None:
        parts.append(f"max {spec.max_value:g}")
    return f" ({', '.join(parts)})" if parts else ""


def describe_field(spec: FieldSpec) -> Tuple[str, str]:
    """(format note, sample value) for one field."""
    field_type = spec.field_type
    if field_type is FieldType.DATE:
        return "DD/MM/YYYY or YYYY-MM-DD", "01/01/2025"
    if field_type is FieldType.DATETIME:
        return "DD/MM/YYYY HH:MM", "01/01/2025 09:00"
    if field_type is FieldType.NUMBER:
        return "Whole number" + _range_note(spec), "100"
    if field_type is FieldType.CURRENCY:
        return "Number without currency symbol" + _range_note(spec), "1000000"
    if field_type is FieldType.BOOLEAN:
        return "yes/no, true/false or 1/0", "yes"
    if field_type is FieldType.SELECT:
        if spec.options:
            return "One of: " + " / ".join(spec.options), spec.options[0]
        return "Free choice", ""
    if field_type is FieldType.REFERENCE:
        note, sample = _SAMPLE_REFERENCES.get(
            spec.reference_table or "", (f"ID or code from {spec.reference_table}", "1")
        )
        return note, sample
    return "Text", "Sample text"


def _style_header_row(ws, count: int) -> None:
    for col_idx in range(1, count + 1):
        cell = ws.cell(row=1, column=col_idx)
        cell.font = HEADER_FONT
        cell.fill = HEADER_FILL
        cell.alignment = HEADER_ALIGN
    ws.freeze_panes = "A2"


def build_template(doctype: DocTypeSpec) -> bytes:
    """The upload template for a DocType, as .xlsx bytes."""
    fields = doctype.form_fields
    headers: List[str] = [column_header(f) for f in fields]

    wb = Workbook()
    ws = wb.active
    ws.title = TEMPLATE_SHEET
    ws.append(headers)
    _style_header_row(ws, len(headers))
    for i, header in enumerate(headers, 1):
        ws.column_dimensions[get_column_letter(i)].width = max(len(header) + 2, 15)

    guide = wb.create_sheet(title=GUIDE_SHEET)
    guide.append(GUIDE_HEADERS)
    _style_header_row(guide, len(GUIDE_HEADERS))
    for row_idx, spec in enumerate(fields, 2):
        note, sample = describe_field(spec)
        values = [
            column_header(spec),
            "Required" if spec.is_required else "Optional",
            spec.field_type.value,
            note,
            sample,
        ]
        for col_idx, value in enumerate(values, 1):
            guide.cell(row=row_idx, column=col_idx, value=value).alignment = CELL_ALIGN
    for i, width in enumerate([24, 10, 12, 40, 20], 1):
        guide.column_dimensions[get_column_letter(i)].width = width

    buffer = BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def template_filename(doctype: DocTypeSpec) -> str:
    return f"template_upload_{doctype.slug or doctype.table_name}.xlsx"
