"""
DocForge Ingestion Pipeline — spreadsheet bytes → typed rows for a DocType.

Steps:
1. Open the workbook (openpyxl, read-only, cached values) and pick a sheet
2. Take the first non-empty row as the header; map each form field to a column
3. Coerce every cell by field type; resolve REFERENCE cells
4. Keep rows whose cells all coerced; collect "row N: <field> <reason>"
5. Reject the file when errors exceed half the data rows, or nothing parsed

Input problems (unreadable file, empty sheet, too many rows) raise
InputError. Row problems never raise; they are reported in ParseResult.
"""

from __future__ import annotations

import logging
import zipfile
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any, Dict, List, Optional, Sequence, Tuple

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from docforge.engine.errors import InputError
from docforge.ingest.coercion import CoercionError, coerce_scalar, default_for, is_blank
from docforge.ingest.references import ReferenceResolver
from docforge.schema.types import CellValue, DocTypeSpec, FieldSpec, FieldType, RefValue, TypedRow

logger = logging.getLogger("docforge.ingest.pipeline")

DEFAULT_MAX_ERRORS = 50
DEFAULT_MAX_ROWS = 50_000
OVERFLOW_NOTE = "... more errors not shown"


@dataclass
class ParseResult:
    success: bool
    rows: List[TypedRow] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    row_count: int = 0
    total_rows: int = 0
    error_count: int = 0
    sheet_name: str = ""

    @property
    def warnings(self) -> List[str]:
        """Row errors of an accepted file (those rows were skipped)."""
        return self.errors if self.success else []


def preferred_sheet_names(doctype_name: str) -> List[str]:
    return [f"Data {doctype_name}", "Template Kosong", "Data", doctype_name]


def select_sheet(sheet_names: Sequence[str], doctype_name: str) -> str:
    """Exact match in preference order, then case-insensitive, then the first sheet."""
    preferred = preferred_sheet_names(doctype_name)
    for name in preferred:
        if name in sheet_names:
            return name
    lowered = {s.lower(): s for s in reversed(list(sheet_names))}
    for name in preferred:
        if name.lower() in lowered:
            return lowered[name.lower()]
    return sheet_names[0]


def header_candidates(spec: FieldSpec) -> List[str]:
    """Header spellings tried for a field, in order."""
    candidates: List[str] = []
    if spec.excel_column:
        candidates += [spec.excel_column, spec.excel_column.lower(), spec.excel_column.upper()]
    candidates += [spec.name, spec.name.lower(), spec.name.upper()]
    candidates += [spec.field_name, spec.field_name.lower(), spec.field_name.replace("_", " ")]
    return candidates


def map_columns(headers: Sequence[Any], fields: Sequence[FieldSpec]) -> Dict[str, Optional[int]]:
    """field_name → column index (None when the sheet lacks the column)."""
    positions: Dict[str, int] = {}
    for idx, header in enumerate(headers):
        if is_blank(header):
            continue
        positions.setdefault(str(header).strip(), idx)

    mapping: Dict[str, Optional[int]] = {}
    for spec in fields:
        mapping[spec.field_name] = next(
            (positions[c] for c in header_candidates(spec) if c in positions), None
        )
    return mapping


class IngestionPipeline:
    """
    Usage:
        pipeline = IngestionPipeline(ReferenceResolver(QueryBuilder(db), config.references))
        result = pipeline.parse(content, DocTypeSpec.from_model(doctype))
        if not result.success:
            raise ValidationError("upload rejected", validation_errors=result.errors)
    """

    def __init__(
        self,
        resolver: Optional[ReferenceResolver] = None,
        max_errors: int = DEFAULT_MAX_ERRORS,
        max_rows: int = DEFAULT_MAX_ROWS,
    ):
        self._resolver = resolver
        self._max_errors = max_errors
        self._max_rows = max_rows

    # ── Workbook reading ──

    def _read_sheet(self, content: bytes, doctype: DocTypeSpec) -> Tuple[str, List[tuple]]:
        try:
            workbook = load_workbook(BytesIO(content), read_only=True, data_only=True)
        except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as e:
            raise InputError(f"could not read workbook: {e}", doctype=doctype.name) from e
        try:
            if not workbook.sheetnames:
                raise InputError("workbook has no sheets", doctype=doctype.name)
            sheet_name = select_sheet(workbook.sheetnames, doctype.name)
            rows = list(workbook[sheet_name].iter_rows(values_only=True))
        finally:
            workbook.close()
        return sheet_name, rows

    @staticmethod
    def _split_header(rows: List[tuple]) -> Tuple[int, tuple, List[Tuple[int, tuple]]]:
        """(header row number, header cells, [(row number, cells)] of non-blank data rows)."""
        header_index = next(
            (i for i, row in enumerate(rows) if any(not is_blank(c) for c in row)), None
        )
        if header_index is None:
            raise InputError("sheet is empty")
        header_number = header_index + 1
        data = [
            (header_number + offset, row)
            for offset, row in enumerate(rows[header_index + 1:], start=1)
            if any(not is_blank(c) for c in row)
        ]
        return header_number, rows[header_index], data

    # ── Cell coercion ──

    def _coerce(self, spec: FieldSpec, raw: Any) -> Optional[CellValue]:
        if is_blank(raw):
            raw = default_for(spec)
            if raw is None:
                if spec.is_required:
                    raise CoercionError("is required", strict=True)
                return None

        try:
            if spec.field_type is FieldType.REFERENCE:
                return self._resolve_reference(spec, raw)
            return coerce_scalar(spec, raw)
        except CoercionError as e:
            if spec.is_required or e.strict:
                raise
            # unparseable optional cell
            return None

    def _resolve_reference(self, spec: FieldSpec, raw: Any) -> RefValue:
        if self._resolver is None:
            raise CoercionError("cannot be resolved (no reference lookup configured)")
        found = self._resolver.resolve(spec, raw)
        if found is None:
            raise CoercionError(f'"{raw}" not found in {spec.reference_table}')
        return RefValue(found)

    # ── Main entry ──

    def parse(self, content: bytes, doctype: DocTypeSpec) -> ParseResult:
        if not content:
            raise InputError("file is empty", doctype=doctype.name)

        sheet_name, raw_rows = self._read_sheet(content, doctype)
        _, headers, data = self._split_header(raw_rows)

        total_rows = len(data)
        if total_rows > self._max_rows:
            raise InputError(
                f"file has {total_rows} rows, the limit is {self._max_rows}",
                doctype=doctype.name,
            )
        if total_rows == 0:
            return ParseResult(success=False, errors=["file contains no data rows"],
                               sheet_name=sheet_name)

        fields = doctype.form_fields
        columns = map_columns(headers, fields)
        missing = [f.display_name for f in fields if columns[f.field_name] is None]
        if missing:
            logger.debug("Sheet %s lacks columns: %s", sheet_name, ", ".join(missing))

        rows: List[TypedRow] = []
        errors: List[str] = []
        error_count = 0

        for row_number, cells in data:
            record: TypedRow = {}
            row_errors: List[str] = []
            for spec in fields:
                idx = columns[spec.field_name]
                raw = cells[idx] if idx is not None and idx < len(cells) else None
                try:
                    record[spec.field_name] = self._coerce(spec, raw)
                except CoercionError as e:
                    row_errors.append(f"row {row_number}: {spec.display_name} {e.reason}")

            if row_errors:
                error_count += len(row_errors)
                for message in row_errors:
                    if len(errors) < self._max_errors:
                        errors.append(message)
            else:
                rows.append(record)

        if error_count > self._max_errors:
            errors.append(OVERFLOW_NOTE)

        if error_count > total_rows / 2:
            logger.info(
                "Rejected %s upload: %d errors in %d rows", doctype.name, error_count, total_rows
            )
            return ParseResult(
                success=False,
                errors=[f"too many errors ({error_count} in {total_rows} rows)"] + errors,
                total_rows=total_rows,
                error_count=error_count,
                sheet_name=sheet_name,
            )

        if not rows:
            return ParseResult(
                success=False,
                errors=errors or ["no valid rows could be parsed"],
                total_rows=total_rows,
                error_count=error_count,
                sheet_name=sheet_name,
            )

        return ParseResult(
            success=True,
            rows=rows,
            errors=errors,
            row_count=len(rows),
            total_rows=total_rows,
            error_count=error_count,
            sheet_name=sheet_name,
        )
