"""Unit tests for docforge.ingest.pipeline — workbook parsing into typed rows."""

from datetime import date
from io import BytesIO

import pytest
from openpyxl import Workbook

from docforge.engine.errors import InputError
from docforge.ingest.pipeline import (
    OVERFLOW_NOTE,
    IngestionPipeline,
    header_candidates,
    map_columns,
    select_sheet,
)
from docforge.ingest.references import ReferenceResolver
from docforge.query.builder import QueryBuilder
from docforge.schema.types import DocTypeSpec, FieldSpec, FieldType

HEADERS = ["Date", "Amount", "Qty", "Channel", "Promo", "Notes"]


def _doctype():
    return DocTypeSpec(
        name="Daily Sales",
        table_name="doc_daily_sales",
        slug="daily-sales",
        fields=[
            FieldSpec("sale_date", FieldType.DATE, name="Date", is_required=True),
            FieldSpec("amount", FieldType.CURRENCY, name="Amount", min_value=0),
            FieldSpec("qty", FieldType.NUMBER, name="Qty"),
            FieldSpec(
                "channel", FieldType.SELECT, name="Channel",
                options=["Online", "Offline"], default_value="Offline",
            ),
            FieldSpec("is_promo", FieldType.BOOLEAN, name="Promo"),
            FieldSpec("notes", FieldType.TEXT, name="Notes"),
        ],
    )


def _good(day=15):
    return ["%02d/01/2025" % day, 1000, 2, "Online", "ya", "ok"]


class TestHelpers:
    def test_select_sheet_preference(self):
        assert select_sheet(["Petunjuk", "Data Daily Sales", "Data"], "Daily Sales") == "Data Daily Sales"
        assert select_sheet(["Petunjuk", "Template Kosong"], "Daily Sales") == "Template Kosong"

    def test_select_sheet_case_insensitive_then_first(self):
        assert select_sheet(["Sheet1", "data"], "Daily Sales") == "data"
        assert select_sheet(["Sheet1", "Other"], "Daily Sales") == "Sheet1"

    def test_header_candidates(self):
        spec = FieldSpec("sale_date", FieldType.DATE, name="Date", excel_column="Tanggal")
        candidates = header_candidates(spec)
        assert candidates[0] == "Tanggal"
        assert "date" in candidates
        assert "sale date" in candidates

    def test_map_columns(self):
        fields = _doctype().fields
        mapping = map_columns(["notes", "DATE", None, "Amount"], fields)
        assert mapping["sale_date"] == 1
        assert mapping["amount"] == 3
        assert mapping["notes"] == 0
        assert mapping["qty"] is None


class TestParse:
    def setup_method(self):
        self.pipeline = IngestionPipeline()
        self.doctype = _doctype()

    def test_all_good(self, workbook):
        result = self.pipeline.parse(workbook(HEADERS, [_good(d) for d in (14, 15)]), self.doctype)
        assert result.success
        assert result.row_count == 2
        assert result.total_rows == 2
        assert result.errors == []
        row = result.rows[0]
        assert row["sale_date"].to_db() == date(2025, 1, 14)
        assert row["amount"].to_db() == 1000
        assert row["channel"].to_db() == "Online"
        assert row["is_promo"].to_db() is True

    def test_native_date_cells(self, workbook):
        content = workbook(HEADERS, [[date(2025, 1, 15), 10, 1, "Offline", "no", ""]])
        result = self.pipeline.parse(content, self.doctype)
        assert result.rows[0]["sale_date"].to_db() == date(2025, 1, 15)

    def test_majority_bad_rejected(self, workbook):
        rows = [_good() for _ in range(4)] + [["15/01/2025", -5, 1, "Online", "ya", ""]] * 6
        result = self.pipeline.parse(workbook(HEADERS, rows), self.doctype)
        assert result.success is False
        assert result.errors[0] == "too many errors (6 in 10 rows)"
        assert result.rows == []
        assert result.warnings == []

    def test_majority_blank_required_rejected(self, workbook):
        rows = [[None, 1000, 2, "Online", "ya", "no date"] for _ in range(6)]
        rows += [_good() for _ in range(4)]
        result = self.pipeline.parse(workbook(HEADERS, rows), self.doctype)
        assert result.success is False
        assert result.rows == []
        assert result.errors[0] == "too many errors (6 in 10 rows)"
        assert result.errors[1:] == [f"row {n}: Date is required" for n in range(2, 8)]

    def test_minority_bad_accepted_with_row_numbers(self, workbook):
        rows = [_good() for _ in range(100)]
        for i in range(10):
            rows[i * 10] = ["15/01/2025", -1, 1, "Online", "ya", ""]
        result = self.pipeline.parse(workbook(HEADERS, rows), self.doctype)
        assert result.success
        assert result.row_count == 90
        assert result.error_count == 10
        assert result.errors[0] == "row 2: Amount must be at least 0"
        assert result.errors[1] == "row 12: Amount must be at least 0"
        assert result.warnings == result.errors

    def test_exactly_half_is_accepted(self, workbook):
        rows = [_good(), ["15/01/2025", -1, 1, "Online", "ya", ""]]
        assert self.pipeline.parse(workbook(HEADERS, rows), self.doctype).success

    def test_default_applies_to_blank_cell(self, workbook):
        result = self.pipeline.parse(
            workbook(HEADERS, [["15/01/2025", 1, 1, None, None, None]]), self.doctype
        )
        row = result.rows[0]
        assert row["channel"].to_db() == "Offline"
        assert row["is_promo"] is None
        assert row["notes"] is None

    def test_missing_column_uses_default(self, workbook):
        result = self.pipeline.parse(workbook(["Date"], [["15/01/2025"]]), self.doctype)
        assert result.success
        assert result.rows[0]["channel"].to_db() == "Offline"
        assert result.rows[0]["amount"] is None

    def test_required_blank(self, workbook):
        rows = [_good(), _good(), [None, 5, 1, "Online", "ya", "x"]]
        result = self.pipeline.parse(workbook(HEADERS, rows), self.doctype)
        assert result.success
        assert result.errors == ["row 4: Date is required"]

    def test_unparseable_optional_becomes_none(self, workbook):
        result = self.pipeline.parse(
            workbook(HEADERS, [["15/01/2025", "n/a", "lots", "Online", "maybe", "x"]]),
            self.doctype,
        )
        assert result.success
        row = result.rows[0]
        assert row["amount"] is None
        assert row["qty"] is None
        assert row["is_promo"] is None

    def test_strict_error_on_optional_field(self, workbook):
        rows = [_good(), _good(), ["15/01/2025", 1, 1, "Phone", "ya", "x"]]
        result = self.pipeline.parse(workbook(HEADERS, rows), self.doctype)
        assert result.errors == ["row 4: Channel must be one of: Online, Offline"]

    def test_blank_rows_skipped_but_numbering_kept(self, workbook):
        rows = [_good(), [None] * 6, ["15/01/2025", -1, 1, "Online", "ya", ""], _good(), _good()]
        result = self.pipeline.parse(workbook(HEADERS, rows), self.doctype)
        assert result.total_rows == 4
        assert result.errors == ["row 4: Amount must be at least 0"]

    def test_headers_only(self, workbook):
        result = self.pipeline.parse(workbook(HEADERS, []), self.doctype)
        assert result.success is False
        assert result.errors == ["file contains no data rows"]

    def test_empty_sheet(self):
        wb = Workbook()
        buffer = BytesIO()
        wb.save(buffer)
        with pytest.raises(InputError, match="sheet is empty"):
            self.pipeline.parse(buffer.getvalue(), self.doctype)

    def test_empty_bytes(self):
        with pytest.raises(InputError, match="file is empty"):
            self.pipeline.parse(b"", self.doctype)

    def test_garbage_bytes(self):
        with pytest.raises(InputError, match="could not read workbook"):
            self.pipeline.parse(b"this is not a spreadsheet", self.doctype)

    def test_max_rows(self, workbook):
        pipeline = IngestionPipeline(max_rows=3)
        with pytest.raises(InputError, match="limit is 3"):
            pipeline.parse(workbook(HEADERS, [_good() for _ in range(4)]), self.doctype)

    def test_error_overflow(self, workbook):
        rows = [["15/01/2025", -1, 1, "Online", "ya", ""] for _ in range(60)]
        result = self.pipeline.parse(workbook(HEADERS, rows), self.doctype)
        assert result.success is False
        assert len(result.errors) == 52
        assert result.errors[0] == "too many errors (60 in 60 rows)"
        assert result.errors[-1] == OVERFLOW_NOTE
        assert result.error_count == 60

    def test_picks_preferred_sheet(self):
        wb = Workbook()
        wb.active.title = "Petunjuk"
        wb.active.append(["Column", "Required"])
        data = wb.create_sheet(title="Data")
        data.append(HEADERS)
        data.append(_good())
        buffer = BytesIO()
        wb.save(buffer)
        result = self.pipeline.parse(buffer.getvalue(), self.doctype)
        assert result.success
        assert result.sheet_name == "Data"
        assert result.row_count == 1

    def test_hidden_form_fields_not_parsed(self, workbook):
        doctype = _doctype()
        doctype.fields[5].show_in_form = False
        result = self.pipeline.parse(workbook(HEADERS, [_good()]), doctype)
        assert "notes" not in result.rows[0]


class TestReferences:
    def setup_method(self):
        self.doctype = DocTypeSpec(
            name="Visits",
            table_name="doc_visits",
            fields=[
                FieldSpec("location_id", FieldType.REFERENCE, name="Location",
                          reference_table="locations", is_required=True),
                FieldSpec("category_id", FieldType.REFERENCE, name="Category",
                          reference_table="categories"),
            ],
        )

    def _pipeline(self, database, config):
        return IngestionPipeline(ReferenceResolver(QueryBuilder(database), config.references))

    def test_resolves_code_name_and_id(self, database, config, workbook):
        rows = [["LOCAL-JKT", "FOOD"], ["Bogor", "furniture"], [2, "2"], ["local-bgr", None]]
        result = self._pipeline(database, config).parse(
            workbook(["Location", "Category"], rows), self.doctype
        )
        assert result.success, result.errors
        assert [r["location_id"].to_db() for r in result.rows] == [2, 1, 2, 1]
        assert result.rows[0]["category_id"].to_db() == 3
        assert result.rows[1]["category_id"].to_db() == 1
        assert result.rows[2]["category_id"].to_db() == 2
        assert result.rows[3]["category_id"] is None

    def test_required_reference_not_found(self, database, config, workbook):
        rows = [["LOCAL-JKT", None], ["LOCAL-JKT", None], ["Surabaya", None]]
        result = self._pipeline(database, config).parse(
            workbook(["Location", "Category"], rows), self.doctype
        )
        assert result.errors == ['row 4: Location "Surabaya" not found in locations']

    def test_optional_reference_not_found_is_null(self, database, config, workbook):
        result = self._pipeline(database, config).parse(
            workbook(["Location", "Category"], [["LOCAL-JKT", "Toys"]]), self.doctype
        )
        assert result.success
        assert result.rows[0]["category_id"] is None

    def test_without_resolver(self, workbook):
        result = IngestionPipeline().parse(
            workbook(["Location"], [["LOCAL-JKT"]]), self.doctype
        )
        assert result.success is False
        assert "no reference lookup configured" in result.errors[-1]
