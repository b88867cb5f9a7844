"""Unit tests for docforge.ingest.coercion — per-type cell coercion."""

from datetime import date, datetime

import pytest

from docforge.ingest.coercion import (
    CoercionError,
    coerce_boolean,
    coerce_date,
    coerce_number,
    coerce_scalar,
    coerce_select,
    coerce_text,
    default_for,
    from_excel_serial,
    is_blank,
)
from docforge.schema.types import FieldSpec, FieldType


class TestExcelSerial:
    def test_modern_serial(self):
        assert from_excel_serial(44927).date() == date(2023, 1, 1)

    def test_first_day(self):
        assert from_excel_serial(1).date() == date(1900, 1, 1)

    def test_after_phantom_leap_day(self):
        assert from_excel_serial(61).date() == date(1900, 3, 1)

    def test_fraction_is_time_of_day(self):
        assert from_excel_serial(44927.5) == datetime(2023, 1, 1, 12, 0)

    def test_out_of_range(self):
        with pytest.raises(CoercionError):
            from_excel_serial(-1)


class TestCoerceDate:
    def test_dmy(self):
        assert coerce_date("15/01/2025").day == date(2025, 1, 15)

    def test_dmy_not_mdy(self):
        assert coerce_date("02/03/2025").day == date(2025, 3, 2)

    def test_iso(self):
        assert coerce_date("2025-01-15").day == date(2025, 1, 15)

    def test_serial_cell(self):
        assert coerce_date(44927).value == datetime(2023, 1, 1, 12, 0)
        assert coerce_date(44927.0).day == date(2023, 1, 1)

    @pytest.mark.parametrize("raw", ["2023", "44927", " 45000.5 "])
    def test_digit_text_is_not_a_serial(self, raw):
        with pytest.raises(CoercionError, match="is not a valid date"):
            coerce_date(raw)

    def test_native_values(self):
        assert coerce_date(date(2025, 1, 15)).day == date(2025, 1, 15)
        assert coerce_date(datetime(2025, 1, 15, 0, 0)).day == date(2025, 1, 15)

    def test_date_pinned_to_noon(self):
        value = coerce_date("15/01/2025")
        assert value.value == datetime(2025, 1, 15, 12, 0)
        assert value.to_db() == date(2025, 1, 15)

    def test_datetime_keeps_time(self):
        value = coerce_date("15/01/2025 08:30", FieldType.DATETIME)
        assert value.to_db() == datetime(2025, 1, 15, 8, 30)

    def test_datetime_without_time_is_noon(self):
        assert coerce_date("15/01/2025", FieldType.DATETIME).to_db() == datetime(2025, 1, 15, 12, 0)

    def test_aware_datetime_keeps_wall_clock(self):
        value = coerce_date("2025-01-15T23:30:00+07:00", FieldType.DATETIME)
        assert value.to_db() == datetime(2025, 1, 15, 23, 30)

    @pytest.mark.parametrize("raw", ["31/02/2025", "yesterday", True, "15-Jan"])
    def test_invalid(self, raw):
        with pytest.raises(CoercionError, match="is not a valid date"):
            coerce_date(raw)


class TestCoerceNumber:
    def setup_method(self):
        self.currency = FieldSpec("amount", FieldType.CURRENCY, min_value=0, max_value=1000)
        self.number = FieldSpec("qty", FieldType.NUMBER)

    def test_strips_currency_symbols(self):
        assert coerce_number("Rp 750", self.currency).to_db() == 750

    def test_decimal_point(self):
        assert coerce_number("12.5", self.currency).to_db() == 12.5

    def test_thousands_dots_are_not_valid(self):
        with pytest.raises(CoercionError, match="is not a valid number"):
            coerce_number("1.500.000", self.number)

    def test_number_rounds_to_int(self):
        assert coerce_number(2.6, self.number).to_db() == 3

    def test_min_is_strict(self):
        with pytest.raises(CoercionError) as exc:
            coerce_number(-1, self.currency)
        assert exc.value.reason == "must be at least 0"
        assert exc.value.strict is True

    def test_max(self):
        with pytest.raises(CoercionError, match="must be at most 1000"):
            coerce_number("1001", self.currency)

    def test_boundaries_inclusive(self):
        assert coerce_number(0, self.currency).value == 0
        assert coerce_number(1000, self.currency).value == 1000

    def test_bool_rejected(self):
        with pytest.raises(CoercionError):
            coerce_number(True, self.number)

    def test_unparseable_not_strict(self):
        with pytest.raises(CoercionError) as exc:
            coerce_number("lots", self.number)
        assert exc.value.strict is False


class TestCoerceBoolean:
    @pytest.mark.parametrize("raw", ["ya", "Yes", "TRUE", "y", "1", 1, True])
    def test_true(self, raw):
        assert coerce_boolean(raw).value is True

    @pytest.mark.parametrize("raw", ["tidak", "no", "False", "n", "0", 0, False])
    def test_false(self, raw):
        assert coerce_boolean(raw).value is False

    @pytest.mark.parametrize("raw", ["maybe", 2])
    def test_invalid(self, raw):
        with pytest.raises(CoercionError, match="yes/no"):
            coerce_boolean(raw)


class TestCoerceSelectAndText:
    def test_select_case_insensitive_returns_declared(self):
        assert coerce_select("online", ["Online", "Offline"]).value == "Online"

    def test_select_unknown_is_strict(self):
        with pytest.raises(CoercionError, match="must be one of: Online, Offline") as exc:
            coerce_select("Phone", ["Online", "Offline"])
        assert exc.value.strict

    def test_select_without_options_accepts_anything(self):
        assert coerce_select("Anything", []).value == "Anything"

    def test_text_trims_and_reads_whole_floats(self):
        assert coerce_text("  hello ").value == "hello"
        assert coerce_text(12.0).value == "12"

    def test_text_too_long(self):
        with pytest.raises(CoercionError, match="at most 255"):
            coerce_text("x" * 256)
        assert coerce_text("x" * 255).value == "x" * 255


class TestHelpers:
    def test_is_blank(self):
        assert is_blank(None)
        assert is_blank("   ")
        assert not is_blank(0)

    def test_default_for(self):
        assert default_for(FieldSpec("a", FieldType.TEXT, default_value="x")) == "x"
        assert default_for(FieldSpec("a", FieldType.TEXT, default_value="")) is None

    def test_coerce_scalar_dispatch(self):
        assert coerce_scalar(FieldSpec("d", FieldType.DATE), "15/01/2025").day == date(2025, 1, 15)
        assert coerce_scalar(FieldSpec("b", FieldType.BOOLEAN), "ya").value is True

    def test_coerce_scalar_rejects_reference(self):
        with pytest.raises(CoercionError):
            coerce_scalar(FieldSpec("r", FieldType.REFERENCE, reference_table="t"), "1")
