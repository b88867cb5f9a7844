"""Unit tests for docforge.security.gate — UploadGate decisions."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from docforge.db.models import DocTypeField
from docforge.engine.context import CallerContext
from docforge.security.gate import UploadGate

from conftest import ADMIN_USER, SALES_FIELDS, UPLOADER_ROLE


@pytest.fixture
def gate(ctx):
    return UploadGate(ctx)


class TestDeadline:
    def test_before_deadline_uses_context_clock(self, gate, sales, uploader):
        decision = gate.can_upload_now(uploader, "daily-sales")
        assert decision.allowed
        assert decision.deadline == "09:00 WIB"
        assert decision.doctype.id == sales.id

    def test_one_minute_before(self, gate, sales, uploader):
        assert gate.can_upload_now(uploader, "daily-sales", now=datetime(2025, 1, 15, 8, 59)).allowed

    def test_at_deadline_denied(self, gate, sales, uploader):
        decision = gate.can_upload_now(uploader, "daily-sales", now=datetime(2025, 1, 15, 9, 0))
        assert decision.allowed is False
        assert "09:00 WIB" in decision.message
        assert decision.deadline == "09:00 WIB"

    def test_after_deadline_message(self, gate, sales, uploader):
        decision = gate.can_upload_now(uploader, "daily-sales", now=datetime(2025, 1, 15, 9, 1))
        assert decision.allowed is False
        assert decision.message == (
            "The upload deadline for 'Daily Sales' is 09:00 WIB. It is now 09:01 WIB."
        )

    def test_aware_time_converted_to_business_zone(self, gate, sales, uploader):
        # 02:01 UTC is 09:01 in Jakarta
        now = datetime(2025, 1, 15, 2, 1, tzinfo=timezone.utc)
        assert gate.can_upload_now(uploader, "daily-sales", now=now).allowed is False
        now = datetime(2025, 1, 15, 1, 59, tzinfo=timezone.utc)
        assert gate.can_upload_now(uploader, "daily-sales", now=now).allowed is True

    def test_deadline_minutes(self, gate, registry, sales, uploader):
        registry.update_doctype(sales.id, {"upload_deadline_minute": 30})
        assert gate.can_upload_now(uploader, "daily-sales", now=datetime(2025, 1, 15, 9, 29)).allowed
        decision = gate.can_upload_now(uploader, "daily-sales", now=datetime(2025, 1, 15, 9, 30))
        assert decision.allowed is False
        assert decision.deadline == "09:30 WIB"

    def test_admin_bypasses(self, gate, sales, admin):
        decision = gate.can_upload_now(admin, "daily-sales", now=datetime(2025, 1, 15, 23, 0))
        assert decision.allowed
        assert decision.message == "Admin bypass"

    def test_role_bypass(self, gate, sales, late_uploader):
        decision = gate.can_upload_now(late_uploader, "daily-sales", now=datetime(2025, 1, 15, 23, 0))
        assert decision.allowed
        assert decision.message == "Role bypasses the deadline"

    def test_no_deadline(self, gate, registry, sales, uploader):
        registry.update_doctype(sales.id, {"upload_deadline_hour": None})
        decision = gate.can_upload_now(uploader, "daily-sales", now=datetime(2025, 1, 15, 23, 59))
        assert decision.allowed
        assert decision.deadline is None


class TestDenials:
    def test_unknown_doctype(self, gate, uploader):
        decision = gate.can_upload_now(uploader, "nope")
        assert decision.allowed is False
        assert "not found" in decision.message

    def test_inactive_doctype(self, gate, registry, sales, admin):
        registry.update_doctype(sales.id, {"is_active": False})
        decision = gate.can_upload_now(admin, "daily-sales")
        assert decision.allowed is False
        assert "not active" in decision.message

    def test_uploads_disabled(self, gate, registry, sales, admin):
        registry.update_doctype(sales.id, {"is_upload_active": False})
        decision = gate.can_upload_now(admin, "daily-sales")
        assert decision.allowed is False
        assert "disabled" in decision.message

    def test_view_only_role(self, gate, sales, viewer):
        decision = gate.can_upload_now(viewer, "daily-sales")
        assert decision.allowed is False
        assert decision.message == "You are not allowed to upload 'Daily Sales'"

    def test_no_roles(self, gate, sales, nobody):
        assert gate.can_upload_now(nobody, "daily-sales").allowed is False

    def test_admin_without_upload_role_denied(self, gate, registry, sales):
        registry.replace_permissions(sales.id, [{"role_id": UPLOADER_ROLE, "can_upload": True}])
        admin = CallerContext(user_id=ADMIN_USER)
        assert gate.can_upload_now(admin, "daily-sales").allowed is False

    def test_caller_supplied_roles(self, gate, sales):
        caller = CallerContext(user_id=99, role_ids=frozenset({UPLOADER_ROLE}))
        assert gate.can_upload_now(caller, "daily-sales").allowed


class TestListing:
    def test_uploadable_for_uploader(self, gate, registry, sales, uploader):
        registry.create_doctype({
            "name": "Stock Count",
            "fields": [{"name": "Date", "field_name": "count_date", "field_type": "DATE"}],
        })
        targets = gate.uploadable_doctypes(uploader)
        assert [t.slug for t in targets] == ["daily-sales"]
        assert targets[0].deadline == "09:00 WIB"

    def test_uploadable_for_admin_lists_everything_active(self, gate, registry, sales, admin):
        other = registry.create_doctype({"name": "Stock Count", "fields": SALES_FIELDS[:1]})
        registry.create_doctype({"name": "Archive", "fields": SALES_FIELDS[:1]})
        registry.update_doctype(other.id, {"is_upload_active": False})
        assert [t.name for t in gate.uploadable_doctypes(admin)] == ["Archive", "Daily Sales"]

    def test_uploadable_without_roles(self, gate, sales, nobody, viewer):
        assert gate.uploadable_doctypes(nobody) == []
        assert gate.uploadable_doctypes(viewer) == []

    def test_can_view(self, gate, sales, viewer, nobody, admin, late_uploader):
        assert gate.can_view(viewer, sales.id)
        assert gate.can_view(admin, sales.id)
        assert not gate.can_view(nobody, sales.id)
        assert not gate.can_view(late_uploader, sales.id)

    def test_viewable_for_viewer(self, gate, registry, sales, viewer):
        registry.create_doctype({"name": "Stock Count", "fields": SALES_FIELDS[:1]})
        targets = gate.viewable_doctypes(viewer)
        assert [t.slug for t in targets] == ["daily-sales"]
        assert targets[0].table_name == "doc_daily_sales"
        assert [f.field_name for f in targets[0].fields] == [f["field_name"] for f in SALES_FIELDS]

    def test_viewable_for_admin_skips_inactive(self, gate, registry, sales, admin):
        registry.create_doctype({"name": "Archive", "fields": SALES_FIELDS[:1]})
        other = registry.create_doctype({"name": "Stock Count", "fields": SALES_FIELDS[:1]})
        registry.update_doctype(other.id, {"is_active": False})
        assert [t.name for t in gate.viewable_doctypes(admin)] == ["Archive", "Daily Sales"]

    def test_viewable_without_view_grant(self, gate, sales, nobody, late_uploader):
        assert gate.viewable_doctypes(nobody) == []
        assert gate.viewable_doctypes(late_uploader) == []

    def test_viewable_list_fields_in_sort_order(self, database, gate, registry, sales, viewer):
        def field_id(name):
            with database.session_scope() as session:
                return session.scalars(
                    select(DocTypeField.id).where(
                        DocTypeField.doctype_id == sales.id, DocTypeField.field_name == name
                    )
                ).one()

        registry.update_field(sales.id, field_id("qty"), {"show_in_list": False})
        registry.update_field(sales.id, field_id("notes"), {"sort_order": -1})
        names = [f.field_name for f in gate.viewable_doctypes(viewer)[0].fields]
        assert names[0] == "notes"
        assert "qty" not in names
        assert len(names) == len(SALES_FIELDS) - 1
