"""
DocForge Test Suite — Shared fixtures and configuration.

Run:  pytest tests/ -v

Everything runs against in-memory SQLite (one shared connection per test)
and an in-memory role store; no Redis or PostgreSQL is needed.
"""

from __future__ import annotations

from datetime import datetime, timezone
from io import BytesIO
from typing import Any, Iterable, List, Optional, Sequence

import pytest
from openpyxl import Workbook
from sqlalchemy import text
from sqlalchemy.pool import StaticPool

# Role ids used throughout the suite
ADMIN_ROLE = 1
UPLOADER_ROLE = 2
VIEWER_ROLE = 3
LATE_ROLE = 5

ADMIN_USER = 1
UPLOADER_USER = 2
VIEWER_USER = 3
NOBODY_USER = 4
LATE_USER = 5


# ---------------------------------------------------------------------------
# Global singletons
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_config():
    """Fresh default config and no log queue for every test."""
    import docforge.engine.config as cfg_mod
    import docforge.engine.logging as log_mod

    cfg_mod._config = cfg_mod.DocForgeConfig()
    log_mod._global_queue = None
    yield
    cfg_mod._config = None
    log_mod._global_queue = None


@pytest.fixture
def config():
    from docforge.engine.config import get_config

    return get_config()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
def database():
    """In-memory SQLite with the metadata tables and three lookup tables."""
    from docforge.db.session import Database

    db = Database.from_url(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    db.create_all()
    with db.begin() as conn:
        conn.execute(text(
            "CREATE TABLE categories (id INTEGER PRIMARY KEY AUTOINCREMENT, name VARCHAR(100))"
        ))
        conn.execute(text(
            "CREATE TABLE locations (id INTEGER PRIMARY KEY AUTOINCREMENT, "
            "code VARCHAR(20), name VARCHAR(100))"
        ))
        conn.execute(text(
            "CREATE TABLE users (id INTEGER PRIMARY KEY AUTOINCREMENT, "
            "name VARCHAR(100), email VARCHAR(100))"
        ))
        conn.execute(text(
            "INSERT INTO categories (name) VALUES ('FURNITURE'), ('ELECTRONICS'), ('FOOD')"
        ))
        conn.execute(text(
            "INSERT INTO locations (code, name) VALUES "
            "('LOCAL-BGR', 'Bogor'), ('LOCAL-JKT', 'Jakarta')"
        ))
        conn.execute(text(
            "INSERT INTO users (name, email) VALUES ('Sari', 'sari@example.com')"
        ))
    yield db
    db.dispose()


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

@pytest.fixture
def permissions():
    from docforge.engine.context import StaticPermissionLookup

    return StaticPermissionLookup(
        roles={
            ADMIN_USER: [ADMIN_ROLE],
            UPLOADER_USER: [UPLOADER_ROLE],
            VIEWER_USER: [VIEWER_ROLE],
            LATE_USER: [LATE_ROLE],
        },
        capabilities={ADMIN_USER: ["manage_users"]},
    )


@pytest.fixture
def fixed_clock():
    """08:00 WIB on 2025-01-15."""
    return lambda: datetime(2025, 1, 15, 1, 0, tzinfo=timezone.utc)


@pytest.fixture
def ctx(database, permissions, config, fixed_clock):
    from docforge.engine.context import EngineContext

    return EngineContext(
        database=database, permissions=permissions, config=config, clock=fixed_clock
    )


@pytest.fixture
def admin():
    from docforge.engine.context import CallerContext

    return CallerContext(user_id=ADMIN_USER, username="admin")


@pytest.fixture
def uploader():
    from docforge.engine.context import CallerContext

    return CallerContext(user_id=UPLOADER_USER, username="uploader")


@pytest.fixture
def viewer():
    from docforge.engine.context import CallerContext

    return CallerContext(user_id=VIEWER_USER, username="viewer")


@pytest.fixture
def nobody():
    from docforge.engine.context import CallerContext

    return CallerContext(user_id=NOBODY_USER, username="nobody")


@pytest.fixture
def late_uploader():
    from docforge.engine.context import CallerContext

    return CallerContext(user_id=LATE_USER, username="late")


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

SALES_FIELDS = [
    {"name": "Date", "field_name": "sale_date", "field_type": "DATE", "is_required": True},
    {
        "name": "Location", "field_name": "location_id", "field_type": "REFERENCE",
        "is_required": True, "reference_table": "locations",
    },
    {
        "name": "Category", "field_name": "category_id", "field_type": "REFERENCE",
        "reference_table": "categories",
    },
    {"name": "Amount", "field_name": "amount", "field_type": "CURRENCY", "min_value": 0},
    {"name": "Qty", "field_name": "qty", "field_type": "NUMBER"},
    {
        "name": "Channel", "field_name": "channel", "field_type": "SELECT",
        "options": ["Online", "Offline"], "default_value": "Offline",
    },
    {"name": "Promo", "field_name": "is_promo", "field_type": "BOOLEAN", "default_value": "no"},
    {"name": "Notes", "field_name": "notes", "field_type": "TEXT"},
]

SALES_HEADERS = ["Date", "Location", "Category", "Amount", "Qty", "Channel", "Promo", "Notes"]


@pytest.fixture
def registry(ctx):
    from docforge.schema.registry import SchemaRegistry

    return SchemaRegistry(ctx)


@pytest.fixture
def sales(registry):
    """'Daily Sales' DocType with a 09:00 deadline and the usual role grants."""
    spec = registry.create_doctype(
        {"name": "Daily Sales", "upload_deadline_hour": 9, "fields": SALES_FIELDS},
        actor_id=ADMIN_USER,
    )
    registry.set_permission(spec.id, {"role_id": ADMIN_ROLE, "can_view": True, "can_upload": True})
    registry.set_permission(
        spec.id, {"role_id": UPLOADER_ROLE, "can_view": True, "can_upload": True}
    )
    registry.set_permission(spec.id, {"role_id": VIEWER_ROLE, "can_view": True})
    registry.set_permission(
        spec.id, {"role_id": LATE_ROLE, "can_upload": True, "bypass_deadline": True}
    )
    return spec


# ---------------------------------------------------------------------------
# Workbooks
# ---------------------------------------------------------------------------

def build_workbook(
    headers: Sequence[Any],
    rows: Iterable[Sequence[Any]],
    sheet_title: str = "Data",
    extra_sheets: Optional[List[str]] = None,
) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_title
    ws.append(list(headers))
    for row in rows:
        ws.append(list(row))
    for name in extra_sheets or []:
        wb.create_sheet(title=name)
    buffer = BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


@pytest.fixture
def workbook():
    return build_workbook
