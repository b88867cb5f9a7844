"""
Read side of a DocType: paginated, date-filtered listing of its rows.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import select

from docforge.db.models import DocType
from docforge.engine.context import CallerContext, EngineContext
from docforge.engine.errors import AuthorizationError, NotFoundError, ValidationError
from docforge.ingest.coercion import CoercionError, coerce_date, coerce_scalar
from docforge.query.builder import QueryBuilder
from docforge.schema.types import DocTypeSpec, FieldType, SYSTEM_COLUMNS, day_range
from docforge.security.gate import UploadGate

logger = logging.getLogger("docforge.services.data")

MAX_PAGE_SIZE = 100


@dataclass
class Page:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    page: int = 1
    limit: int = 50
    total: int = 0
    total_pages: int = 0

    def to_dict(self) -> dict:
        return {
            "rows": self.rows,
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "total_pages": self.total_pages,
        }


class DataService:
    def __init__(self, ctx: EngineContext):
        self._ctx = ctx
        self._gate = UploadGate(ctx)
        self._query = QueryBuilder(ctx.database)

    def _load(self, slug: str) -> DocTypeSpec:
        with self._ctx.database.session_scope() as session:
            model = session.scalars(select(DocType).where(DocType.slug == slug)).first()
            if model is None or not model.is_active:
                raise NotFoundError(f"DocType '{slug}' not found", doctype=slug)
            return DocTypeSpec.from_model(model)

    def _filter_value(self, doctype: DocTypeSpec, name: str, value: Any) -> Any:
        if name in SYSTEM_COLUMNS:
            return value
        spec = doctype.get_field(name)
        if spec is None:
            raise ValidationError(
                f"'{name}' is not a field of {doctype.name}",
                doctype=doctype.slug,
                field=name,
            )
        if value is None or spec.field_type is FieldType.REFERENCE:
            return value
        try:
            if spec.field_type.is_temporal:
                return day_range(spec.field_type, coerce_date(value, spec.field_type).day)
            return coerce_scalar(spec, value).to_db()
        except CoercionError as e:
            raise ValidationError(
                f"filter {spec.display_name} {e.reason}",
                doctype=doctype.slug,
                field=name,
            ) from e

    def list_rows(
        self,
        caller: CallerContext,
        slug: str,
        page: int = 1,
        limit: int = 50,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> Page:
        """
        One page of rows, newest first by the DocType's date field.

        ``start_date``/``end_date`` bound the date field by whole days;
        ``filters`` are equality matches coerced to each field's type
        (whole-day matches for DATE/DATETIME fields).
        """
        doctype = self._load(slug)
        if not self._gate.can_view(caller, doctype.id):
            raise AuthorizationError(
                f"You are not allowed to view '{doctype.name}'",
                doctype=slug,
                user_id=caller.user_id,
                required_capability="can_view",
            )

        page = max(int(page), 1)
        limit = min(max(int(limit), 1), MAX_PAGE_SIZE)

        where: Dict[str, Any] = {
            name: self._filter_value(doctype, name, value)
            for name, value in (filters or {}).items()
        }

        date_field = doctype.date_field
        if date_field is not None and (start_date or end_date):
            bounds = day_range(
                date_field.field_type,
                start_date or end_date,
                end_date or start_date,
            )
            if start_date is None:
                bounds.pop("gte")
            if end_date is None:
                bounds.pop("lte")
            where[date_field.field_name] = bounds

        order_by = [("id", "desc")]
        if date_field is not None:
            order_by.insert(0, (date_field.field_name, "desc"))

        total = self._query.count(doctype.table_name, where)
        rows = self._query.find_many(
            doctype.table_name,
            where=where,
            order_by=order_by,
            limit=limit,
            offset=(page - 1) * limit,
        )
        logger.debug("Listed %d/%d rows of %s", len(rows), total, doctype.table_name)
        return Page(
            rows=rows,
            page=page,
            limit=limit,
            total=total,
            total_pages=math.ceil(total / limit) if total else 0,
        )
