"""
Upload orchestration: gate → limits → parse → replace-by-date in one transaction.

Each upload replaces, for every distinct day present in the file's first
DATE/DATETIME field, that day's existing rows. The delete and all insert
batches share one transaction, so a failure leaves the table untouched.

Two uploads covering the same days are not serialized against each other;
running them concurrently can interleave their deletes and inserts.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from docforge.engine.context import CallerContext, EngineContext
from docforge.engine.errors import AuthorizationError, InputError, ValidationError
from docforge.engine.logging import log, log_upload
from docforge.ingest.pipeline import IngestionPipeline
from docforge.ingest.references import ReferenceResolver
from docforge.query.builder import QueryBuilder, chunked
from docforge.schema.types import DocTypeSpec, TypedRow, day_range, row_to_db
from docforge.security.gate import UploadGate

logger = logging.getLogger("docforge.services.uploads")

ALLOWED_EXTENSIONS = (".xlsx", ".xlsm")


@dataclass
class UploadResult:
    doctype: str
    file_name: str
    total_rows: int
    deleted_rows: int
    inserted_rows: int
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "doctype": self.doctype,
            "file_name": self.file_name,
            "total_rows": self.total_rows,
            "deleted_rows": self.deleted_rows,
            "inserted_rows": self.inserted_rows,
            "warnings": list(self.warnings),
        }


class UploadService:
    """
    Usage:
        service = UploadService(ctx)
        result = service.upload(caller, "daily-sales", "sales.xlsx", content)
    """

    def __init__(self, ctx: EngineContext, pipeline: Optional[IngestionPipeline] = None):
        self._ctx = ctx
        self._gate = UploadGate(ctx)
        self._query = QueryBuilder(ctx.database)
        uploads = ctx.config.uploads
        self._batch_size = uploads.batch_size
        self._max_bytes = uploads.max_file_size_bytes
        self._pipeline = pipeline or IngestionPipeline(
            ReferenceResolver(self._query, ctx.config.references),
            max_errors=uploads.max_errors,
            max_rows=uploads.max_rows,
        )

    def _check_file(self, file_name: str, content: bytes, doctype: DocTypeSpec) -> None:
        if not file_name.lower().endswith(ALLOWED_EXTENSIONS):
            raise InputError(
                f"'{file_name}' is not an Excel workbook (.xlsx)",
                doctype=doctype.name,
                file_name=file_name,
            )
        if not content:
            raise InputError("file is empty", doctype=doctype.name, file_name=file_name)
        if len(content) > self._max_bytes:
            raise InputError(
                f"file is larger than {self._ctx.config.uploads.max_file_size_mb} MB",
                doctype=doctype.name,
                file_name=file_name,
            )

    def upload(
        self,
        caller: CallerContext,
        slug: str,
        file_name: str,
        content: bytes,
        now: Optional[datetime] = None,
    ) -> UploadResult:
        started = time.perf_counter()

        decision = self._gate.can_upload_now(caller, slug, now=now)
        if not decision.allowed:
            raise AuthorizationError(
                decision.message,
                doctype=slug,
                user_id=caller.user_id,
                required_capability="can_upload",
                deadline=decision.deadline,
            )
        doctype = decision.doctype

        self._check_file(file_name, content, doctype)

        parsed = self._pipeline.parse(content, doctype)
        if not parsed.success:
            raise ValidationError(
                f"'{file_name}' was rejected",
                doctype=doctype.name,
                user_id=caller.user_id,
                file_name=file_name,
                validation_errors=parsed.errors,
            )

        with self._ctx.database.begin() as conn:
            tx = self._query.bind(conn)
            deleted = self._delete_affected_range(tx, doctype, parsed.rows)
            inserted = self._insert_batches(tx, doctype, parsed.rows, caller.user_id)

        duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Upload %s → %s: %d deleted, %d inserted, %d warnings",
            file_name, doctype.table_name, deleted, inserted, len(parsed.warnings),
        )
        log(log_upload(
            doctype.slug, caller.user_id, file_name, parsed.total_rows,
            deleted, inserted, duration_ms, warnings=len(parsed.warnings),
        ))
        return UploadResult(
            doctype=doctype.slug,
            file_name=file_name,
            total_rows=parsed.total_rows,
            deleted_rows=deleted,
            inserted_rows=inserted,
            warnings=list(parsed.warnings),
        )

    def _delete_affected_range(
        self, tx: QueryBuilder, doctype: DocTypeSpec, rows: Sequence[TypedRow]
    ) -> int:
        """Delete existing rows for every day present in the upload."""
        date_field = doctype.date_field
        if date_field is None:
            return 0
        days = sorted({
            row[date_field.field_name].day
            for row in rows
            if row.get(date_field.field_name) is not None
        })
        deleted = 0
        for day in days:
            deleted += tx.delete_many(
                doctype.table_name,
                {date_field.field_name: day_range(date_field.field_type, day)},
            )
        return deleted

    def _insert_batches(
        self,
        tx: QueryBuilder,
        doctype: DocTypeSpec,
        rows: Sequence[TypedRow],
        user_id: int,
    ) -> int:
        inserted = 0
        for batch in chunked(rows, self._batch_size):
            payload = [
                {**row_to_db(row), "created_by": user_id, "updated_by": user_id}
                for row in batch
            ]
            inserted += tx.insert_many(doctype.table_name, payload)
        return inserted
