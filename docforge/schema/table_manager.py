"""
DocForge Table Manager — keeps each DocType's physical table in step with
its field metadata.

CREATE TABLE goes through SQLAlchemy Core; later edits go through Alembic
``Operations`` in batch mode, which issues plain ALTERs on MySQL/PostgreSQL
and copy-and-move on SQLite. Every name is sanitized before it reaches DDL.

No operation raises for a DDL failure: each returns a TableOperationResult
and the caller decides whether to compensate. Nothing is retried.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Generator, List, Optional, Sequence, Tuple

from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import (
    Column,
    DateTime,
    ForeignKeyConstraint,
    Index,
    Integer,
    MetaData,
    Table,
    func,
    inspect,
)
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from docforge.db.session import Database
from docforge.engine.errors import DocForgeError, SchemaError
from docforge.engine.logging import log, log_ddl
from docforge.schema.identifiers import SafeIdentifier, sanitize_identifier
from docforge.schema.types import (
    INDEXED_TYPES,
    FieldSpec,
    FieldType,
    column_type_for,
    server_default_for,
)

logger = logging.getLogger("docforge.schema.table_manager")


@dataclass
class TableOperationResult:
    success: bool
    message: str = ""
    error: Optional[str] = None

    def raise_for_error(self, **context) -> None:
        """Raise SchemaError carrying the driver message verbatim."""
        if not self.success:
            raise SchemaError(self.message, ddl_error=self.error, **context)


@dataclass
class ColumnInfo:
    name: str
    type: str
    nullable: bool


def fk_name(table: SafeIdentifier, column: SafeIdentifier) -> str:
    return f"fk_{table}_{column}"


def index_name(table: SafeIdentifier, column: SafeIdentifier) -> str:
    return f"idx_{table}_{column}"


def wants_index(spec: FieldSpec) -> Tuple[bool, bool]:
    """(needs an index, index is unique)."""
    if spec.is_unique:
        return True, True
    return spec.field_type in INDEXED_TYPES, False


class TableManager:
    """
    Usage:
        tm = TableManager(database)
        result = tm.create_table("doc_daily_sales", fields)
        if not result.success:
            ...
    """

    def __init__(self, database: Database):
        self._db = database

    @property
    def _recreate(self) -> str:
        return "always" if self._db.dialect_name == "sqlite" else "auto"

    @contextmanager
    def _operations(self) -> Generator[Tuple[Connection, Operations], None, None]:
        with self._db.begin() as conn:
            yield conn, Operations(MigrationContext.configure(conn))

    # ── Column building ──

    def _build_column(self, spec: FieldSpec) -> Column:
        return Column(
            sanitize_identifier(spec.field_name),
            column_type_for(spec.field_type),
            nullable=not spec.is_required,
            server_default=server_default_for(spec),
        )

    @staticmethod
    def _audit_columns() -> List[Column]:
        return [
            Column("created_at", DateTime, server_default=func.now(), nullable=False),
            Column("created_by", Integer, nullable=True),
            Column("updated_at", DateTime, server_default=func.now(), nullable=False),
            Column("updated_by", Integer, nullable=True),
        ]

    def _reference_target(
        self, conn: Connection, spec: FieldSpec
    ) -> Tuple[SafeIdentifier, SafeIdentifier]:
        if not spec.reference_table:
            raise SchemaError(
                f"REFERENCE field '{spec.field_name}' has no reference table",
                operation="reference",
            )
        ref_table = sanitize_identifier(spec.reference_table)
        ref_field = sanitize_identifier(spec.reference_field or "id")
        inspector = inspect(conn)
        if not inspector.has_table(ref_table):
            raise SchemaError(
                f"reference table '{ref_table}' does not exist",
                operation="reference",
                table_name=str(ref_table),
            )
        columns = {c["name"] for c in inspector.get_columns(ref_table)}
        if ref_field not in columns:
            raise SchemaError(
                f"reference table '{ref_table}' has no column '{ref_field}'",
                operation="reference",
                table_name=str(ref_table),
            )
        return ref_table, ref_field

    # ── Result helpers ──

    def _finish(
        self,
        operation: str,
        table: str,
        started: float,
        message: str,
        error: Optional[BaseException] = None,
    ) -> TableOperationResult:
        duration_ms = (time.perf_counter() - started) * 1000
        if error is None:
            logger.info("%s on %s: %s", operation, table, message)
            log(log_ddl(operation, table, duration_ms, True))
            return TableOperationResult(success=True, message=message)
        detail = error.message if isinstance(error, DocForgeError) else str(error)
        logger.error("%s on %s failed: %s", operation, table, detail)
        log(log_ddl(operation, table, duration_ms, False, error=detail))
        return TableOperationResult(
            success=False,
            message=f"{operation} failed for {table}",
            error=detail,
        )

    # ── Table lifecycle ──

    def create_table(self, table_name: str, fields: Sequence[FieldSpec]) -> TableOperationResult:
        """
        CREATE TABLE with id, the declared columns, the audit columns, one
        FK per REFERENCE field and the derived indexes.
        """
        started = time.perf_counter()
        table = sanitize_identifier(table_name)
        try:
            if self.table_exists(table):
                raise SchemaError(f"table '{table}' already exists", operation="create_table")

            metadata = MetaData()
            columns: List[Column] = [Column("id", Integer, primary_key=True, autoincrement=True)]
            constraints = []
            with self._db.begin() as conn:
                for spec in fields:
                    column = self._build_column(spec)
                    columns.append(column)
                    if spec.field_type is FieldType.REFERENCE:
                        ref_table, ref_field = self._reference_target(conn, spec)
                        if ref_table not in metadata.tables:
                            Table(ref_table, metadata, autoload_with=conn, resolve_fks=False)
                        constraints.append(
                            ForeignKeyConstraint(
                                [column.name],
                                [f"{ref_table}.{ref_field}"],
                                name=fk_name(table, sanitize_identifier(column.name)),
                            )
                        )
                columns.extend(self._audit_columns())

                new_table = Table(table, metadata, *columns, *constraints)
                for spec in fields:
                    needed, unique = wants_index(spec)
                    if needed:
                        col = sanitize_identifier(spec.field_name)
                        Index(index_name(table, col), new_table.c[col], unique=unique)

                new_table.create(conn)
        except (SQLAlchemyError, DocForgeError, ValueError) as e:
            return self._finish("create_table", table, started, "", error=e)
        return self._finish(
            "create_table", table, started, f"created with {len(fields)} field column(s)"
        )

    def drop_table(self, table_name: str) -> TableOperationResult:
        started = time.perf_counter()
        table = sanitize_identifier(table_name)
        try:
            if not self.table_exists(table):
                raise SchemaError(f"table '{table}' does not exist", operation="drop_table")
            with self._operations() as (_, op):
                op.drop_table(table)
        except (SQLAlchemyError, DocForgeError) as e:
            return self._finish("drop_table", table, started, "", error=e)
        return self._finish("drop_table", table, started, "dropped")

    def rename_table(self, old_name: str, new_name: str) -> TableOperationResult:
        started = time.perf_counter()
        old, new = sanitize_identifier(old_name), sanitize_identifier(new_name)
        try:
            if self.table_exists(new):
                raise SchemaError(f"table '{new}' already exists", operation="rename_table")
            with self._operations() as (_, op):
                op.rename_table(old, new)
        except (SQLAlchemyError, DocForgeError) as e:
            return self._finish("rename_table", old, started, "", error=e)
        return self._finish("rename_table", old, started, f"renamed to {new}")

    # ── Column lifecycle ──

    def add_column(self, table_name: str, field: FieldSpec) -> TableOperationResult:
        started = time.perf_counter()
        table = sanitize_identifier(table_name)
        column_name = sanitize_identifier(field.field_name)
        try:
            column = self._build_column(field)
            # batch recreate on SQLite would silently replace an existing column
            existing = {c["name"] for c in inspect(self._db.engine).get_columns(table)}
            if column_name in existing:
                raise SchemaError(
                    f"column '{column_name}' already exists on '{table}'", operation="add_column"
                )
            with self._operations() as (conn, op):
                ref = None
                if field.field_type is FieldType.REFERENCE:
                    ref = self._reference_target(conn, field)
                with op.batch_alter_table(table, recreate=self._recreate) as batch:
                    batch.add_column(column)
                    if ref is not None:
                        batch.create_foreign_key(
                            fk_name(table, column_name), ref[0], [column_name], [ref[1]]
                        )
                    needed, unique = wants_index(field)
                    if needed:
                        batch.create_index(index_name(table, column_name), [column_name], unique=unique)
        except (SQLAlchemyError, DocForgeError, KeyError, ValueError) as e:
            return self._finish("add_column", table, started, "", error=e)
        return self._finish("add_column", table, started, f"added column {column_name}")

    def alter_column(self, table_name: str, field: FieldSpec) -> TableOperationResult:
        """Change type, nullability and default of an existing column, then
        bring its index in line with is_unique / field type."""
        started = time.perf_counter()
        table = sanitize_identifier(table_name)
        column_name = sanitize_identifier(field.field_name)
        idx = index_name(table, column_name)
        try:
            existing = {c["name"]: c for c in inspect(self._db.engine).get_columns(table)}
            if column_name not in existing:
                raise SchemaError(
                    f"column '{column_name}' does not exist on '{table}'", operation="alter_column"
                )
            current_indexes = {i["name"]: i for i in inspect(self._db.engine).get_indexes(table)}
            needed, unique = wants_index(field)
            current = current_indexes.get(idx)
            index_changes = current is not None and (
                not needed or bool(current.get("unique")) != unique
            )

            if index_changes:
                self._best_effort(f"drop index {idx}", lambda op: op.drop_index(idx, table_name=table))

            with self._operations() as (_, op):
                with op.batch_alter_table(table, recreate=self._recreate) as batch:
                    batch.alter_column(
                        column_name,
                        existing_type=existing[column_name]["type"],
                        existing_nullable=existing[column_name]["nullable"],
                        type_=column_type_for(field.field_type),
                        nullable=not field.is_required,
                        server_default=server_default_for(field),
                    )
                    if needed and (current is None or index_changes):
                        batch.create_index(idx, [column_name], unique=unique)
        except (SQLAlchemyError, DocForgeError, KeyError, ValueError) as e:
            return self._finish("alter_column", table, started, "", error=e)
        return self._finish("alter_column", table, started, f"altered column {column_name}")

    def _attach_keys(
        self,
        table: SafeIdentifier,
        column: SafeIdentifier,
        fk: Optional[dict],
        idx: Optional[dict],
    ) -> None:
        """Recreate an FK and an index on ``column``, in a batch of their own."""
        if fk is None and idx is None:
            return
        with self._operations() as (_, op):
            with op.batch_alter_table(table, recreate=self._recreate) as batch:
                if fk is not None:
                    batch.create_foreign_key(
                        fk_name(table, column),
                        fk["referred_table"],
                        [column],
                        fk["referred_columns"],
                    )
                if idx is not None:
                    batch.create_index(
                        index_name(table, column), [column], unique=bool(idx.get("unique"))
                    )

    def rename_column(
        self,
        table_name: str,
        old_name: str,
        new_name: str,
        field_type: FieldType,
    ) -> TableOperationResult:
        """
        Rename a column, carrying its FK and index over to the new names.

        The rename and the re-creation of the keys run as two batches: a
        batch cannot index a column under the name it is being renamed to.
        When the second batch fails the column is renamed back.
        """
        started = time.perf_counter()
        table = sanitize_identifier(table_name)
        old, new = sanitize_identifier(old_name), sanitize_identifier(new_name)
        try:
            inspector = inspect(self._db.engine)
            existing = {c["name"] for c in inspector.get_columns(table)}
            if old not in existing:
                raise SchemaError(
                    f"column '{old}' does not exist on '{table}'", operation="rename_column"
                )
            if new in existing:
                raise SchemaError(
                    f"column '{new}' already exists on '{table}'", operation="rename_column"
                )
            fks = {fk["name"]: fk for fk in inspector.get_foreign_keys(table) if fk.get("name")}
            indexes = {i["name"]: i for i in inspector.get_indexes(table)}
            old_fk = fks.get(fk_name(table, old))
            old_idx = indexes.get(index_name(table, old))

            with self._operations() as (_, op):
                with op.batch_alter_table(table, recreate=self._recreate) as batch:
                    if old_idx is not None:
                        batch.drop_index(index_name(table, old))
                    if old_fk is not None:
                        batch.drop_constraint(fk_name(table, old), type_="foreignkey")
                    batch.alter_column(
                        old,
                        new_column_name=new,
                        existing_type=column_type_for(field_type),
                    )
            try:
                self._attach_keys(table, new, old_fk, old_idx)
            except (SQLAlchemyError, KeyError, ValueError) as e:
                logger.warning("Keys for %s.%s not recreated, renaming back: %s", table, new, e)
                self._undo_rename(table, new, old, field_type, old_fk, old_idx)
                raise
        except (SQLAlchemyError, DocForgeError, KeyError, ValueError) as e:
            return self._finish("rename_column", table, started, "", error=e)
        return self._finish("rename_column", table, started, f"renamed {old} to {new}")

    def _undo_rename(self, table, new, old, field_type, fk, idx) -> None:
        try:
            with self._operations() as (_, op):
                with op.batch_alter_table(table, recreate=self._recreate) as batch:
                    batch.alter_column(
                        new, new_column_name=old, existing_type=column_type_for(field_type)
                    )
            self._attach_keys(table, old, fk, idx)
        except (SQLAlchemyError, KeyError, ValueError) as e:
            logger.error("Could not rename %s.%s back to %s: %s", table, new, old, e)

    def drop_column(self, table_name: str, field_name: str) -> TableOperationResult:
        """
        Drop a column. Its FK and index are dropped first, best-effort, each
        in its own transaction: some engines refuse to drop a column that
        still carries either.
        """
        started = time.perf_counter()
        table = sanitize_identifier(table_name)
        column_name = sanitize_identifier(field_name)
        fk = fk_name(table, column_name)
        idx = index_name(table, column_name)

        if not self.column_exists(table, column_name):
            return self._finish(
                "drop_column", table, started, "",
                error=SchemaError(
                    f"column '{column_name}' does not exist on '{table}'",
                    operation="drop_column",
                ),
            )

        self._best_effort(
            f"drop foreign key {fk}",
            lambda op: op.drop_constraint(fk, table, type_="foreignkey"),
        )
        self._best_effort(f"drop index {idx}", lambda op: op.drop_index(idx, table_name=table))

        try:
            with self._operations() as (_, op):
                with op.batch_alter_table(table, recreate=self._recreate) as batch:
                    batch.drop_column(column_name)
        except (SQLAlchemyError, DocForgeError, KeyError) as e:
            return self._finish("drop_column", table, started, "", error=e)
        return self._finish("drop_column", table, started, f"dropped column {column_name}")

    def _best_effort(self, description: str, action) -> bool:
        try:
            with self._operations() as (_, op):
                action(op)
            return True
        except (SQLAlchemyError, NotImplementedError, KeyError, ValueError) as e:
            logger.debug("Skipped %s: %s", description, e)
            return False

    # ── Introspection ──

    def table_exists(self, table_name: str) -> bool:
        return inspect(self._db.engine).has_table(sanitize_identifier(table_name))

    def column_exists(self, table_name: str, column_name: str) -> bool:
        table = sanitize_identifier(table_name)
        if not self.table_exists(table):
            return False
        columns = inspect(self._db.engine).get_columns(table)
        return sanitize_identifier(column_name) in {c["name"] for c in columns}

    def get_table_columns(self, table_name: str) -> List[ColumnInfo]:
        table = sanitize_identifier(table_name)
        return [
            ColumnInfo(name=c["name"], type=str(c["type"]), nullable=bool(c["nullable"]))
            for c in inspect(self._db.engine).get_columns(table)
        ]
