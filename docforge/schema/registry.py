"""
DocForge Schema Registry — lifecycle of DocTypes, their fields and their
per-role permissions.

Metadata lives in the ORM models (``docforge.db.models``); the physical
table follows through the Table Manager. Creating a DocType or adding a
field runs as a ``SchemaSaga`` (metadata first, DDL second, metadata
compensated when the DDL fails). Removing a field or a DocType runs the
DDL first and only then deletes metadata.

Payloads are pydantic models; plain dicts are accepted and validated into
them. A payload that fails validation raises ``ValidationError`` with one
message per problem.

Usage:
    registry = SchemaRegistry(ctx)
    sales = registry.create_doctype({
        "name": "Daily Sales",
        "upload_deadline_hour": 9,
        "fields": [
            {"name": "Date", "field_name": "sale_date", "field_type": "DATE", "is_required": True},
            {"name": "Amount", "field_name": "amount", "field_type": "CURRENCY"},
        ],
    }, actor_id=1)
"""

from __future__ import annotations

import logging
import re
from typing import Annotated, Any, List, Mapping, Optional, Sequence, Type, TypeVar, Union

from pydantic import AfterValidator, BaseModel, Field, ValidationError as PydanticValidationError
from pydantic import field_validator, model_validator
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from docforge.db.models import DocType, DocTypeField, DocTypePermission
from docforge.engine.context import EngineContext
from docforge.engine.errors import NotFoundError, SchemaError, ValidationError
from docforge.engine.logging import log, log_schema_change
from docforge.schema.identifiers import MAX_IDENTIFIER_LENGTH, is_valid_field_name
from docforge.schema.saga import SchemaSaga
from docforge.schema.table_manager import TableManager, TableOperationResult
from docforge.schema.types import SYSTEM_COLUMNS, DocTypeSpec, FieldSpec, FieldType

logger = logging.getLogger("docforge.schema.registry")

TABLE_PREFIX = "doc_"

# FieldUpdate keys that change the physical column
STRUCTURAL_FIELD_KEYS = frozenset(
    {"field_name", "field_type", "is_required", "is_unique", "default_value"}
)

P = TypeVar("P", bound=BaseModel)


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

def _check_field_name(v: str) -> str:
    if not is_valid_field_name(v):
        raise ValueError(
            f"'{v}' must start with a letter or underscore, contain only letters, "
            f"digits and underscores, and be at most {MAX_IDENTIFIER_LENGTH} characters"
        )
    if v.lower() in SYSTEM_COLUMNS:
        raise ValueError(f"'{v}' is a reserved column name")
    return v


FieldName = Annotated[str, AfterValidator(_check_field_name)]


class FieldCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    field_name: FieldName
    field_type: FieldType
    is_required: bool = False
    is_unique: bool = False
    default_value: Optional[str] = None
    options: Optional[List[str]] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    reference_table: Optional[str] = None
    reference_field: Optional[str] = None
    excel_column: Optional[str] = None
    sort_order: Optional[int] = None
    show_in_list: bool = True
    show_in_form: bool = True

    @model_validator(mode="after")
    def check_type_settings(self) -> "FieldCreate":
        if self.field_type is FieldType.REFERENCE and not self.reference_table:
            raise ValueError("REFERENCE fields need a reference_table")
        if (
            self.min_value is not None
            and self.max_value is not None
            and self.min_value > self.max_value
        ):
            raise ValueError("min_value is greater than max_value")
        return self

    def to_spec(self, sort_order: int) -> FieldSpec:
        data = self.model_dump(exclude={"sort_order", "options"})
        return FieldSpec(**data, options=list(self.options or []), sort_order=sort_order)


class FieldUpdate(BaseModel):
    """Only the attributes that are set are changed."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    field_name: Optional[FieldName] = None
    field_type: Optional[FieldType] = None
    is_required: Optional[bool] = None
    is_unique: Optional[bool] = None
    default_value: Optional[str] = None
    options: Optional[List[str]] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    reference_table: Optional[str] = None
    reference_field: Optional[str] = None
    excel_column: Optional[str] = None
    sort_order: Optional[int] = None
    show_in_list: Optional[bool] = None
    show_in_form: Optional[bool] = None


class DocTypeCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    slug: Optional[str] = None
    description: Optional[str] = None
    icon: Optional[str] = None
    upload_deadline_hour: Optional[int] = Field(default=None, ge=0, le=23)
    upload_deadline_minute: int = Field(default=0, ge=0, le=59)
    is_upload_active: bool = True
    show_in_dashboard: bool = False
    dashboard_order: int = 0
    fields: List[FieldCreate] = Field(min_length=1)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v

    @model_validator(mode="after")
    def unique_field_names(self) -> "DocTypeCreate":
        seen = set()
        for f in self.fields:
            if f.field_name in seen:
                raise ValueError(f"field_name '{f.field_name}' is used twice")
            seen.add(f.field_name)
        return self


class DocTypeUpdate(BaseModel):
    """Settings only; fields are changed through add/update/remove_field."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    icon: Optional[str] = None
    upload_deadline_hour: Optional[int] = Field(default=None, ge=0, le=23)
    upload_deadline_minute: Optional[int] = Field(default=None, ge=0, le=59)
    is_upload_active: Optional[bool] = None
    show_in_dashboard: Optional[bool] = None
    dashboard_order: Optional[int] = None
    is_active: Optional[bool] = None


class PermissionSet(BaseModel):
    role_id: int
    can_view: bool = False
    can_upload: bool = False
    can_edit: bool = False
    can_delete: bool = False
    can_export: bool = False
    bypass_deadline: bool = False


def slugify(name: str) -> str:
    """"Daily Sales (GM)" → "daily-sales-gm"."""
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def table_name_for(slug: str) -> str:
    return TABLE_PREFIX + slug.replace("-", "_")


def _parse(model: Type[P], payload: Union[P, Mapping[str, Any]]) -> P:
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        messages = [
            f"{'.'.join(str(p) for p in err['loc']) or model.__name__}: {err['msg']}"
            for err in e.errors()
        ]
        raise ValidationError(
            f"invalid {model.__name__}: {'; '.join(messages)}",
            validation_errors=messages,
        ) from e


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class SchemaRegistry:
    def __init__(self, ctx: EngineContext, tables: Optional[TableManager] = None):
        self._ctx = ctx
        self._db = ctx.database
        self.tables = tables or TableManager(ctx.database)

    # ── Lookups ──

    @staticmethod
    def _doctype_row(session: Session, doctype_id: int) -> DocType:
        doctype = session.get(DocType, doctype_id)
        if doctype is None:
            raise NotFoundError(f"DocType {doctype_id} not found")
        return doctype

    @staticmethod
    def _field_row(session: Session, doctype_id: int, field_id: int) -> DocTypeField:
        row = session.get(DocTypeField, field_id)
        if row is None or row.doctype_id != doctype_id:
            raise NotFoundError(f"field {field_id} not found on DocType {doctype_id}")
        return row

    def get(self, doctype_id: int) -> DocTypeSpec:
        with self._db.session_scope() as session:
            return DocTypeSpec.from_model(self._doctype_row(session, doctype_id))

    def get_by_slug(self, slug: str) -> DocTypeSpec:
        with self._db.session_scope() as session:
            doctype = session.scalars(select(DocType).where(DocType.slug == slug)).first()
            if doctype is None:
                raise NotFoundError(f"DocType '{slug}' not found", doctype=slug)
            return DocTypeSpec.from_model(doctype)

    def list(self, include_inactive: bool = True) -> List[DocTypeSpec]:
        stmt = select(DocType).order_by(DocType.name)
        if not include_inactive:
            stmt = stmt.where(DocType.is_active.is_(True))
        with self._db.session_scope() as session:
            return [DocTypeSpec.from_model(d) for d in session.scalars(stmt)]

    # ── DocType lifecycle ──

    def create_doctype(
        self,
        payload: Union[DocTypeCreate, Mapping[str, Any]],
        actor_id: Optional[int] = None,
    ) -> DocTypeSpec:
        """
        Register a DocType and create its table.

        Rejected (ValidationError) when the slug or table name is already
        registered or the table already exists in the database. If CREATE
        TABLE fails the metadata rows are deleted again and SchemaError is
        raised with the driver message.
        """
        data = _parse(DocTypeCreate, payload)
        slug = slugify(data.slug or data.name)
        if not slug:
            raise ValidationError(f"cannot derive a slug from '{data.name}'")
        table_name = table_name_for(slug)
        if len(table_name) > MAX_IDENTIFIER_LENGTH:
            raise ValidationError(
                f"table name '{table_name}' is longer than {MAX_IDENTIFIER_LENGTH} characters",
                doctype=slug,
            )

        with self._db.session_scope() as session:
            clash = session.scalars(
                select(DocType).where(or_(DocType.slug == slug, DocType.table_name == table_name))
            ).first()
        if clash is not None:
            raise ValidationError(f"DocType with slug '{slug}' already exists", doctype=slug)
        if self.tables.table_exists(table_name):
            raise ValidationError(
                f"table '{table_name}' already exists in the database",
                doctype=slug,
                table_name=table_name,
            )

        def write() -> DocTypeSpec:
            with self._db.session_scope() as session:
                doctype = DocType(
                    name=data.name,
                    slug=slug,
                    table_name=table_name,
                    description=data.description,
                    icon=data.icon,
                    upload_deadline_hour=data.upload_deadline_hour,
                    upload_deadline_minute=data.upload_deadline_minute,
                    is_upload_active=data.is_upload_active,
                    show_in_dashboard=data.show_in_dashboard,
                    dashboard_order=data.dashboard_order,
                    is_active=True,
                    is_system=False,
                    created_by=actor_id,
                    updated_by=actor_id,
                )
                for index, f in enumerate(data.fields):
                    order = f.sort_order if f.sort_order is not None else index
                    doctype.fields.append(self._field_model(f.to_spec(order)))
                session.add(doctype)
                session.flush()
                return DocTypeSpec.from_model(doctype)

        def compensate(spec: DocTypeSpec) -> None:
            with self._db.session_scope() as session:
                session.delete(self._doctype_row(session, spec.id))

        spec = self._run_saga(
            "create_doctype",
            write,
            lambda spec: self.tables.create_table(spec.table_name, spec.fields),
            compensate,
            doctype=slug,
            table_name=table_name,
            user_id=actor_id,
        )
        logger.info("Created DocType %s (%s) with %d fields", spec.name, table_name, len(spec.fields))
        log(log_schema_change("doctype_created", slug, table_name, actor_id))
        return spec

    def update_doctype(
        self,
        doctype_id: int,
        payload: Union[DocTypeUpdate, Mapping[str, Any]],
        actor_id: Optional[int] = None,
    ) -> DocTypeSpec:
        changes = _parse(DocTypeUpdate, payload).model_dump(exclude_unset=True)
        with self._db.session_scope() as session:
            doctype = self._doctype_row(session, doctype_id)
            for key, value in changes.items():
                if key == "name" and value is not None:
                    value = value.strip()
                setattr(doctype, key, value)
            doctype.updated_by = actor_id
            session.flush()
            spec = DocTypeSpec.from_model(doctype)
        log(log_schema_change("doctype_updated", spec.slug, spec.table_name, actor_id))
        return spec

    def delete_doctype(self, doctype_id: int, actor_id: Optional[int] = None) -> None:
        """Drop the table, then the metadata (fields and permissions cascade)."""
        spec = self.get(doctype_id)
        if spec.is_system:
            raise ValidationError(
                f"system DocType '{spec.name}' cannot be deleted", doctype=spec.slug
            )
        if self.tables.table_exists(spec.table_name):
            result = self.tables.drop_table(spec.table_name)
            if not result.success:
                log(log_schema_change(
                    "ddl_failed", spec.slug, spec.table_name, actor_id,
                    success=False, error=result.error,
                ))
            result.raise_for_error(
                operation="drop_table", doctype=spec.slug, table_name=spec.table_name
            )
        else:
            logger.warning("Table %s was already missing; removing metadata only", spec.table_name)

        with self._db.session_scope() as session:
            session.delete(self._doctype_row(session, doctype_id))
        self._ctx.invalidate_permissions()
        log(log_schema_change("doctype_deleted", spec.slug, spec.table_name, actor_id))

    # ── Field lifecycle ──

    @staticmethod
    def _check_structural(doctype: DocTypeSpec, action: str) -> None:
        if doctype.is_system:
            raise ValidationError(
                f"cannot {action} system DocType '{doctype.name}'", doctype=doctype.slug
            )

    @staticmethod
    def _field_model(spec: FieldSpec) -> DocTypeField:
        return DocTypeField(
            name=spec.name,
            field_name=spec.field_name,
            field_type=spec.field_type.value,
            is_required=spec.is_required,
            is_unique=spec.is_unique,
            default_value=spec.default_value,
            options=list(spec.options) or None,
            min_value=spec.min_value,
            max_value=spec.max_value,
            reference_table=spec.reference_table,
            reference_field=spec.reference_field,
            excel_column=spec.excel_column,
            sort_order=spec.sort_order,
            show_in_list=spec.show_in_list,
            show_in_form=spec.show_in_form,
        )

    def add_field(
        self,
        doctype_id: int,
        payload: Union[FieldCreate, Mapping[str, Any]],
        actor_id: Optional[int] = None,
    ) -> FieldSpec:
        """Insert the field row, ADD COLUMN, and delete the row again if the DDL fails."""
        data = _parse(FieldCreate, payload)
        doctype = self.get(doctype_id)
        self._check_structural(doctype, "add fields to")
        if doctype.get_field(data.field_name) is not None:
            raise ValidationError(
                f"field '{data.field_name}' already exists on {doctype.name}",
                doctype=doctype.slug,
            )

        def write() -> DocTypeField:
            with self._db.session_scope() as session:
                order = data.sort_order
                if order is None:
                    current = session.scalar(
                        select(func.max(DocTypeField.sort_order)).where(
                            DocTypeField.doctype_id == doctype_id
                        )
                    )
                    order = (current or 0) + 1
                row = self._field_model(data.to_spec(order))
                row.doctype_id = doctype_id
                session.add(row)
                session.flush()
                return row

        def compensate(row: DocTypeField) -> None:
            with self._db.session_scope() as session:
                session.delete(self._field_row(session, doctype_id, row.id))

        row = self._run_saga(
            "add_field",
            write,
            lambda row: self.tables.add_column(doctype.table_name, FieldSpec.from_model(row)),
            compensate,
            doctype=doctype.slug,
            table_name=doctype.table_name,
            field=data.field_name,
            user_id=actor_id,
        )
        log(log_schema_change(
            "field_added", doctype.slug, doctype.table_name, actor_id, field_name=row.field_name
        ))
        return FieldSpec.from_model(row)

    def update_field(
        self,
        doctype_id: int,
        field_id: int,
        payload: Union[FieldUpdate, Mapping[str, Any]],
        actor_id: Optional[int] = None,
    ) -> FieldSpec:
        """
        Update a field's metadata and bring the column along.

        A new field_name renames the column; a change of type, required,
        default or uniqueness alters it. When the DDL fails the previous
        metadata values are written back before SchemaError is raised.
        """
        changes = _parse(FieldUpdate, payload).model_dump(exclude_unset=True)
        doctype = self.get(doctype_id)
        if STRUCTURAL_FIELD_KEYS.intersection(changes):
            self._check_structural(doctype, "alter fields of")

        with self._db.session_scope() as session:
            current = self._field_row(session, doctype_id, field_id)
            before = FieldSpec.from_model(current)
            is_system = current.is_system

        if is_system and changes:
            raise ValidationError(
                f"system field '{before.field_name}' cannot be changed", doctype=doctype.slug
            )
        new_type = changes.get("field_type")
        if new_type is not None and FieldType(new_type) is not before.field_type and (
            FieldType.REFERENCE in (FieldType(new_type), before.field_type)
        ):
            raise ValidationError(
                f"'{before.field_name}' cannot change type to or from REFERENCE; "
                "remove the field and add a new one",
                doctype=doctype.slug,
            )
        new_name = changes.get("field_name")
        if new_name is not None and new_name != before.field_name:
            if doctype.get_field(new_name) is not None:
                raise ValidationError(
                    f"field '{new_name}' already exists on {doctype.name}", doctype=doctype.slug
                )

        snapshot = {
            key: getattr(before, key) for key in changes
        }

        def write() -> FieldSpec:
            with self._db.session_scope() as session:
                row = self._field_row(session, doctype_id, field_id)
                for key, value in changes.items():
                    if key == "field_type" and value is not None:
                        value = FieldType(value).value
                    if key == "options":
                        value = list(value) if value else None
                    setattr(row, key, value)
                session.flush()
                return FieldSpec.from_model(row)

        def compensate(_: FieldSpec) -> None:
            with self._db.session_scope() as session:
                row = self._field_row(session, doctype_id, field_id)
                for key, value in snapshot.items():
                    if key == "field_type":
                        value = FieldType(value).value
                    if key == "options":
                        value = list(value) or None
                    setattr(row, key, value)

        after = self._run_saga(
            "update_field",
            write,
            lambda after: self._field_ddl(doctype.table_name, before, after),
            compensate,
            doctype=doctype.slug,
            table_name=doctype.table_name,
            field=before.field_name,
            user_id=actor_id,
        )
        log(log_schema_change(
            "field_updated", doctype.slug, doctype.table_name, actor_id, field_name=after.field_name
        ))
        return after

    def _field_ddl(self, table: str, before: FieldSpec, after: FieldSpec) -> TableOperationResult:
        renamed = after.field_name != before.field_name
        altered = (
            after.field_type is not before.field_type
            or after.is_required != before.is_required
            or after.is_unique != before.is_unique
            or (after.default_value or None) != (before.default_value or None)
        )
        result = TableOperationResult(success=True, message="metadata only")
        if renamed:
            result = self.tables.rename_column(
                table, before.field_name, after.field_name, before.field_type
            )
            if not result.success:
                return result
        if altered:
            result = self.tables.alter_column(table, after)
            if not result.success and renamed:
                undo = self.tables.rename_column(
                    table, after.field_name, before.field_name, before.field_type
                )
                if not undo.success:
                    logger.error(
                        "Could not rename %s.%s back to %s: %s",
                        table, after.field_name, before.field_name, undo.error,
                    )
        return result

    def remove_field(self, doctype_id: int, field_id: int, actor_id: Optional[int] = None) -> None:
        """DROP COLUMN first; the field row is deleted only when that succeeded."""
        doctype = self.get(doctype_id)
        self._check_structural(doctype, "remove fields from")
        with self._db.session_scope() as session:
            row = self._field_row(session, doctype_id, field_id)
            field_name, is_system = row.field_name, row.is_system
        if is_system:
            raise ValidationError(
                f"system field '{field_name}' cannot be removed", doctype=doctype.slug
            )

        if self.tables.column_exists(doctype.table_name, field_name):
            result = self.tables.drop_column(doctype.table_name, field_name)
            if not result.success:
                log(log_schema_change(
                    "ddl_failed", doctype.slug, doctype.table_name, actor_id,
                    field_name=field_name, success=False, error=result.error,
                ))
            result.raise_for_error(
                operation="remove_field", doctype=doctype.slug, table_name=doctype.table_name
            )
        else:
            logger.warning(
                "Column %s.%s was already missing; removing metadata only",
                doctype.table_name, field_name,
            )

        with self._db.session_scope() as session:
            session.delete(self._field_row(session, doctype_id, field_id))
        log(log_schema_change(
            "field_removed", doctype.slug, doctype.table_name, actor_id, field_name=field_name
        ))

    # ── Permissions ──

    def list_permissions(self, doctype_id: int) -> List[DocTypePermission]:
        with self._db.session_scope() as session:
            self._doctype_row(session, doctype_id)
            return list(
                session.scalars(
                    select(DocTypePermission)
                    .where(DocTypePermission.doctype_id == doctype_id)
                    .order_by(DocTypePermission.role_id)
                )
            )

    def set_permission(
        self,
        doctype_id: int,
        payload: Union[PermissionSet, Mapping[str, Any]],
    ) -> DocTypePermission:
        """Create or overwrite the capability row for one role."""
        data = _parse(PermissionSet, payload)
        with self._db.session_scope() as session:
            self._doctype_row(session, doctype_id)
            row = session.scalars(
                select(DocTypePermission).where(
                    DocTypePermission.doctype_id == doctype_id,
                    DocTypePermission.role_id == data.role_id,
                )
            ).first()
            if row is None:
                row = DocTypePermission(doctype_id=doctype_id, role_id=data.role_id)
                session.add(row)
            for cap in DocTypePermission.CAPABILITIES:
                setattr(row, cap, getattr(data, cap))
            session.flush()
        self._ctx.invalidate_permissions()
        return row

    def replace_permissions(
        self,
        doctype_id: int,
        payloads: Sequence[Union[PermissionSet, Mapping[str, Any]]],
    ) -> List[DocTypePermission]:
        """Delete every row for the DocType, then keep those granting something."""
        items = [_parse(PermissionSet, p) for p in payloads]
        with self._db.session_scope() as session:
            doctype = self._doctype_row(session, doctype_id)
            doctype.permissions.clear()
            session.flush()
            for data in items:
                row = DocTypePermission(**data.model_dump())
                if row.grants_any():
                    doctype.permissions.append(row)
            session.flush()
            rows = list(doctype.permissions)
        self._ctx.invalidate_permissions()
        return rows

    # ── Saga plumbing ──

    def _run_saga(self, operation, write, ddl, compensate, **context) -> Any:
        saga = SchemaSaga(operation, write, ddl, compensate, **context)
        try:
            return saga.run()
        except SchemaError as e:
            log(log_schema_change(
                "ddl_failed",
                context.get("doctype", ""),
                context.get("table_name", ""),
                context.get("user_id"),
                field_name=context.get("field"),
                success=False,
                error=e.ddl_error,
            ))
            raise
