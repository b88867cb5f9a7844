"""
DocForge Metadata Models — the Schema Registry's persisted source of truth.

Tables:
1. doctypes             — DocType definitions (one dynamic table each)
2. doctype_fields       — Typed field list per DocType
3. doctype_permissions  — Per-role capability matrix per DocType
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from docforge.db.base import AuditMixin, Base

FIELD_TYPE_CHECK = (
    "field_type IN ('TEXT', 'NUMBER', 'CURRENCY', 'DATE', 'DATETIME', "
    "'SELECT', 'BOOLEAN', 'REFERENCE')"
)


class DocType(Base, AuditMixin):
    __tablename__ = "doctypes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    slug = Column(String(100), unique=True, nullable=False, index=True)
    table_name = Column(String(100), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    icon = Column(String(50), nullable=True)
    upload_deadline_hour = Column(Integer, nullable=True)
    upload_deadline_minute = Column(Integer, default=0, nullable=False)
    is_upload_active = Column(Boolean, default=True, nullable=False)
    show_in_dashboard = Column(Boolean, default=False, nullable=False)
    dashboard_order = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    is_system = Column(Boolean, default=False, nullable=False)

    fields = relationship(
        "DocTypeField",
        back_populates="doctype",
        cascade="all, delete-orphan",
        order_by="DocTypeField.sort_order",
        lazy="selectin",
    )
    permissions = relationship(
        "DocTypePermission",
        back_populates="doctype",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "upload_deadline_hour IS NULL OR "
            "(upload_deadline_hour >= 0 AND upload_deadline_hour <= 23)",
            name="ck_doctypes_deadline_hour",
        ),
        CheckConstraint(
            "upload_deadline_minute >= 0 AND upload_deadline_minute <= 59",
            name="ck_doctypes_deadline_minute",
        ),
    )

    def __repr__(self) -> str:
        return f"<DocType(id={self.id}, slug='{self.slug}', table='{self.table_name}')>"


class DocTypeField(Base):
    __tablename__ = "doctype_fields"

    id = Column(Integer, primary_key=True, autoincrement=True)
    doctype_id = Column(
        Integer, ForeignKey("doctypes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(100), nullable=False)
    field_name = Column(String(64), nullable=False)
    field_type = Column(String(20), nullable=False)
    is_required = Column(Boolean, default=False, nullable=False)
    is_unique = Column(Boolean, default=False, nullable=False)
    default_value = Column(String(255), nullable=True)
    options = Column(JSON, nullable=True)
    min_value = Column(Float, nullable=True)
    max_value = Column(Float, nullable=True)
    reference_table = Column(String(100), nullable=True)
    reference_field = Column(String(64), nullable=True)
    excel_column = Column(String(100), nullable=True)
    sort_order = Column(Integer, default=0, nullable=False)
    show_in_list = Column(Boolean, default=True, nullable=False)
    show_in_form = Column(Boolean, default=True, nullable=False)
    is_system = Column(Boolean, default=False, nullable=False)

    doctype = relationship("DocType", back_populates="fields")

    __table_args__ = (
        UniqueConstraint("doctype_id", "field_name", name="uq_doctype_fields_field_name"),
        CheckConstraint(FIELD_TYPE_CHECK, name="ck_doctype_fields_field_type"),
    )

    def __repr__(self) -> str:
        return f"<DocTypeField(id={self.id}, field='{self.field_name}', type={self.field_type})>"


class DocTypePermission(Base):
    __tablename__ = "doctype_permissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    doctype_id = Column(
        Integer, ForeignKey("doctypes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role_id = Column(Integer, nullable=False, index=True)
    can_view = Column(Boolean, default=False, nullable=False)
    can_upload = Column(Boolean, default=False, nullable=False)
    can_edit = Column(Boolean, default=False, nullable=False)
    can_delete = Column(Boolean, default=False, nullable=False)
    can_export = Column(Boolean, default=False, nullable=False)
    bypass_deadline = Column(Boolean, default=False, nullable=False)

    doctype = relationship("DocType", back_populates="permissions")

    __table_args__ = (
        UniqueConstraint("doctype_id", "role_id", name="uq_doctype_permissions_role"),
    )

    CAPABILITIES = (
        "can_view", "can_upload", "can_edit", "can_delete", "can_export", "bypass_deadline",
    )

    def grants_any(self) -> bool:
        return any(getattr(self, cap) for cap in self.CAPABILITIES)

    def __repr__(self) -> str:
        return f"<DocTypePermission(doctype_id={self.doctype_id}, role_id={self.role_id})>"
