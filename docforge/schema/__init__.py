"""
DocForge Schema — field types, identifier sanitization, the Table Manager
and the Schema Registry.
"""

from docforge.schema.identifiers import SafeIdentifier, sanitize_identifier  # noqa: F401
from docforge.schema.table_manager import TableManager, TableOperationResult  # noqa: F401
from docforge.schema.types import DocTypeSpec, FieldSpec, FieldType  # noqa: F401

__all__ = [
    "SafeIdentifier",
    "sanitize_identifier",
    "TableManager",
    "TableOperationResult",
    "DocTypeSpec",
    "FieldSpec",
    "FieldType",
]
