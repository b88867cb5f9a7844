"""
DocForge — Runtime-defined document types over relational tables.

An administrator declares a DocType (name, typed fields, upload deadline,
per-role permissions); DocForge creates and evolves its physical table,
validates spreadsheet uploads against it, and answers paginated reads.

Entry points:
    docforge.schema.registry.SchemaRegistry     — DocType/field/permission lifecycle
    docforge.services.uploads.UploadService     — gated, validated, atomic uploads
    docforge.services.data.DataService          — paginated reads
    docforge.query.builder.QueryBuilder         — parameterized access to any table
"""

__version__ = "1.0.0"
__all__ = ["engine", "db", "schema", "query", "ingest", "security", "services"]
