"""DocForge Query Builder."""

from docforge.query.builder import BuiltQuery, QueryBuilder  # noqa: F401

__all__ = ["BuiltQuery", "QueryBuilder"]
