"""DocForge Engine — Config, errors, logging, caching and the context handles."""

from docforge.engine.context import (  # noqa: F401
    CallerContext,
    EngineContext,
    PermissionLookup,
    StaticPermissionLookup,
)
from docforge.engine.errors import (  # noqa: F401
    AuthorizationError,
    ConfigError,
    DocForgeError,
    InputError,
    NotFoundError,
    QueryError,
    SchemaError,
    ValidationError,
)

__all__ = [
    "CallerContext",
    "EngineContext",
    "PermissionLookup",
    "StaticPermissionLookup",
    "DocForgeError",
    "SchemaError",
    "ValidationError",
    "AuthorizationError",
    "InputError",
    "QueryError",
    "NotFoundError",
    "ConfigError",
]
