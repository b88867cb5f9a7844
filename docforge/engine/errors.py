"""
DocForge Error Hierarchy — Structured exceptions reported back to callers.

Every failure carries enough context (row number, field name, table, reason)
for an administrator or uploader to correct the input and resubmit.
Nothing in DocForge retries automatically.

Hierarchy:
    DocForgeError
    ├── SchemaError          — DDL failed; metadata was compensated
    ├── ValidationError      — Payload or row validation failed
    ├── AuthorizationError   — Missing capability or upload deadline passed
    ├── InputError           — Empty / oversized / unreadable upload
    ├── QueryError           — Unsafe query descriptor (e.g. unrestricted delete)
    ├── NotFoundError        — DocType or field not found
    └── ConfigError          — Invalid docforge.yaml
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class DocForgeError(Exception):
    """
    Base error for all DocForge failures.
    All context is serializable to JSON for logging and API responses.
    """

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.doctype: Optional[str] = context.get("doctype")
        self.table_name: Optional[str] = context.get("table_name")
        self.user_id: Optional[int] = context.get("user_id")
        self.error_type: str = self.__class__.__name__
        self.context: Dict[str, Any] = context
        self.timestamp: str = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error to a JSON-compatible dict."""
        return {
            "error_type": self.error_type,
            "message": self.message,
            "doctype": self.doctype,
            "table_name": self.table_name,
            "user_id": self.user_id,
            "timestamp": self.timestamp,
            "context": {
                k: str(v) for k, v in self.context.items()
                if k not in ("doctype", "table_name", "user_id")
            },
        }

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def __repr__(self) -> str:
        parts = [f"{self.error_type}: {self.message}"]
        if self.doctype:
            parts.append(f"doctype={self.doctype}")
        if self.table_name:
            parts.append(f"table_name={self.table_name}")
        return " | ".join(parts)


class SchemaError(DocForgeError):
    """
    DDL failure: identifier collision, missing FK target, incompatible ALTER.
    Raised after the metadata write has been compensated; the driver message
    is surfaced verbatim in ``ddl_error``.
    """

    def __init__(self, message: str, **context: Any):
        self.operation: Optional[str] = context.get("operation")
        self.ddl_error: Optional[str] = context.get("ddl_error")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["operation"] = self.operation
        d["ddl_error"] = self.ddl_error
        return d


class ValidationError(DocForgeError):
    """
    Input validation failed. For uploads, ``validation_errors`` holds the
    accumulated ``"row N: ..."`` strings (bounded).
    """

    def __init__(self, message: str, **context: Any):
        self.validation_errors: List[str] = list(context.get("validation_errors") or [])
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["validation_errors"] = self.validation_errors
        return d


class AuthorizationError(DocForgeError):
    """Missing capability, inactive DocType, or upload deadline passed."""

    def __init__(self, message: str, **context: Any):
        self.required_capability: Optional[str] = context.get("required_capability")
        self.deadline: Optional[str] = context.get("deadline")
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["required_capability"] = self.required_capability
        d["deadline"] = self.deadline
        return d


class InputError(DocForgeError):
    """Empty or oversized file, too many rows, unreadable workbook."""

    def __init__(self, message: str, **context: Any):
        self.file_name: Optional[str] = context.get("file_name")
        super().__init__(message, **context)


class QueryError(DocForgeError):
    """A query descriptor was rejected before reaching the database."""
    pass


class NotFoundError(DocForgeError):
    """DocType, field or permission row not found."""
    pass


class ConfigError(DocForgeError):
    """Configuration error — invalid docforge.yaml."""
    pass
