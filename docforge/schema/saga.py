"""
Metadata-then-DDL as a compensating operation.

DDL is not transactional on the engines DocForge targets, so a schema
mutation runs as three steps:

    1. write metadata      (committed on its own)
    2. apply DDL           (TableOperationResult)
    3. on DDL failure      compensate the metadata write, then raise SchemaError

Usage:
    saga = SchemaSaga(
        "add_field",
        write=lambda: registry._insert_field_row(...),
        ddl=lambda row: table_manager.add_column(table, spec),
        compensate=lambda row: registry._delete_field_row(row.id),
    )
    row = saga.run()
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Generic, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from docforge.engine.errors import SchemaError
from docforge.schema.table_manager import TableOperationResult

logger = logging.getLogger("docforge.schema.saga")

T = TypeVar("T")


class SchemaSaga(Generic[T]):
    """One metadata write paired with its DDL and its compensation."""

    def __init__(
        self,
        operation: str,
        write: Callable[[], T],
        ddl: Callable[[T], TableOperationResult],
        compensate: Callable[[T], Any],
        **context: Any,
    ):
        self.operation = operation
        self._write = write
        self._ddl = ddl
        self._compensate = compensate
        self._context = context
        self.compensated = False
        self.result: Optional[TableOperationResult] = None

    def run(self) -> T:
        """
        Returns the metadata step's value when the DDL succeeded. Raises
        SchemaError (with the DDL error verbatim) after compensating when it
        did not. If the compensation itself fails, the SchemaError says so.
        """
        written = self._write()
        self.result = self._ddl(written)
        if self.result.success:
            return written

        logger.warning(
            "%s: DDL failed (%s), compensating metadata write",
            self.operation,
            self.result.error,
        )
        compensation_error: Optional[str] = None
        try:
            self._compensate(written)
            self.compensated = True
        except SQLAlchemyError as e:
            compensation_error = str(e)
            logger.error("%s: compensation failed: %s", self.operation, e)

        message = f"{self.operation} failed: {self.result.error}"
        if compensation_error:
            message += f" (metadata compensation also failed: {compensation_error})"
        raise SchemaError(
            message,
            operation=self.operation,
            ddl_error=self.result.error,
            compensated=self.compensated,
            **self._context,
        )
