"""
REFERENCE resolution — turns a human-entered code, name or id into the
integer key of the referenced row.

Every call queries the database; there is no cross-row cache. At the
50,000-row upload ceiling this is the pipeline's slowest step.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import DataError

from docforge.engine.config import ReferenceLookupConfig
from docforge.query.builder import QueryBuilder
from docforge.schema.types import FieldSpec

logger = logging.getLogger("docforge.ingest.references")


class ReferenceResolver:
    """
    Usage:
        resolver = ReferenceResolver(QueryBuilder(db), config.references)
        category_id = resolver.resolve(field, "Minuman")
    """

    def __init__(
        self,
        query: QueryBuilder,
        lookups: Optional[Dict[str, ReferenceLookupConfig]] = None,
    ):
        self._query = query
        self._lookups = dict(lookups or {})
        self.lookup_count = 0

    def _first(self, table: str, column: str, value: Any, key: str) -> Optional[int]:
        self.lookup_count += 1
        try:
            row = self._query.find_first(table, where={column: value}, select=[key])
        except DataError as e:
            # e.g. a name compared against an integer column on PostgreSQL
            logger.debug("Lookup %s.%s = %r rejected: %s", table, column, value, e)
            return None
        if row is None or row.get(key) is None:
            return None
        return int(row[key])

    def _candidates(self, table: str) -> List[tuple]:
        """(column, uppercase the value?) pairs, in lookup order."""
        lookup = self._lookups.get(table)
        if lookup is None:
            return []
        pairs = []
        for column in lookup.columns:
            pairs.append((column, False))
            if column in lookup.uppercase:
                pairs.append((column, True))
        return pairs

    def resolve(self, spec: FieldSpec, raw: Any) -> Optional[int]:
        """The referenced key for ``raw``, or None when nothing matches."""
        if raw is None:
            return None
        table = spec.reference_table or ""
        key = spec.reference_field or "id"
        if isinstance(raw, float) and raw.is_integer():
            raw = int(raw)
        value = str(raw).strip()
        if not value:
            return None

        if value.isdigit():
            found = self._first(table, key, int(value), key)
            if found is not None:
                return found

        candidates = self._candidates(table)
        if not candidates:
            return self._first(table, key, value, key)

        for column, uppercase in candidates:
            lookup = value.upper() if uppercase else value
            if uppercase and lookup == value:
                continue
            found = self._first(table, column, lookup, key)
            if found is not None:
                return found
        logger.debug("No %s row matches %r", table, value)
        return None
