"""
DocForge Query Builder — generic parameterized access to any DocType table.

Statements are assembled by ``_SqlWriter`` from two strictly separate
inputs: ``SafeIdentifier`` names, quoted for the dialect, and values, which
only ever become ``:pN`` placeholders bound through SQLAlchemy. The writer
refuses a plain ``str`` where an identifier is expected.

Where descriptors:
    {"status": "open"}                     status = :p0
    {"closed_at": None}                    closed_at IS NULL
    {"amount": {"gte": 10, "lt": 100}}     amount >= :p0 AND amount < :p1
    {"city": {"in": ["A", "B"]}}           city IN (:p0, :p1)
    {"city": {"in": []}}                   1 = 0
    {"name": {"like": "%mart%"}}           name LIKE :p0

Atomicity across several calls is the caller's job: open a transaction and
use ``builder.bind(conn)``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
    Union,
)

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Connection, CursorResult, Dialect
from sqlalchemy.sql.elements import TextClause

from docforge.db.session import Database
from docforge.engine.errors import QueryError
from docforge.engine.logging import log, log_slow_query
from docforge.schema.identifiers import SafeIdentifier, sanitize_identifier

logger = logging.getLogger("docforge.query.builder")

SLOW_QUERY_MS = 500.0
_NO_LIMIT = 2 ** 63 - 1

_COMPARISONS = {
    "gte": ">=",
    "lte": "<=",
    "gt": ">",
    "lt": "<",
    "like": "LIKE",
}

Where = Optional[Mapping[str, Any]]
OrderBy = Union[None, str, Mapping[str, str], Sequence[Tuple[str, str]]]
Row = Dict[str, Any]

R = TypeVar("R")


@dataclass
class BuiltQuery:
    """SQL text plus its named parameters, never merged."""

    sql: str
    params: Dict[str, Any] = field(default_factory=dict)

    def statement(self) -> TextClause:
        stmt = text(self.sql)
        if self.params:
            stmt = stmt.bindparams(*(bindparam(k, v) for k, v in self.params.items()))
        return stmt


class _SqlWriter:
    def __init__(self, dialect: Dialect):
        self._dialect = dialect
        self.params: Dict[str, Any] = {}

    def ident(self, name: SafeIdentifier) -> str:
        if not isinstance(name, SafeIdentifier):
            raise TypeError(f"identifier {name!r} was not sanitized")
        return name.quoted(self._dialect)

    def column(self, name: str) -> str:
        return self.ident(sanitize_identifier(name))

    def bind(self, value: Any) -> str:
        key = f"p{len(self.params)}"
        self.params[key] = value
        return f":{key}"

    def build(self, sql: str) -> BuiltQuery:
        return BuiltQuery(sql=sql, params=dict(self.params))


def normalize_number(value: Any) -> Any:
    """Decimal → int when whole, else float. Other values pass through."""
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return int(value)
        return float(value)
    return value


class QueryBuilder:
    """
    Usage:
        qb = QueryBuilder(database)
        rows = qb.find_many("doc_daily_sales", where={"sale_date": {"gte": start}},
                            order_by={"sale_date": "desc"}, limit=50)

        with database.begin() as conn:
            tx = qb.bind(conn)
            tx.delete_many("doc_daily_sales", {"sale_date": day})
            tx.insert_many("doc_daily_sales", rows)
    """

    def __init__(self, target: Union[Database, Connection]):
        if isinstance(target, Connection):
            self._db: Optional[Database] = None
            self._conn: Optional[Connection] = target
            self._dialect = target.dialect
        else:
            self._db = target
            self._conn = None
            self._dialect = target.dialect

    def bind(self, conn: Connection) -> "QueryBuilder":
        """A builder whose statements run on ``conn`` (and its transaction)."""
        return QueryBuilder(conn)

    @property
    def dialect(self) -> Dialect:
        return self._dialect

    # ── Execution ──

    def _run(
        self,
        built: BuiltQuery,
        consume: Callable[[CursorResult], R],
        table: str = "",
        operation: str = "",
    ) -> R:
        started = time.perf_counter()
        logger.debug("SQL %s | params=%s", built.sql, list(built.params))
        if self._conn is not None:
            value = consume(self._conn.execute(built.statement()))
        else:
            with self._db.begin() as conn:
                value = consume(conn.execute(built.statement()))
        duration_ms = (time.perf_counter() - started) * 1000
        if duration_ms > SLOW_QUERY_MS:
            log(log_slow_query(table, operation, duration_ms))
        return value

    @staticmethod
    def _rows(result: CursorResult) -> List[Row]:
        return [dict(r._mapping) for r in result]

    @staticmethod
    def _rowcount(result: CursorResult) -> int:
        return result.rowcount

    # ── Clause builders ──

    def _where_sql(self, w: _SqlWriter, where: Where) -> str:
        clauses: List[str] = []
        for key, condition in (where or {}).items():
            col = w.column(key)
            if condition is None:
                clauses.append(f"{col} IS NULL")
            elif isinstance(condition, Mapping):
                for op, value in condition.items():
                    if op == "in":
                        values = list(value or [])
                        if not values:
                            clauses.append("1 = 0")
                        else:
                            placeholders = ", ".join(w.bind(v) for v in values)
                            clauses.append(f"{col} IN ({placeholders})")
                    elif op in _COMPARISONS:
                        clauses.append(f"{col} {_COMPARISONS[op]} {w.bind(value)}")
                    else:
                        raise QueryError(f"unsupported where operator '{op}'", field=key)
            else:
                clauses.append(f"{col} = {w.bind(condition)}")
        if not clauses:
            return ""
        return " WHERE " + " AND ".join(clauses)

    @staticmethod
    def _order_items(order_by: OrderBy) -> List[Tuple[str, str]]:
        if not order_by:
            return []
        if isinstance(order_by, str):
            return [(order_by, "asc")]
        if isinstance(order_by, Mapping):
            return list(order_by.items())
        return [(name, direction) for name, direction in order_by]

    def _order_sql(self, w: _SqlWriter, order_by: OrderBy) -> str:
        parts = []
        for name, direction in self._order_items(order_by):
            keyword = "DESC" if str(direction).lower() == "desc" else "ASC"
            parts.append(f"{w.column(name)} {keyword}")
        if not parts:
            return ""
        return " ORDER BY " + ", ".join(parts)

    def _set_sql(self, w: _SqlWriter, data: Mapping[str, Any]) -> str:
        if not data:
            raise QueryError("update requires at least one column to set")
        return ", ".join(f"{w.column(k)} = {w.bind(v)}" for k, v in data.items())

    # ── Statement builders ──

    def build_select(
        self,
        table: str,
        where: Where = None,
        order_by: OrderBy = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        select: Optional[Sequence[str]] = None,
    ) -> BuiltQuery:
        w = _SqlWriter(self._dialect)
        columns = ", ".join(w.column(c) for c in select) if select else "*"
        sql = f"SELECT {columns} FROM {w.column(table)}"
        sql += self._where_sql(w, where)
        sql += self._order_sql(w, order_by)
        if limit is not None or offset:
            sql += f" LIMIT {w.bind(int(limit) if limit is not None else _NO_LIMIT)}"
            if offset:
                sql += f" OFFSET {w.bind(int(offset))}"
        return w.build(sql)

    def build_count(self, table: str, where: Where = None) -> BuiltQuery:
        w = _SqlWriter(self._dialect)
        sql = f"SELECT COUNT(*) AS count FROM {w.column(table)}" + self._where_sql(w, where)
        return w.build(sql)

    def build_insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> BuiltQuery:
        """One multi-VALUES INSERT; columns come from the first row."""
        if not rows:
            raise QueryError("insert requires at least one row")
        w = _SqlWriter(self._dialect)
        columns = list(rows[0].keys())
        if not columns:
            raise QueryError("insert requires at least one column")
        col_sql = ", ".join(w.column(c) for c in columns)
        values_sql = ", ".join(
            "(" + ", ".join(w.bind(row.get(c)) for c in columns) + ")" for row in rows
        )
        return w.build(f"INSERT INTO {w.column(table)} ({col_sql}) VALUES {values_sql}")

    def build_update(self, table: str, where: Where, data: Mapping[str, Any]) -> BuiltQuery:
        w = _SqlWriter(self._dialect)
        set_sql = self._set_sql(w, data)
        where_sql = self._where_sql(w, where)
        # an operator dict with no operators yields no clause either
        if not where_sql:
            raise QueryError("update without a where clause is not allowed", table_name=table)
        return w.build(f"UPDATE {w.column(table)} SET {set_sql}" + where_sql)

    def build_delete(self, table: str, where: Where) -> BuiltQuery:
        w = _SqlWriter(self._dialect)
        where_sql = self._where_sql(w, where)
        if not where_sql:
            raise QueryError("delete without a where clause is not allowed", table_name=table)
        return w.build(f"DELETE FROM {w.column(table)}" + where_sql)

    def build_aggregate(
        self,
        table: str,
        group_by: Optional[Sequence[str]] = None,
        sum: Optional[Sequence[str]] = None,
        avg: Optional[Sequence[str]] = None,
        count: Union[None, bool, Sequence[str]] = None,
        min: Optional[Sequence[str]] = None,
        max: Optional[Sequence[str]] = None,
        where: Where = None,
    ) -> BuiltQuery:
        w = _SqlWriter(self._dialect)
        group_cols = [w.column(g) for g in (group_by or [])]
        selects = list(group_cols)
        requested = False
        for func, prefix, fields in (
            ("SUM", "sum", sum),
            ("AVG", "avg", avg),
            ("MIN", "min", min),
            ("MAX", "max", max),
        ):
            for name in fields or []:
                ident = sanitize_identifier(name)
                selects.append(f"{func}({w.ident(ident)}) AS {w.column(f'{prefix}_{ident}')}")
                requested = True
        if count is True:
            selects.append("COUNT(*) AS count")
            requested = True
        elif count:
            for name in count:
                ident = sanitize_identifier(name)
                selects.append(f"COUNT({w.ident(ident)}) AS {w.column(f'count_{ident}')}")
                requested = True
        if not requested:
            selects.append("COUNT(*) AS count")

        sql = f"SELECT {', '.join(selects)} FROM {w.column(table)}"
        sql += self._where_sql(w, where)
        if group_cols:
            sql += " GROUP BY " + ", ".join(group_cols)
        return w.build(sql)

    # ── Reads ──

    def find_many(
        self,
        table: str,
        where: Where = None,
        order_by: OrderBy = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        select: Optional[Sequence[str]] = None,
    ) -> List[Row]:
        built = self.build_select(table, where, order_by, limit, offset, select)
        return self._run(built, self._rows, table, "find_many")

    def find_first(
        self,
        table: str,
        where: Where = None,
        order_by: OrderBy = None,
        select: Optional[Sequence[str]] = None,
    ) -> Optional[Row]:
        rows = self.find_many(table, where=where, order_by=order_by, limit=1, select=select)
        return rows[0] if rows else None

    def find_by_id(
        self, table: str, row_id: Any, select: Optional[Sequence[str]] = None
    ) -> Optional[Row]:
        return self.find_first(table, where={"id": row_id}, select=select)

    def count(self, table: str, where: Where = None) -> int:
        built = self.build_count(table, where)
        return int(self._run(built, lambda r: r.scalar() or 0, table, "count"))

    def aggregate(
        self,
        table: str,
        group_by: Optional[Sequence[str]] = None,
        sum: Optional[Sequence[str]] = None,
        avg: Optional[Sequence[str]] = None,
        count: Union[None, bool, Sequence[str]] = None,
        min: Optional[Sequence[str]] = None,
        max: Optional[Sequence[str]] = None,
        where: Where = None,
    ) -> List[Row]:
        """Grouped aggregates. Counters and whole Decimals come back as int."""
        built = self.build_aggregate(table, group_by, sum, avg, count, min, max, where)
        rows = self._run(built, self._rows, table, "aggregate")
        return [{k: normalize_number(v) for k, v in row.items()} for row in rows]

    # ── Writes ──

    def insert(self, table: str, data: Mapping[str, Any]) -> int:
        """Insert one row and return its generated id."""
        built = self.build_insert(table, [data])
        if self._dialect.insert_returning:
            built.sql += " RETURNING " + sanitize_identifier("id").quoted(self._dialect)
            return int(self._run(built, lambda r: r.scalar_one(), table, "insert"))
        return int(self._run(built, lambda r: r.lastrowid, table, "insert"))

    def insert_many(self, table: str, rows: Sequence[Mapping[str, Any]]) -> int:
        """Insert all rows in one statement; returns the number of rows sent."""
        if not rows:
            return 0
        built = self.build_insert(table, rows)
        self._run(built, self._rowcount, table, "insert_many")
        return len(rows)

    def update(self, table: str, row_id: Any, data: Mapping[str, Any]) -> int:
        return self.update_many(table, {"id": row_id}, data)

    def update_many(self, table: str, where: Where, data: Mapping[str, Any]) -> int:
        built = self.build_update(table, where, data)
        return self._run(built, self._rowcount, table, "update")

    def delete(self, table: str, row_id: Any) -> int:
        return self.delete_many(table, {"id": row_id})

    def delete_many(self, table: str, where: Where) -> int:
        """Rejects an empty where; there is no unrestricted delete."""
        built = self.build_delete(table, where)
        return self._run(built, self._rowcount, table, "delete")

    # ── Escape hatches ──

    def raw(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> List[Row]:
        """Run a hand-written SELECT. Values must be passed in ``params``."""
        return self._run(BuiltQuery(sql, dict(params or {})), self._rows, "", "raw")

    def execute(self, sql: str, params: Optional[Mapping[str, Any]] = None) -> int:
        """Run a hand-written statement; returns the affected row count."""
        return self._run(BuiltQuery(sql, dict(params or {})), self._rowcount, "", "execute")


def chunked(rows: Sequence[R], size: int) -> Iterable[Sequence[R]]:
    """Consecutive slices of at most ``size`` items."""
    for start in range(0, len(rows), size):
        yield rows[start:start + size]
