"""
DocForge Database Handle.

``Database`` wraps one SQLAlchemy engine and hands out ORM sessions (for
the metadata models) and Core connections (for dynamic tables). It is the
database half of ``EngineContext``.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection, Dialect, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from docforge.db.base import Base, create_db_engine
from docforge.engine.config import DatabaseConfig

logger = logging.getLogger("docforge.db.session")


class Database:
    """
    Usage:
        db = Database.from_config(get_config().database)
        with db.session_scope() as session:
            session.add(doctype)
        with db.begin() as conn:
            conn.execute(...)
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "Database":
        return cls(create_db_engine(url, **kwargs))

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "Database":
        return cls(
            create_db_engine(
                config.url,
                pool_size=config.pool_size,
                max_overflow=config.max_overflow,
                pool_timeout=config.pool_timeout,
                pool_recycle=config.pool_recycle,
                pool_pre_ping=config.pool_pre_ping,
            )
        )

    @property
    def dialect(self) -> Dialect:
        return self.engine.dialect

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @contextmanager
    def begin(self) -> Generator[Connection, None, None]:
        """Connection inside a transaction; commits on exit, rolls back on error."""
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def connect(self) -> Generator[Connection, None, None]:
        with self.engine.connect() as conn:
            yield conn

    def session(self) -> Session:
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Context manager for ORM sessions with auto-commit/rollback.

        Usage:
            with db.session_scope() as session:
                doctype = session.get(DocType, 1)
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all(self) -> None:
        """Create the metadata tables (doctypes, doctype_fields, doctype_permissions)."""
        # models must be imported so they register on Base.metadata
        from docforge.db import models  # noqa: F401

        Base.metadata.create_all(self.engine)
        logger.info("Metadata tables ensured on %s", self.dialect_name)

    def has_table(self, table_name: str) -> bool:
        return inspect(self.engine).has_table(table_name)

    def health_check(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning("Database health check failed: %s", e)
            return False

    def dispose(self) -> None:
        """Close the connection pool."""
        self.engine.dispose()
