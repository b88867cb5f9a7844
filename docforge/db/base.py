"""
DocForge Database Base — SQLAlchemy declarative base, mixins, engine factory.

Provides:
- Base: SQLAlchemy declarative base for the metadata models
- AuditMixin: created_at, updated_at, created_by, updated_by
- create_db_engine: engine construction with pool settings per dialect
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Column, DateTime, Integer, create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all DocForge metadata models."""
    pass


class AuditMixin:
    """Adds created_at, updated_at, created_by, updated_by columns."""
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    created_by = Column(Integer, nullable=True)
    updated_by = Column(Integer, nullable=True)


def create_db_engine(
    url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    pool_pre_ping: bool = True,
    **kwargs: Any,
) -> Engine:
    """
    Create a pooled engine. SQLite URLs skip the queue-pool settings, which
    its pool classes do not accept.
    """
    if make_url(url).get_backend_name() == "sqlite":
        return create_engine(url, **kwargs)
    return create_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=pool_pre_ping,
        **kwargs,
    )
