"""Declarative base, mixins and type-map for all g8r ORM models.

Uses SQLAlchemy 2.0 ``DeclarativeBase`` with a ``type_annotation_map``
that maps Python built-in types to portable SA column types.

Mixins
------
* **TimestampMixin**: ``created_at`` / ``updated_at`` set from Python so
  the same DDL works on SQLite and PostgreSQL.
"""

from __future__ import annotations

import datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class G8rBase(DeclarativeBase):
    """Shared declarative base for every g8r table.

    * ``str``   → ``Text``
    * ``int``   → ``Integer``
    * ``bool``  → ``Boolean``
    * ``datetime.datetime`` → ``DateTime(timezone=True)``
    * ``dict``  → ``JSON``    (TEXT in SQLite, native JSON elsewhere)
    * ``list``  → ``JSON``
    """

    type_annotation_map = {
        str: Text,
        int: Integer,
        bool: Boolean,
        datetime.datetime: DateTime(timezone=True),
        dict: JSON,
        list: JSON,
    }


class TimestampMixin:
    """Adds ``created_at`` and ``updated_at``; rows are updated in place."""

    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
