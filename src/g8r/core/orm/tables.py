"""SQLAlchemy 2.0 ORM table definitions for the g8r state store.

Manifesto:
    The store is the single source of truth for what is known to be
    deployed.  Roster, duty, stack and queue rows are updated in place;
    duty executions and reconciliations are append-only history.

Column conventions:

* ``*_at`` columns -> ``DateTime(timezone=True)``
* ``traits`` / ``connection`` / ``spec`` / ``status`` / ``result`` /
  ``metadata`` / ``*_config`` -> ``JSON``
* ``metadata`` is a reserved attribute on declarative classes, so the Python
  attribute is ``meta`` mapped onto a ``metadata`` column.

Tags:
    g8r, orm, sqlalchemy, tables, schema-mapping

Doc-Types:
    api-reference, data-model

Usage::

    from g8r.core.orm import G8rBase
    from sqlalchemy import create_engine

    engine = create_engine("sqlite:///g8r.db")
    G8rBase.metadata.create_all(engine)
"""

from __future__ import annotations

import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from g8r.core.orm.base import G8rBase, TimestampMixin, utcnow


def _pending_status() -> dict:
    return {"phase": "pending", "rosters": {}}


class RosterTable(TimestampMixin, G8rBase):
    __tablename__ = "rosters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    roster_type: Mapped[str] = mapped_column(Text, nullable=False)
    traits: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    connection: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    auth: Mapped[dict | None] = mapped_column(JSON, default=None)
    meta: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)


class DutyTable(TimestampMixin, G8rBase):
    __tablename__ = "duties"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    duty_type: Mapped[str] = mapped_column(Text, nullable=False)
    backend: Mapped[str] = mapped_column(Text, nullable=False)
    roster_selector: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    spec: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    depends_on: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[dict] = mapped_column(JSON, nullable=False, default=_pending_status)
    source: Mapped[str | None] = mapped_column(Text, index=True)
    meta: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)

    executions: Mapped[list[DutyExecutionTable]] = relationship(
        "DutyExecutionTable", back_populates="duty"
    )


class DutyExecutionTable(G8rBase):
    __tablename__ = "duty_executions"
    __table_args__ = (
        Index("ix_duty_executions_pair", "duty_id", "roster_name", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    duty_id: Mapped[int] = mapped_column(Integer, ForeignKey("duties.id"), nullable=False)
    roster_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("rosters.id", ondelete="SET NULL"), default=None
    )
    roster_name: Mapped[str | None] = mapped_column(Text)
    reconciliation_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("reconciliations.id"), default=None
    )
    operation: Mapped[str] = mapped_column(Text, nullable=False, default="apply")
    status: Mapped[str] = mapped_column(Text, nullable=False, default="running")
    reason: Mapped[str | None] = mapped_column(Text)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    completed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[str | None] = mapped_column(Text)
    result: Mapped[dict | None] = mapped_column(JSON, default=None)

    duty: Mapped[DutyTable] = relationship("DutyTable", back_populates="executions")


class StackTable(TimestampMixin, G8rBase):
    __tablename__ = "stacks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    source_type: Mapped[str] = mapped_column(Text, nullable=False)
    source_config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    config_path: Mapped[str] = mapped_column(Text, nullable=False)
    reconcile_interval: Mapped[int] = mapped_column(Integer, nullable=False, default=300)
    last_sync_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True))
    last_sync_version: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    meta: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)


class QueueTable(TimestampMixin, G8rBase):
    __tablename__ = "queues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    queue_type: Mapped[str] = mapped_column(Text, nullable=False)
    queue_config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    message_handler: Mapped[str] = mapped_column(Text, nullable=False)
    handler_config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="active")
    meta: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)


class ReconciliationTable(G8rBase):
    __tablename__ = "reconciliations"
    __table_args__ = (
        Index("ix_reconciliations_source", "source_type", "source_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_type: Mapped[str] = mapped_column(Text, nullable=False)
    source_id: Mapped[str] = mapped_column(Text, nullable=False)
    source_version: Mapped[str | None] = mapped_column(Text)
    trigger: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="running")
    started_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    completed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[str | None] = mapped_column(Text)
    duties_applied: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    meta: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)


class LockTable(G8rBase):
    """Exclusive locks with TTL expiry.

    Keys: ``duty:<duty>@<roster>`` (one running execution per pair),
    ``stack:<name>`` and ``queue:<name>`` (single writer per source).
    """

    __tablename__ = "g8r_locks"

    lock_key: Mapped[str] = mapped_column(Text, primary_key=True)
    holder: Mapped[str] = mapped_column(Text, nullable=False)
    acquired_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
