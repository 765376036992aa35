"""SQLAlchemy ORM layer for the g8r state store.

Usage::

    from g8r.core.orm import G8rBase, create_g8r_engine, g8r_session_factory

    engine = create_g8r_engine("sqlite:///g8r.db")
    G8rBase.metadata.create_all(engine)
    Session = g8r_session_factory(engine)
"""

from g8r.core.orm.base import G8rBase, TimestampMixin
from g8r.core.orm.session import G8rSession, create_g8r_engine, g8r_session_factory
from g8r.core.orm.tables import (
    DutyExecutionTable,
    DutyTable,
    LockTable,
    QueueTable,
    ReconciliationTable,
    RosterTable,
    StackTable,
)

__all__ = [
    "G8rBase",
    "TimestampMixin",
    "G8rSession",
    "create_g8r_engine",
    "g8r_session_factory",
    "RosterTable",
    "DutyTable",
    "DutyExecutionTable",
    "StackTable",
    "QueueTable",
    "ReconciliationTable",
    "LockTable",
]
