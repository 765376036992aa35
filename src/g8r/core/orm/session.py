"""SQLAlchemy engine and session factory for the durable state store.

This module provides:

* ``create_g8r_engine``   -- Create a SA engine from a URL.
* ``G8rSession``          -- Session with ``expire_on_commit=False``.
* ``g8r_session_factory`` -- ``sessionmaker`` producing ``G8rSession``.

SQLite is used for development and tests.  Several scheduler cycles write
to the store from different threads, so SQLite connections are opened in
autocommit mode at the driver level and every SA transaction starts with
``BEGIN IMMEDIATE``: writers serialize on the database lock instead of
failing with a stale read snapshot.

Tags:
    g8r, orm, sqlalchemy, session, engine

Doc-Types:
    api-reference
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import create_engine as _sa_create_engine
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


def create_g8r_engine(
    url: str = "sqlite:///g8r.db",
    *,
    echo: bool = False,
    pool_size: int | None = None,
    max_overflow: int | None = None,
    pool_timeout: int | None = None,
    **kwargs: Any,
) -> Engine:
    """Create a SQLAlchemy engine with sane defaults.

    Parameters
    ----------
    url:
        Database URL (``sqlite:///…``, ``postgresql+psycopg://…``)
    echo:
        If ``True``, log all SQL.
    pool_size, max_overflow, pool_timeout:
        Connection pool parameters (ignored for SQLite).
    **kwargs:
        Extra arguments forwarded to ``sqlalchemy.create_engine``.
    """
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False, "timeout": 30})
        engine = _sa_create_engine(url, echo=echo, **kwargs)

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
            # Let SQLAlchemy own transaction boundaries (see "begin" below)
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            if ":memory:" not in url:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn: Any) -> None:
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    pool_kwargs: dict[str, Any] = {}
    if pool_size is not None:
        pool_kwargs["pool_size"] = pool_size
    if max_overflow is not None:
        pool_kwargs["max_overflow"] = max_overflow
    if pool_timeout is not None:
        pool_kwargs["pool_timeout"] = pool_timeout

    return _sa_create_engine(url, echo=echo, pool_pre_ping=True, **pool_kwargs, **kwargs)


class G8rSession(Session):
    """Pre-configured session with ``expire_on_commit=False``.

    Domain objects are built from rows after commit, so attributes must
    stay loaded.
    """

    def __init__(self, bind: Engine | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("expire_on_commit", False)
        super().__init__(bind=bind, **kwargs)


def g8r_session_factory(engine: Engine) -> sessionmaker[G8rSession]:
    """Return a ``sessionmaker`` bound to *engine* that produces ``G8rSession`` instances."""
    return sessionmaker(bind=engine, class_=G8rSession)
