"""
bloom.database.engine — Database Connection, Sessions & Async Helper
=====================================================================

Every core operation is a short synchronous SQLAlchemy transaction.
Async callers (the outbox dispatcher loop, any web layer in front of the
core) ship them to a worker thread with :func:`run_db` so the event loop
is never blocked.

SQLite engines (tests, local development) are switched to
``BEGIN IMMEDIATE`` transactions: the write lock is taken when the
transaction starts, so concurrent writers queue on the busy timeout
instead of failing mid-transaction with a lock upgrade error.

Usage::

    from bloom.database.engine import create_db_engine, init_db, get_session

    engine = create_db_engine()          # reads DATABASE_URL from .env
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS …

    with get_session(engine) as session:
        session.add(User(nickname="drew"))
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from bloom.database.models import Base
from bloom.errors import ConcurrencyConflictError

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

SQLITE_BUSY_TIMEOUT_SECONDS = 30


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None, **engine_kwargs: Any) -> Engine:
    """Build a SQLAlchemy :class:`Engine`.

    *url* defaults to the ``DATABASE_URL`` environment variable.

    PostgreSQL connection pool:
    * ``pool_size=5`` — five persistent connections.
    * ``max_overflow=10`` — up to 10 extra connections under load.
    * ``pool_timeout=10`` — fail after 10 s if no connection is available.
    * ``pool_recycle=3600`` — recycle connections after 1 hour.

    Extra keyword arguments are forwarded to :func:`create_engine`
    (tests pass ``poolclass=StaticPool`` for in-memory SQLite).

    Raises
    ------
    RuntimeError
        If neither *url* nor ``DATABASE_URL`` is set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid database URL."
        )

    if url.startswith("sqlite"):
        connect_args = engine_kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", SQLITE_BUSY_TIMEOUT_SECONDS)
        engine = create_engine(url, echo=False, connect_args=connect_args, **engine_kwargs)
        _use_immediate_transactions(engine)
    else:
        options: dict[str, Any] = {
            "pool_size": 5,
            "max_overflow": 10,
            "pool_pre_ping": True,   # Reconnect stale connections automatically
            "pool_timeout": 10,
            "pool_recycle": 3600,
        }
        options.update(engine_kwargs)
        engine = create_engine(url, echo=False, **options)

    logger.info("Database engine created → %s", engine.url.render_as_string(hide_password=True))
    return engine


def _use_immediate_transactions(engine: Engine) -> None:
    """Take over transaction control from pysqlite and BEGIN IMMEDIATE."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):
        # Stop pysqlite from emitting its own deferred BEGIN.
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables defined in :mod:`bloom.database.models`.

    Safe to call on every startup — ``CREATE TABLE IF NOT EXISTS`` under
    the hood.

    .. note::

        In production the schema is managed by Alembic (``alembic upgrade
        head``).  ``create_all`` is retained for dev/test environments.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine) -> Iterator[Session]:
    """Yield a :class:`Session` that auto-commits on success and rolls back
    on exception.

    Objects stay readable after the block (``expire_on_commit=False``).
    """
    session = Session(engine, expire_on_commit=False)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** database function on a background thread.

    Under the hood it calls :func:`asyncio.to_thread`, which schedules
    *func* on the default ``ThreadPoolExecutor`` so the caller's event
    loop is never blocked.
    """
    return await asyncio.to_thread(func, *args, **kwargs)


# ---------------------------------------------------------------------------
# Transient-failure retry
# ---------------------------------------------------------------------------
# serialization_failure, deadlock_detected, lock_not_available
_TRANSIENT_PGCODES = frozenset({"40001", "40P01", "55P03"})


def is_transient(exc: OperationalError) -> bool:
    """True for lock/serialization failures that are safe to retry."""
    if getattr(exc.orig, "pgcode", None) in _TRANSIENT_PGCODES:
        return True
    return "database is locked" in str(exc.orig).lower()


def retry_transient(func: Callable[[], T], *, attempts: int, label: str = "operation") -> T:
    """Call *func*, re-running it when the database reports contention.

    Each call must open and close its own session so a retry starts a
    fresh transaction.  After *attempts* transient failures the contention
    is surfaced as :class:`~bloom.errors.ConcurrencyConflictError`;
    non-transient ``OperationalError`` propagates unchanged.
    """
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except OperationalError as exc:
            if not is_transient(exc):
                raise
            logger.warning("Transient DB conflict in %s (attempt %d/%d): %s",
                           label, attempt, attempts, exc.orig)
    raise ConcurrencyConflictError(f"{label} failed after {attempts} attempts due to contention")
