"""
tests/conftest.py — Shared Test Fixtures
=========================================

Service tests run against an in-memory SQLite engine built by
:func:`bloom.database.engine.create_db_engine`, so they get the same
``BEGIN IMMEDIATE`` transactions as any SQLite deployment.
"""

from __future__ import annotations

import pytest
from sqlalchemy import Engine
from sqlalchemy.pool import StaticPool

from bloom.database.engine import create_db_engine, init_db
from factories import EventFactory, create_user


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with all Bloom tables.

    Uses StaticPool so every session (and ``asyncio.to_thread`` worker)
    sees the same in-memory database.
    """
    engine = create_db_engine("sqlite://", poolclass=StaticPool)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_engine(tmp_path) -> Engine:
    """File-backed SQLite engine; each thread gets its own connection."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'bloom.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def events(db_engine) -> EventFactory:
    return EventFactory(db_engine)


@pytest.fixture
def make_user(db_engine):
    def _make(nickname: str = "reader", is_admin: bool = False) -> int:
        return create_user(db_engine, nickname, is_admin=is_admin)
    return _make
