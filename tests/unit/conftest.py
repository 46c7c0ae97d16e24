"""Shared fixtures for chainwatch unit tests."""

from __future__ import annotations

import pytest
import sqlalchemy as sa
from sqlalchemy.orm import sessionmaker

from chainwatch.store import sql as sql_schema
from chainwatch.store.alert_ledger import AlertLedger
from chainwatch.store.cursor_store import CursorStore
from chainwatch.store.registry import EntityRegistry


@pytest.fixture
def session_factory(tmp_path) -> sessionmaker:
    """File-backed SQLite so worker threads see the same database."""

    engine = sa.create_engine(
        f"sqlite:///{tmp_path / 'chainwatch.db'}",
        future=True,
        connect_args={"check_same_thread": False},
    )
    sql_schema.METADATA.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    engine.dispose()


@pytest.fixture
def registry(session_factory) -> EntityRegistry:
    return EntityRegistry(session_factory=session_factory, max_per_user=20, max_total=200)


@pytest.fixture
def cursors(session_factory) -> CursorStore:
    return CursorStore(session_factory=session_factory)


@pytest.fixture
def ledger(session_factory) -> AlertLedger:
    return AlertLedger(session_factory=session_factory)
