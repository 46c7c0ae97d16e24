"""SQLAlchemy metadata and engine helpers for the monitoring tables."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import sqlalchemy as sa
from sqlalchemy import Engine
from sqlalchemy.engine import URL
from sqlalchemy.orm import sessionmaker

from chainwatch.settings import Settings, get_settings

TIMESTAMP = sa.DateTime(timezone=True)
UUID_TYPE = sa.String(length=64)
AMOUNT = sa.Numeric(38, 8)

METADATA = sa.MetaData()

users = sa.Table(
    "users",
    METADATA,
    sa.Column("user_id", sa.Integer(), primary_key=True, autoincrement=True),
    sa.Column("external_id", sa.Text(), nullable=False),
    sa.Column("created_at", TIMESTAMP, nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    sa.UniqueConstraint("external_id", name="uq_users_external_id"),
)

monitored_entities = sa.Table(
    "monitored_entities",
    METADATA,
    sa.Column("entity_id", sa.Integer(), primary_key=True, autoincrement=True),
    sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False),
    sa.Column("chain", sa.String(length=16), nullable=False),
    sa.Column("address", sa.Text(), nullable=False),
    sa.Column("label", sa.Text(), nullable=False),
    sa.Column("min_amount", AMOUNT, nullable=False, server_default="0"),
    sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    sa.Column("cursor", sa.Text(), nullable=True),
    sa.Column("created_at", TIMESTAMP, nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    sa.Column("updated_at", TIMESTAMP, nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
)
sa.Index(
    "uq_monitored_entities_active",
    monitored_entities.c.user_id,
    monitored_entities.c.chain,
    monitored_entities.c.address,
    unique=True,
    sqlite_where=sa.text("is_active = 1"),
    postgresql_where=sa.text("is_active"),
)
sa.Index("idx_monitored_entities_chain_active", monitored_entities.c.chain, monitored_entities.c.is_active)

chain_cursors = sa.Table(
    "chain_cursors",
    METADATA,
    sa.Column("chain", sa.String(length=16), primary_key=True),
    sa.Column("last_block_number", sa.BigInteger(), nullable=False),
    sa.Column("updated_at", TIMESTAMP, nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
)

alert_events = sa.Table(
    "alert_events",
    METADATA,
    sa.Column("event_id", UUID_TYPE, primary_key=True),
    sa.Column("chain", sa.String(length=16), nullable=False),
    sa.Column("tx_id", sa.Text(), nullable=False),
    sa.Column(
        "entity_id",
        sa.Integer(),
        sa.ForeignKey("monitored_entities.entity_id", ondelete="CASCADE"),
        nullable=False,
    ),
    sa.Column("timestamp", TIMESTAMP, nullable=False),
    sa.Column("direction", sa.String(length=8), nullable=False),
    sa.Column("amount", AMOUNT, nullable=False),
    sa.Column("asset", sa.String(length=16), nullable=False),
    sa.Column("counterparty", sa.Text(), nullable=True),
    sa.Column("delivered", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    sa.Column("delivered_at", TIMESTAMP, nullable=True),
    sa.Column("delivery_attempts", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("last_error", sa.Text(), nullable=True),
    sa.Column("created_at", TIMESTAMP, nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    sa.UniqueConstraint("chain", "tx_id", "entity_id", name="uq_alert_events_chain_tx_entity"),
)
sa.Index("idx_alert_events_pending", alert_events.c.chain, alert_events.c.delivered)
sa.Index("idx_alert_events_entity_created", alert_events.c.entity_id, alert_events.c.created_at)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps read back from SQLite."""

    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _resolve_database_url(settings: Settings | None = None) -> str:
    """Return the SQLAlchemy URL considering overrides and configured backend."""

    url_override = os.getenv("CHAINWATCH_DATABASE_URL") or os.getenv("ALEMBIC_DATABASE_URL")
    if url_override:
        return url_override

    resolved = settings or get_settings()
    if resolved.storage.database_url:
        return resolved.storage.database_url

    backend = resolved.storage.structured_backend
    if backend == "sqlite":
        sqlite_path = Path(resolved.storage.sqlite_path)
        sqlite_path.parent.mkdir(parents=True, exist_ok=True)
        return URL.create("sqlite", database=sqlite_path.as_posix()).render_as_string(hide_password=False)

    raise NotImplementedError(f"Backend '{backend}' requires storage.database_url to be set")


def build_engine(*, echo: bool = False, settings: Settings | None = None) -> Engine:
    """Instantiate a SQLAlchemy engine aligned with project settings."""

    url = _resolve_database_url(settings)
    connect_args: dict[str, Any] = {}
    if url.startswith("sqlite:///"):
        connect_args["check_same_thread"] = False
    return sa.create_engine(url, echo=echo, future=True, pool_pre_ping=True, connect_args=connect_args)


def session_factory(*, settings: Settings | None = None, engine: Engine | None = None) -> sessionmaker:
    """Return a configured sessionmaker bound to the active engine."""

    bound = engine or build_engine(settings=settings)
    return sessionmaker(bind=bound, autoflush=False, autocommit=False, future=True)


__all__ = [
    "METADATA",
    "alert_events",
    "as_utc",
    "build_engine",
    "chain_cursors",
    "monitored_entities",
    "session_factory",
    "users",
    "utcnow",
]
