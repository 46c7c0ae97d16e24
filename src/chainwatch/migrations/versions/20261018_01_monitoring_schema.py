"""Monitoring baseline schema: users, entities, cursors and the alert ledger."""

from __future__ import annotations

from typing import Sequence

from alembic import op
import sqlalchemy as sa

revision: str = "20261018_01"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

UUID_TYPE = sa.String(length=64)
TIMESTAMP = sa.DateTime(timezone=True)
AMOUNT = sa.Numeric(38, 8)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("external_id", sa.Text(), nullable=False),
        sa.Column("created_at", TIMESTAMP, nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.UniqueConstraint("external_id", name="uq_users_external_id"),
    )

    op.create_table(
        "monitored_entities",
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
    op.create_index(
        "uq_monitored_entities_active",
        "monitored_entities",
        ["user_id", "chain", "address"],
        unique=True,
        sqlite_where=sa.text("is_active = 1"),
        postgresql_where=sa.text("is_active"),
    )
    op.create_index("idx_monitored_entities_chain_active", "monitored_entities", ["chain", "is_active"])

    op.create_table(
        "chain_cursors",
        sa.Column("chain", sa.String(length=16), primary_key=True),
        sa.Column("last_block_number", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", TIMESTAMP, nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )

    op.create_table(
        "alert_events",
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
    op.create_index("idx_alert_events_pending", "alert_events", ["chain", "delivered"])
    op.create_index("idx_alert_events_entity_created", "alert_events", ["entity_id", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_alert_events_entity_created", table_name="alert_events")
    op.drop_index("idx_alert_events_pending", table_name="alert_events")
    op.drop_table("alert_events")

    op.drop_table("chain_cursors")

    op.drop_index("idx_monitored_entities_chain_active", table_name="monitored_entities")
    op.drop_index("uq_monitored_entities_active", table_name="monitored_entities")
    op.drop_table("monitored_entities")

    op.drop_table("users")
