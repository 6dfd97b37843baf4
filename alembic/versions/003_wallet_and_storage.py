"""Points wallet, transaction ledger, platform settings and storage quotas.

Revision ID: 003_wallet_and_storage
Revises: 002_messaging
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

revision: str = "003_wallet_and_storage"
down_revision: str | None = "002_messaging"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- Platform settings (singleton row id=1) ---
    op.create_table(
        "platform_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("buy_price_per_point", sa.Numeric(12, 4), server_default="1", nullable=False),
        sa.Column("user_value_per_point", sa.Numeric(12, 4), server_default="1", nullable=False),
        sa.Column("mandatory_topup_amount", sa.Numeric(12, 2), server_default="150", nullable=False),
        sa.Column("topup_bonus_enabled", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("topup_bonus_points", sa.Integer(), server_default="0", nullable=False),
        sa.Column("topup_bonus_end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("storage_purchase_price_per_gb", sa.Integer(), server_default="10", nullable=False),
        sa.Column("storage_monthly_cost_per_gb", sa.Integer(), server_default="4", nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.execute("ALTER TABLE platform_settings ADD CONSTRAINT ck_platform_settings_singleton CHECK (id = 1)")
    op.execute("INSERT INTO platform_settings (id) VALUES (1)")

    # --- Wallets ---
    op.create_table(
        "wallets",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("points_balance", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_topup_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_topup_due_on", sa.Date(), nullable=True),
        sa.Column("last_topup_reminder_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("user_id", name="uq_wallets_user_id"),
    )
    op.execute("ALTER TABLE wallets ADD CONSTRAINT ck_wallets_non_negative CHECK (points_balance >= 0)")

    op.create_table(
        "transactions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), server_default="verified", nullable=False),
        sa.Column("amount_ttd", sa.Numeric(12, 2), nullable=True),
        sa.Column("points_delta", sa.Integer(), server_default="0", nullable=False),
        sa.Column("buy_price_per_point", sa.Numeric(12, 4), nullable=True),
        sa.Column("user_value_per_point", sa.Numeric(12, 4), nullable=True),
        sa.Column("receipt_path", sa.Text(), nullable=True),
        sa.Column("bank_account_id", sa.String(64), nullable=True),
        sa.Column("description", sa.String(256), nullable=True),
        sa.Column("rejection_reason", sa.String(256), nullable=True),
        sa.Column("verified_by", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_transactions_user_created", "transactions", ["user_id", "created_at"])
    op.create_index(
        "ix_transactions_pending",
        "transactions",
        ["created_at"],
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.execute(
        "ALTER TABLE transactions ADD CONSTRAINT ck_transactions_status "
        "CHECK (status IN ('pending', 'verified', 'rejected'))"
    )

    op.create_table(
        "revenue_ledger",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "transaction_id",
            sa.BigInteger(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("amount_ttd", sa.Numeric(12, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # --- Storage ---
    op.create_table(
        "user_storage",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("storage_limit_bytes", sa.BigInteger(), nullable=False),
        sa.Column("storage_used_bytes", sa.BigInteger(), server_default="0", nullable=False),
        sa.Column("monthly_cost_points", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_billing_date", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("user_id", name="uq_user_storage_user_id"),
    )

    op.create_table(
        "community_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("owner_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_community_events_owner_id", "community_events", ["owner_id"])

    op.create_table(
        "event_recordings",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            "event_id",
            sa.BigInteger(),
            sa.ForeignKey("community_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("file_size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("storage_path", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_event_recordings_event_id", "event_recordings", ["event_id"])


def downgrade() -> None:
    op.drop_table("event_recordings")
    op.drop_table("community_events")
    op.drop_table("user_storage")
    op.drop_table("revenue_ledger")
    op.drop_table("transactions")
    op.drop_table("wallets")
    op.drop_table("platform_settings")
