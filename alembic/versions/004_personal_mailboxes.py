"""Personal mailbox addresses and stored messages.

Revision ID: 004_personal_mailboxes
Revises: 003_wallet_and_storage
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

revision: str = "004_personal_mailboxes"
down_revision: str | None = "003_wallet_and_storage"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "user_emails",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("email_address", sa.String(320), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default="true", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("user_id", name="uq_user_emails_user_id"),
        sa.UniqueConstraint("email_address", name="uq_user_emails_email_address"),
    )
    # Inbound lookups are case-insensitive
    op.create_index("ix_user_emails_address_lower", "user_emails", [sa.text("lower(email_address)")], unique=True)

    op.create_table(
        "user_email_messages",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "user_email_id",
            sa.BigInteger(),
            sa.ForeignKey("user_emails.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("message_type", sa.String(16), nullable=False),
        sa.Column("from_email", sa.String(320), nullable=False),
        sa.Column("from_name", sa.String(200), nullable=True),
        sa.Column("to_email", sa.Text(), nullable=False),
        sa.Column("subject", sa.String(998), server_default="", nullable=False),
        sa.Column("html_content", sa.Text(), nullable=True),
        sa.Column("text_content", sa.Text(), nullable=True),
        sa.Column("provider_message_id", sa.String(128), nullable=True),
        sa.Column("is_read", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_user_email_messages_user_created", "user_email_messages", ["user_id", "created_at"])
    op.execute(
        "ALTER TABLE user_email_messages ADD CONSTRAINT ck_user_email_messages_type "
        "CHECK (message_type IN ('sent', 'received'))"
    )


def downgrade() -> None:
    op.drop_table("user_email_messages")
    op.drop_table("user_emails")
