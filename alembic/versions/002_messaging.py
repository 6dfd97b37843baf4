"""Direct messages, notifications and Web Push subscriptions.

Revision ID: 002_messaging
Revises: 001_users_and_auth
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

revision: str = "002_messaging"
down_revision: str | None = "001_users_and_auth"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _user_fk(ondelete: str = "CASCADE") -> sa.ForeignKey:
    return sa.ForeignKey("users.id", ondelete=ondelete)


def upgrade() -> None:
    # --- Threads ---
    op.create_table(
        "dm_threads",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_a_id", sa.BigInteger(), _user_fk(), nullable=False),
        sa.Column("user_b_id", sa.BigInteger(), _user_fk(), nullable=False),
        sa.Column("initiated_by", sa.BigInteger(), _user_fk("SET NULL"), nullable=True),
        sa.Column("request_required", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("request_resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_message_preview", sa.String(255), nullable=True),
        sa.Column("last_message_sender_id", sa.BigInteger(), _user_fk("SET NULL"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("user_a_id", "user_b_id", name="uq_dm_threads_user_a_id"),
    )
    op.create_index("ix_dm_threads_user_b_id", "dm_threads", ["user_b_id"])
    # Pairs are stored low id first
    op.execute("ALTER TABLE dm_threads ADD CONSTRAINT ck_dm_threads_ordered_pair CHECK (user_a_id < user_b_id)")

    op.create_table(
        "dm_participants",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("thread_id", sa.BigInteger(), sa.ForeignKey("dm_threads.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.BigInteger(), _user_fk(), nullable=False),
        sa.Column("status", sa.String(16), server_default="active", nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("muted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("joined_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("thread_id", "user_id", name="uq_dm_participants_thread_id"),
    )
    op.create_index("ix_dm_participants_user_id", "dm_participants", ["user_id"])
    op.execute(
        "ALTER TABLE dm_participants ADD CONSTRAINT ck_dm_participants_status "
        "CHECK (status IN ('active', 'pending', 'blocked'))"
    )

    # --- Messages ---
    op.create_table(
        "dm_messages",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("thread_id", sa.BigInteger(), sa.ForeignKey("dm_threads.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sender_id", sa.BigInteger(), _user_fk(), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("message_type", sa.String(16), server_default="text", nullable=False),
        sa.Column("has_attachments", sa.Boolean(), server_default="false", nullable=False),
        sa.Column(
            "reply_to_message_id",
            sa.BigInteger(),
            sa.ForeignKey("dm_messages.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_dm_messages_thread_created", "dm_messages", ["thread_id", "created_at"])

    op.create_table(
        "dm_message_media",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("message_id", sa.BigInteger(), sa.ForeignKey("dm_messages.id", ondelete="CASCADE"), nullable=False),
        sa.Column("media_type", sa.String(16), nullable=False),
        sa.Column("storage_path", sa.Text(), nullable=False),
        sa.Column("mime_type", sa.String(128), nullable=True),
        sa.Column("file_size", sa.BigInteger(), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_dm_message_media_message_id", "dm_message_media", ["message_id"])

    op.create_table(
        "dm_message_reads",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("message_id", sa.BigInteger(), sa.ForeignKey("dm_messages.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.BigInteger(), _user_fk(), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("message_id", "user_id", name="uq_dm_message_reads_message_id"),
    )

    # --- Notifications ---
    op.create_table(
        "notifications",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), _user_fk(), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("action_url", sa.String(512), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), server_default="{}", nullable=False),
        sa.Column("is_read", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_notifications_user_created", "notifications", ["user_id", "created_at"])
    op.create_index(
        "ix_notifications_user_unread",
        "notifications",
        ["user_id"],
        postgresql_where=sa.text("is_read = false"),
    )

    op.create_table(
        "push_subscriptions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), _user_fk(), nullable=False),
        sa.Column("endpoint", sa.Text(), nullable=False),
        sa.Column("p256dh", sa.String(255), nullable=False),
        sa.Column("auth", sa.String(255), nullable=False),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("endpoint", name="uq_push_subscriptions_endpoint"),
    )
    op.create_index("ix_push_subscriptions_user_id", "push_subscriptions", ["user_id"])


def downgrade() -> None:
    op.drop_table("push_subscriptions")
    op.drop_table("notifications")
    op.drop_table("dm_message_reads")
    op.drop_table("dm_message_media")
    op.drop_table("dm_messages")
    op.drop_table("dm_participants")
    op.drop_table("dm_threads")
