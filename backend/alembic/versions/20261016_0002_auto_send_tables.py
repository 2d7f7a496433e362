"""Create auto-send recipient, settings, batch, item, and rate limit tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261016_0002"
down_revision = "20261016_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "auto_email_recipients",
        sa.Column("recipient_id", sa.String(length=64), nullable=False),
        sa.Column("email", sa.String(length=256), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("recipient_id"),
        sa.UniqueConstraint("email", name="uq_auto_email_recipients_email"),
    )

    op.create_table(
        "auto_send_settings",
        sa.Column("settings_id", sa.String(length=32), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("selected_recipient_ids_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("updated_by", sa.String(length=128), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("settings_id"),
    )

    op.create_table(
        "auto_send_batches",
        sa.Column("batch_id", sa.String(length=64), nullable=False),
        sa.Column("date_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("date_to", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_entries", sa.Integer(), nullable=False),
        sa.Column("batch_size", sa.Integer(), nullable=False),
        sa.Column("total_batches", sa.Integer(), nullable=False),
        sa.Column("recipients_count", sa.Integer(), nullable=False),
        sa.Column("include_certificates", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.PrimaryKeyConstraint("batch_id"),
    )
    op.create_index("ix_auto_send_batches_created_at", "auto_send_batches", ["created_at"], unique=False)

    op.create_table(
        "auto_send_batch_items",
        sa.Column("item_id", sa.String(length=64), nullable=False),
        sa.Column("batch_id", sa.String(length=64), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("entry_ids_json", sa.Text(), nullable=False),
        sa.Column("recipient_emails_json", sa.Text(), nullable=False),
        sa.Column("entries_count", sa.Integer(), nullable=False),
        sa.Column("include_certificates", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["batch_id"], ["auto_send_batches.batch_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("item_id"),
        sa.UniqueConstraint("batch_id", "sequence", name="uq_auto_send_batch_items_sequence"),
    )
    op.create_index("ix_auto_send_batch_items_batch_id", "auto_send_batch_items", ["batch_id"], unique=False)
    op.create_index("ix_auto_send_batch_items_status", "auto_send_batch_items", ["status"], unique=False)
    op.create_index("ix_auto_send_batch_items_created_at", "auto_send_batch_items", ["created_at"], unique=False)

    op.create_table(
        "rate_limit_counters",
        sa.Column("counter_key", sa.String(length=128), nullable=False),
        sa.Column("hit_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reset_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("counter_key"),
    )
    op.create_index("ix_rate_limit_counters_reset_at", "rate_limit_counters", ["reset_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_rate_limit_counters_reset_at", table_name="rate_limit_counters")
    op.drop_table("rate_limit_counters")

    op.drop_index("ix_auto_send_batch_items_created_at", table_name="auto_send_batch_items")
    op.drop_index("ix_auto_send_batch_items_status", table_name="auto_send_batch_items")
    op.drop_index("ix_auto_send_batch_items_batch_id", table_name="auto_send_batch_items")
    op.drop_table("auto_send_batch_items")

    op.drop_index("ix_auto_send_batches_created_at", table_name="auto_send_batches")
    op.drop_table("auto_send_batches")

    op.drop_table("auto_send_settings")
    op.drop_table("auto_email_recipients")
