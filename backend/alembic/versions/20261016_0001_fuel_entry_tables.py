"""Create reference, fuel entry, registration counter, and audit log tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261016_0001"
down_revision = None
branch_labels = None
depends_on = None

REGISTRATION_NUMBER_START = 12345


def upgrade() -> None:
    op.create_table(
        "warehouses",
        sa.Column("warehouse_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("location", sa.String(length=256), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("warehouse_id"),
        sa.UniqueConstraint("code", name="uq_warehouses_code"),
    )

    op.create_table(
        "operators",
        sa.Column("operator_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("email", sa.String(length=256), nullable=True),
        sa.PrimaryKeyConstraint("operator_id"),
    )

    op.create_table(
        "trade_parties",
        sa.Column("party_id", sa.String(length=64), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("code", sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint("party_id", "kind"),
    )

    counters = op.create_table(
        "registration_counters",
        sa.Column("counter_name", sa.String(length=64), nullable=False),
        sa.Column("current_value", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("counter_name"),
    )
    op.bulk_insert(
        counters,
        [{"counter_name": "fuel_entry_registration", "current_value": REGISTRATION_NUMBER_START - 1}],
    )

    op.create_table(
        "fuel_entries",
        sa.Column("entry_id", sa.String(length=64), nullable=False),
        sa.Column("registration_number", sa.Integer(), nullable=False),
        sa.Column("entry_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("warehouse_id", sa.String(length=64), nullable=False),
        sa.Column("product_name", sa.String(length=256), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("operator_id", sa.String(length=128), nullable=False),
        sa.Column("delivery_note_number", sa.String(length=128), nullable=True),
        sa.Column("delivery_note_date", sa.Date(), nullable=True),
        sa.Column("customs_declaration_number", sa.String(length=128), nullable=True),
        sa.Column("customs_declaration_date", sa.Date(), nullable=True),
        sa.Column("is_higher_quality", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("improved_characteristics_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("country_of_origin", sa.String(length=128), nullable=True),
        sa.Column("laboratory_name", sa.String(length=256), nullable=True),
        sa.Column("lab_accreditation_number", sa.String(length=128), nullable=True),
        sa.Column("test_report_number", sa.String(length=128), nullable=True),
        sa.Column("test_report_date", sa.Date(), nullable=True),
        sa.Column("order_opened_by", sa.String(length=256), nullable=True),
        sa.Column("pickup_location", sa.String(length=256), nullable=True),
        sa.Column("supplier_id", sa.String(length=64), nullable=True),
        sa.Column("transporter_id", sa.String(length=64), nullable=True),
        sa.Column("driver_name", sa.String(length=256), nullable=True),
        sa.Column("certificate_path", sa.String(length=512), nullable=True),
        sa.Column("certificate_file_name", sa.String(length=256), nullable=True),
        sa.Column("certificate_uploaded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["warehouse_id"], ["warehouses.warehouse_id"]),
        sa.PrimaryKeyConstraint("entry_id"),
        sa.UniqueConstraint("registration_number", name="uq_fuel_entries_registration_number"),
    )
    op.create_index("ix_fuel_entries_entry_date", "fuel_entries", ["entry_date"], unique=False)
    op.create_index("ix_fuel_entries_is_active", "fuel_entries", ["is_active"], unique=False)
    op.create_index("ix_fuel_entries_operator_id", "fuel_entries", ["operator_id"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("audit_id", sa.String(length=64), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=True),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("changes_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("audit_id"),
    )
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"], unique=False)
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"], unique=False)
    op.create_index("ix_audit_logs_entity_id", "audit_logs", ["entity_id"], unique=False)
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_created_at", table_name="audit_logs")
    op.drop_index("ix_audit_logs_entity_id", table_name="audit_logs")
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_actor_id", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("ix_fuel_entries_operator_id", table_name="fuel_entries")
    op.drop_index("ix_fuel_entries_is_active", table_name="fuel_entries")
    op.drop_index("ix_fuel_entries_entry_date", table_name="fuel_entries")
    op.drop_table("fuel_entries")

    op.drop_table("registration_counters")
    op.drop_table("trade_parties")
    op.drop_table("operators")
    op.drop_table("warehouses")
