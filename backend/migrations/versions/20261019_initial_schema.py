"""Initial opscore schema

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name, nullable=False):
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=nullable)


def _money(name, nullable=False, default="0"):
    return sa.Column(name, sa.Numeric(14, 2), nullable=nullable, server_default=sa.text(default) if default else None)


def _quantity(name, nullable=False, default="0"):
    return sa.Column(name, sa.Numeric(14, 3), nullable=nullable, server_default=sa.text(default) if default else None)


def upgrade():
    # =========================================================================
    # USERS AND AUDIT
    # =========================================================================
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("username", sa.String(64), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("role", sa.String(32), nullable=False, server_default="viewer"),
        sa.Column("designation", sa.String(128), nullable=True),
        sa.Column("custom_permissions", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("updated_by_user_id", sa.Integer(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["updated_by_user_id"], ["users.id"], name="fk_users_updated_by_user_id_users"),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
        sa.UniqueConstraint("username", name="uq_users_username"),
        sa.UniqueConstraint("email", name="uq_users_email"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("users", schema=None) as batch_op:
        batch_op.create_index("ix_users_role_active", ["role", "is_active"], unique=False)

    op.create_table(
        "audit_log_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(32), nullable=False),
        sa.Column("old_values", sa.JSON(), nullable=True),
        sa.Column("new_values", sa.JSON(), nullable=True),
        sa.Column("performed_by", sa.Integer(), nullable=False),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        _timestamp("timestamp"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], name="fk_audit_log_entries_user_id_users"),
        sa.ForeignKeyConstraint(["performed_by"], ["users.id"], name="fk_audit_log_entries_performed_by_users"),
        sa.PrimaryKeyConstraint("id", name="pk_audit_log_entries"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("audit_log_entries", schema=None) as batch_op:
        batch_op.create_index("ix_audit_log_entries_user_id", ["user_id"], unique=False)
        batch_op.create_index("ix_audit_log_entries_performed_by", ["performed_by"], unique=False)
        batch_op.create_index("ix_audit_log_entries_user_action", ["user_id", "action"], unique=False)
        batch_op.create_index("ix_audit_log_entries_timestamp", ["timestamp"], unique=False)

    op.create_table(
        "login_attempts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("key", sa.String(320), nullable=False),
        sa.Column("identity", sa.String(255), nullable=False),
        sa.Column("origin", sa.String(64), nullable=True),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _timestamp("first_failed_at"),
        _timestamp("last_failed_at"),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_login_attempts"),
        sa.UniqueConstraint("key", name="uq_login_attempts_key"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("login_attempts", schema=None) as batch_op:
        batch_op.create_index("ix_login_attempts_identity", ["identity"], unique=False)
        batch_op.create_index("ix_login_attempts_expires_at", ["expires_at"], unique=False)

    # =========================================================================
    # CUSTOMERS AND STOCK LOTS
    # =========================================================================
    op.create_table(
        "customers",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("tier", sa.String(32), nullable=True),
        sa.Column("channel", sa.String(32), nullable=True),
        sa.Column("city", sa.String(128), nullable=True),
        sa.Column("payment_terms_days", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id", name="pk_customers"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "material_intake_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("material_name", sa.String(255), nullable=False),
        sa.Column("supplier_name", sa.String(255), nullable=True),
        sa.Column("lot_number", sa.String(64), nullable=True),
        _quantity("quantity_received", default=None),
        _quantity("remaining_quantity", default=None),
        sa.Column("unit", sa.String(16), nullable=False, server_default="kg"),
        _money("cost_per_unit"),
        _quantity("minimum_stock_level", nullable=True, default=None),
        _timestamp("intake_date"),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id", name="pk_material_intake_records"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("material_intake_records", schema=None) as batch_op:
        batch_op.create_index("ix_material_intake_material_date", ["material_name", "intake_date"], unique=False)

    # =========================================================================
    # ORDERS AND FINANCE
    # =========================================================================
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_number", sa.String(32), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        _timestamp("order_date"),
        sa.Column("expected_delivery", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="draft"),
        sa.Column("payment_status", sa.String(16), nullable=False, server_default="pending"),
        _money("total_amount"),
        _money("tax_amount"),
        _money("discount_amount"),
        _money("net_amount", default=None),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"], name="fk_orders_customer_id_customers"),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], name="fk_orders_created_by_user_id_users"),
        sa.PrimaryKeyConstraint("id", name="pk_orders"),
        sa.UniqueConstraint("order_number", name="uq_orders_order_number"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("orders", schema=None) as batch_op:
        batch_op.create_index("ix_orders_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_orders_status", ["status"], unique=False)
        batch_op.create_index("ix_orders_customer_date", ["customer_id", "order_date"], unique=False)

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("batch_id", sa.Integer(), nullable=True),
        sa.Column("product_name", sa.String(255), nullable=True),
        sa.Column("packaging_type", sa.String(64), nullable=True),
        _quantity("quantity", default=None),
        _money("unit_price"),
        _money("line_total"),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], name="fk_order_items_order_id_orders"),
        sa.ForeignKeyConstraint(
            ["batch_id"], ["material_intake_records.id"], name="fk_order_items_batch_id_material_intake_records",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_order_items"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("order_items", schema=None) as batch_op:
        batch_op.create_index("ix_order_items_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_order_items_batch_id", ["batch_id"], unique=False)

    # order_id is not a foreign key: dangling invoices are integrity findings.
    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("invoice_number", sa.String(32), nullable=False),
        _timestamp("issue_date"),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payment_terms_days", sa.Integer(), nullable=False, server_default=sa.text("30")),
        _money("total_amount", default=None),
        _money("paid_amount"),
        sa.Column("status", sa.String(16), nullable=False, server_default="draft"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id", name="pk_invoices"),
        sa.UniqueConstraint("invoice_number", name="uq_invoices_invoice_number"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("invoices", schema=None) as batch_op:
        batch_op.create_index("ix_invoices_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_invoices_due_status", ["due_date", "status"], unique=False)

    op.create_table(
        "financial_ledger",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(32), nullable=False),
        sa.Column("reference_type", sa.String(32), nullable=False),
        sa.Column("reference_id", sa.Integer(), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=True),
        _money("amount", default=None),
        sa.Column("description", sa.Text(), nullable=True),
        _timestamp("transaction_date"),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(
            ["created_by_user_id"], ["users.id"], name="fk_financial_ledger_created_by_user_id_users",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_financial_ledger"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("financial_ledger", schema=None) as batch_op:
        batch_op.create_index("ix_financial_ledger_customer_id", ["customer_id"], unique=False)
        batch_op.create_index("ix_financial_ledger_reference", ["reference_type", "reference_id"], unique=False)

    op.create_table(
        "document_sequences",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("document_type", sa.String(32), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("next_number", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.PrimaryKeyConstraint("id", name="pk_document_sequences"),
        sa.UniqueConstraint("document_type", "year", name="uq_document_sequences_type_year"),
        sqlite_autoincrement=True,
    )

    # =========================================================================
    # PRODUCTION
    # =========================================================================
    op.create_table(
        "production_batches",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("batch_number", sa.String(64), nullable=False),
        _timestamp("production_date"),
        sa.Column("status", sa.String(32), nullable=False, server_default="in_progress"),
        _money("total_input_cost"),
        _quantity("output_litres"),
        _money("cost_per_litre"),
        sa.Column("yield_percentage", sa.Numeric(7, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("quality_grade", sa.String(16), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(
            ["created_by_user_id"], ["users.id"], name="fk_production_batches_created_by_user_id_users",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_production_batches"),
        sa.UniqueConstraint("batch_number", name="uq_production_batches_batch_number"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("production_batches", schema=None) as batch_op:
        batch_op.create_index("ix_production_batches_production_date", ["production_date"], unique=False)

    op.create_table(
        "batch_inputs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("batch_id", sa.Integer(), nullable=False),
        sa.Column("material_intake_id", sa.Integer(), nullable=False),
        _quantity("quantity_used", default=None),
        _money("cost_per_unit"),
        _money("total_cost"),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["batch_id"], ["production_batches.id"], name="fk_batch_inputs_batch_id_production_batches"),
        sa.ForeignKeyConstraint(
            ["material_intake_id"], ["material_intake_records.id"],
            name="fk_batch_inputs_material_intake_id_material_intake_records",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_batch_inputs"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("batch_inputs", schema=None) as batch_op:
        batch_op.create_index("ix_batch_inputs_batch_id", ["batch_id"], unique=False)
        batch_op.create_index("ix_batch_inputs_material_intake_id", ["material_intake_id"], unique=False)

    op.create_table(
        "batch_rollbacks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("batch_id", sa.Integer(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("original_inputs", sa.JSON(), nullable=False),
        sa.Column("restored", sa.JSON(), nullable=False),
        sa.Column("failed", sa.JSON(), nullable=False),
        sa.Column("performed_by_user_id", sa.Integer(), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(
            ["performed_by_user_id"], ["users.id"], name="fk_batch_rollbacks_performed_by_user_id_users",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_batch_rollbacks"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("batch_rollbacks", schema=None) as batch_op:
        batch_op.create_index("ix_batch_rollbacks_batch_id", ["batch_id"], unique=False)

    # =========================================================================
    # INVENTORY MOVEMENTS
    # =========================================================================
    op.create_table(
        "inventory_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("material_intake_id", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(16), nullable=False),
        _quantity("quantity_changed", default=None),
        _quantity("previous_quantity", default=None),
        _quantity("new_quantity", default=None),
        sa.Column("reference_type", sa.String(32), nullable=True),
        sa.Column("reference_id", sa.Integer(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        _timestamp("occurred_at"),
        sa.ForeignKeyConstraint(
            ["material_intake_id"], ["material_intake_records.id"],
            name="fk_inventory_transactions_material_intake_id_material_intake_records",
        ),
        sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], name="fk_inventory_transactions_actor_user_id_users"),
        sa.PrimaryKeyConstraint("id", name="pk_inventory_transactions"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("inventory_transactions", schema=None) as batch_op:
        batch_op.create_index(
            "ix_inventory_transactions_lot_occurred", ["material_intake_id", "occurred_at"], unique=False,
        )
        batch_op.create_index(
            "ix_inventory_transactions_reference", ["reference_type", "reference_id"], unique=False,
        )

    op.create_table(
        "pending_inventory_writes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("material_intake_id", sa.Integer(), nullable=False),
        sa.Column("direction", sa.String(16), nullable=False),
        _quantity("quantity", default=None),
        sa.Column("reference_type", sa.String(32), nullable=True),
        sa.Column("reference_id", sa.Integer(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        _timestamp("next_attempt_at"),
        _timestamp("created_at"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_pending_inventory_writes"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("pending_inventory_writes", schema=None) as batch_op:
        batch_op.create_index(
            "ix_pending_inventory_writes_status_next", ["status", "next_attempt_at"], unique=False,
        )

    # =========================================================================
    # DATA INTEGRITY AND NOTIFICATIONS
    # =========================================================================
    op.create_table(
        "data_integrity_issues",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("issue_key", sa.String(128), nullable=False),
        sa.Column("issue_type", sa.String(64), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("entity_type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        _timestamp("detected_at"),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by_user_id", sa.Integer(), nullable=True),
        sa.Column("resolution", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(
            ["resolved_by_user_id"], ["users.id"], name="fk_data_integrity_issues_resolved_by_user_id_users",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_data_integrity_issues"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("data_integrity_issues", schema=None) as batch_op:
        batch_op.create_index("ix_data_integrity_issues_issue_key", ["issue_key"], unique=False)
        batch_op.create_index("ix_data_integrity_issues_type_detected", ["issue_type", "detected_at"], unique=False)

    op.create_table(
        "data_integrity_alerts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("issue_type", sa.String(64), nullable=False),
        sa.Column("fingerprint", sa.String(64), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("channels", sa.JSON(), nullable=False),
        _timestamp("triggered_at"),
        _timestamp("last_triggered_at"),
        sa.Column("occurrences", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("acknowledged", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("acknowledged_by_user_id", sa.Integer(), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["acknowledged_by_user_id"], ["users.id"], name="fk_data_integrity_alerts_acknowledged_by_user_id_users",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_data_integrity_alerts"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("data_integrity_alerts", schema=None) as batch_op:
        batch_op.create_index(
            "ix_data_integrity_alerts_type_fingerprint", ["issue_type", "fingerprint"], unique=False,
        )

    op.create_table(
        "system_notifications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False, server_default="info"),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("target_roles", sa.JSON(), nullable=False),
        sa.Column("target_user_id", sa.Integer(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(
            ["target_user_id"], ["users.id"], name="fk_system_notifications_target_user_id_users",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_system_notifications"),
        sqlite_autoincrement=True,
    )

    with op.batch_alter_table("system_notifications", schema=None) as batch_op:
        batch_op.create_index("ix_system_notifications_target_user_id", ["target_user_id"], unique=False)


def downgrade():
    op.drop_table("system_notifications")
    op.drop_table("data_integrity_alerts")
    op.drop_table("data_integrity_issues")
    op.drop_table("pending_inventory_writes")
    op.drop_table("inventory_transactions")
    op.drop_table("batch_rollbacks")
    op.drop_table("batch_inputs")
    op.drop_table("production_batches")
    op.drop_table("document_sequences")
    op.drop_table("financial_ledger")
    op.drop_table("invoices")
    op.drop_table("order_items")
    op.drop_table("orders")
    op.drop_table("material_intake_records")
    op.drop_table("customers")
    op.drop_table("login_attempts")
    op.drop_table("audit_log_entries")
    op.drop_table("users")
