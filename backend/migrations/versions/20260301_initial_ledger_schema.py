"""Initial inventory ledger schema

Revision ID: 20260301_initial_ledger
Revises:
Create Date: 2026-03-01
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20260301_initial_ledger"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # Master data
    op.create_table(
        "branches",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("analytics_branch_code", sa.String(64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("analytics_branch_code", name="uq_branches_analytics_code"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "departments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("branch_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["branch_id"], ["branches.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("departments", schema=None) as batch_op:
        batch_op.create_index("ix_departments_branch_id", ["branch_id"], unique=False)
        batch_op.create_index("ix_departments_branch_active", ["branch_id", "is_active"], unique=False)

    op.create_table(
        "units",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("abbreviation", sa.String(16), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "product_groups",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_internal", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "product_group_internal_scopes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("product_group_id", sa.Integer(), nullable=False),
        sa.Column("department_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["product_group_id"], ["product_groups.id"]),
        sa.ForeignKeyConstraint(["department_id"], ["departments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("product_group_id", "department_id", name="uq_pg_scope_group_dept"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("product_group_internal_scopes", schema=None) as batch_op:
        batch_op.create_index("ix_product_group_internal_scopes_product_group_id", ["product_group_id"], unique=False)
        batch_op.create_index("ix_product_group_internal_scopes_department_id", ["department_id"], unique=False)

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(64), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("unit_id", sa.Integer(), nullable=True),
        sa.Column("product_group_id", sa.Integer(), nullable=True),
        sa.Column("default_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("is_countable", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.ForeignKeyConstraint(["unit_id"], ["units.id"]),
        sa.ForeignKeyConstraint(["product_group_id"], ["product_groups.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code", name="uq_products_code"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("products", schema=None) as batch_op:
        batch_op.create_index("ix_products_group", ["product_group_id"], unique=False)

    # Recipes
    op.create_table(
        "unit_conversions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("from_unit_id", sa.Integer(), nullable=False),
        sa.Column("to_unit_id", sa.Integer(), nullable=False),
        sa.Column("multiplier", sa.Numeric(16, 6), nullable=False),
        sa.ForeignKeyConstraint(["from_unit_id"], ["units.id"]),
        sa.ForeignKeyConstraint(["to_unit_id"], ["units.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("from_unit_id", "to_unit_id", name="uq_unit_conversions_pair"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("unit_conversions", schema=None) as batch_op:
        batch_op.create_index("ix_unit_conversions_from_unit_id", ["from_unit_id"], unique=False)
        batch_op.create_index("ix_unit_conversions_to_unit_id", ["to_unit_id"], unique=False)

    op.create_table(
        "menu_recipes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("menu_barcode", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("menu_barcode", name="uq_menu_recipes_barcode"),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "menu_recipe_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("recipe_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("unit_id", sa.Integer(), nullable=True),
        sa.Column("quantity", sa.Numeric(14, 4), nullable=False),
        sa.ForeignKeyConstraint(["recipe_id"], ["menu_recipes.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.ForeignKeyConstraint(["unit_id"], ["units.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("menu_recipe_items", schema=None) as batch_op:
        batch_op.create_index("ix_menu_recipe_items_recipe", ["recipe_id"], unique=False)
        batch_op.create_index("ix_menu_recipe_items_product_id", ["product_id"], unique=False)

    # Ledger
    op.create_table(
        "inventory_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("department_id", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(32), nullable=False),
        sa.Column("quantity", sa.Numeric(14, 3), nullable=False),
        sa.Column("balance_before", sa.Numeric(14, 3), nullable=False, server_default=sa.text("0")),
        sa.Column("balance_after", sa.Numeric(14, 3), nullable=False),
        sa.Column("reference_type", sa.String(50), nullable=True),
        sa.Column("reference_id", sa.String(160), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.CheckConstraint(
            "transaction_type IN ('receive', 'sale', 'adjustment', 'transfer_in', 'transfer_out', "
            "'initial', 'production_transform_in', 'production_transform_out')",
            name="ck_invtx_transaction_type",
        ),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.ForeignKeyConstraint(["department_id"], ["departments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("inventory_transactions", schema=None) as batch_op:
        batch_op.create_index("ix_inventory_transactions_product_id", ["product_id"], unique=False)
        batch_op.create_index("ix_inventory_transactions_department_id", ["department_id"], unique=False)
        batch_op.create_index("ix_inventory_transactions_occurred_at", ["occurred_at"], unique=False)
        batch_op.create_index("ix_invtx_product_dept_id", ["product_id", "department_id", "id"], unique=False)
        batch_op.create_index("ix_invtx_reference", ["reference_type", "reference_id"], unique=False)
        batch_op.create_index("ix_invtx_type_occurred", ["transaction_type", "occurred_at"], unique=False)

    op.create_table(
        "inventory_balance",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("department_id", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Numeric(14, 3), nullable=False, server_default=sa.text("0")),
        sa.Column("last_transaction_id", sa.Integer(), nullable=True),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.ForeignKeyConstraint(["department_id"], ["departments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("product_id", "department_id", name="uk_product_dept"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("inventory_balance", schema=None) as batch_op:
        batch_op.create_index("ix_inventory_balance_product_id", ["product_id"], unique=False)
        batch_op.create_index("ix_inventory_balance_dept", ["department_id"], unique=False)

    op.create_table(
        "reference_sequences",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("department_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("next_number", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["department_id"], ["departments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("department_id", "kind", name="uq_reference_sequences_dept_kind"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("reference_sequences", schema=None) as batch_op:
        batch_op.create_index("ix_reference_sequences_department_id", ["department_id"], unique=False)

    # Counts
    op.create_table(
        "stock_checks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("department_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("check_date", sa.Date(), nullable=False),
        sa.Column("counted_quantity", sa.Numeric(14, 3), nullable=False),
        sa.Column("ledger_cursor_id", sa.Integer(), nullable=True),
        sa.Column("system_quantity", sa.Numeric(14, 3), nullable=False, server_default=sa.text("0")),
        sa.Column("counted_by", sa.Integer(), nullable=True),
        sa.Column("checked_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["department_id"], ["departments.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("product_id", "department_id", "check_date", name="uq_stock_checks_key_date"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("stock_checks", schema=None) as batch_op:
        batch_op.create_index("ix_stock_checks_product_id", ["product_id"], unique=False)
        batch_op.create_index("ix_stock_checks_dept_date", ["department_id", "check_date"], unique=False)

    # Purchasing (read by backfills)
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_number", sa.String(64), nullable=False),
        sa.Column("department_id", sa.Integer(), nullable=False),
        sa.Column("order_date", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.ForeignKeyConstraint(["department_id"], ["departments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_number", name="uq_orders_number"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("orders", schema=None) as batch_op:
        batch_op.create_index("ix_orders_department_id", ["department_id"], unique=False)

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Numeric(14, 3), nullable=False, server_default=sa.text("0")),
        sa.Column("received_quantity", sa.Numeric(14, 3), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("received_by_user_id", sa.Integer(), nullable=True),
        sa.Column("receive_notes", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["order_id"], ["orders.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("order_items", schema=None) as batch_op:
        batch_op.create_index("ix_order_items_order_id", ["order_id"], unique=False)
        batch_op.create_index("ix_order_items_product_id", ["product_id"], unique=False)
        batch_op.create_index("ix_order_items_received_at", ["received_at"], unique=False)

    # Sync runs
    op.create_table(
        "sales_sync_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("branch_id", sa.Integer(), nullable=True),
        sa.Column("dry_run", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(16), nullable=False, server_default="processing"),
        sa.Column("planned_deductions", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("applied_deductions", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("skipped_existing", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("triggered_by", sa.Integer(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('processing', 'completed', 'failed', 'cancelled')",
            name="ck_sales_sync_logs_status",
        ),
        sa.ForeignKeyConstraint(["branch_id"], ["branches.id"]),
        sa.PrimaryKeyConstraint("id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("sales_sync_logs", schema=None) as batch_op:
        batch_op.create_index("ix_sales_sync_logs_started", ["started_at"], unique=False)


def downgrade():
    for table in (
        "sales_sync_logs",
        "order_items",
        "orders",
        "stock_checks",
        "reference_sequences",
        "inventory_balance",
        "inventory_transactions",
        "menu_recipe_items",
        "menu_recipes",
        "unit_conversions",
        "products",
        "product_group_internal_scopes",
        "product_groups",
        "units",
        "departments",
        "branches",
    ):
        op.drop_table(table)
