"""manufacturing core: materials, work centers, boms, orders, stock ledger

Revision ID: 0001_manufacturing_core
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_manufacturing_core"
down_revision = None
branch_labels = None
depends_on = None

def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)

def upgrade():
    op.create_table(
        "materials",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.String(length=1000), nullable=True),
        sa.Column("category", sa.String(length=32), nullable=False),
        sa.Column("unit", sa.String(length=16), nullable=False),
        sa.Column("on_hand", sa.Numeric(14, 3), nullable=False, server_default=sa.text("0")),
        sa.Column("reserved", sa.Numeric(14, 3), nullable=False, server_default=sa.text("0")),
        sa.Column("reorder_level", sa.Numeric(14, 3), nullable=False, server_default=sa.text("0")),
        sa.Column("max_stock", sa.Numeric(14, 3), nullable=False, server_default=sa.text("1000")),
        sa.Column("average_cost", sa.Numeric(14, 4), nullable=False, server_default=sa.text("0")),
        sa.Column("last_cost", sa.Numeric(14, 4), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="Active"),
        _ts("created_at", nullable=False),
        _ts("updated_at"),
        sa.CheckConstraint("reserved >= 0", name="ck_material_reserved_nonneg"),
        sa.CheckConstraint("on_hand >= reserved", name="ck_material_on_hand_covers_reserved"),
    )
    op.create_index("ix_materials_code", "materials", ["code"], unique=True)
    op.create_index("ix_materials_name", "materials", ["name"])
    op.create_index("ix_materials_category", "materials", ["category"])
    op.create_index("ix_materials_status", "materials", ["status"])

    op.create_table(
        "work_centers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False, unique=True),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("center_type", sa.String(length=32), nullable=False),
        sa.Column("location", sa.String(length=128), nullable=False),
        sa.Column("cost_per_hour", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("hours_per_day", sa.Numeric(5, 2), nullable=False, server_default=sa.text("8")),
        sa.Column("days_per_week", sa.Integer(), nullable=False, server_default=sa.text("5")),
        sa.Column("efficiency_pct", sa.Numeric(5, 2), nullable=False, server_default=sa.text("85")),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="Active"),
        sa.Column("downtime_minutes", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        _ts("last_downtime_at"),
        sa.Column("downtime_reason", sa.String(length=500), nullable=True),
        _ts("created_at", nullable=False),
    )
    op.create_index("ix_work_centers_code", "work_centers", ["code"], unique=True)
    op.create_index("ix_work_centers_status", "work_centers", ["status"])

    op.create_table(
        "boms",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reference", sa.String(length=64), nullable=False),
        sa.Column("finished_product_id", sa.Integer(), sa.ForeignKey("materials.id"), nullable=False),
        sa.Column("version", sa.String(length=16), nullable=False, server_default="1.0"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="Draft"),
        sa.Column("description", sa.String(length=1000), nullable=True),
        sa.Column("output_quantity", sa.Numeric(14, 3), nullable=False, server_default=sa.text("1")),
        sa.Column("unit", sa.String(length=16), nullable=False, server_default="pcs"),
        sa.Column("estimated_cost", sa.Numeric(16, 4), nullable=False, server_default=sa.text("0")),
        sa.Column("estimated_cycle_time", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("approved_by", sa.String(length=128), nullable=True),
        _ts("approved_at"),
        _ts("obsoleted_at"),
        _ts("created_at", nullable=False),
        sa.CheckConstraint("status in ('Draft','Active','Obsolete')", name="ck_bom_status"),
    )
    op.create_index("ix_boms_reference", "boms", ["reference"], unique=True)
    op.create_index("ix_boms_finished_product_id", "boms", ["finished_product_id"])
    op.create_index("ix_boms_status", "boms", ["status"])

    op.create_table(
        "bom_components",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("bom_id", sa.Integer(), sa.ForeignKey("boms.id", ondelete="CASCADE"), nullable=False),
        sa.Column("line_number", sa.Integer(), nullable=False),
        sa.Column("material_id", sa.Integer(), sa.ForeignKey("materials.id"), nullable=False),
        sa.Column("quantity", sa.Numeric(14, 3), nullable=False),
        sa.Column("unit", sa.String(length=16), nullable=False),
        sa.Column("unit_cost", sa.Numeric(14, 4), nullable=False, server_default=sa.text("0")),
        sa.Column("waste_pct", sa.Numeric(5, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("is_critical", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("notes", sa.String(length=200), nullable=True),
        sa.CheckConstraint("quantity > 0", name="ck_bom_component_qty_positive"),
        sa.CheckConstraint("waste_pct >= 0 and waste_pct <= 100", name="ck_bom_component_waste_range"),
    )
    op.create_index("ix_bom_components_bom_id", "bom_components", ["bom_id"])
    op.create_index("ix_bom_components_material_id", "bom_components", ["material_id"])

    op.create_table(
        "bom_operations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("bom_id", sa.Integer(), sa.ForeignKey("boms.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("work_center_id", sa.Integer(), sa.ForeignKey("work_centers.id"), nullable=False),
        sa.Column("duration", sa.Integer(), nullable=False),
        sa.Column("setup_time", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("teardown_time", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("quality_check_required", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.UniqueConstraint("bom_id", "sequence", name="uq_bom_operation_sequence"),
        sa.CheckConstraint("sequence >= 1", name="ck_bom_operation_sequence_positive"),
        sa.CheckConstraint("duration >= 1", name="ck_bom_operation_duration_positive"),
    )
    op.create_index("ix_bom_operations_bom_id", "bom_operations", ["bom_id"])
    op.create_index("ix_bom_operations_work_center_id", "bom_operations", ["work_center_id"])

    op.create_table(
        "manufacturing_orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reference", sa.String(length=64), nullable=False),
        sa.Column("bom_id", sa.Integer(), sa.ForeignKey("boms.id"), nullable=False),
        sa.Column("finished_product_id", sa.Integer(), sa.ForeignKey("materials.id"), nullable=False),
        sa.Column("quantity", sa.Numeric(14, 3), nullable=False),
        sa.Column("quantity_produced", sa.Numeric(14, 3), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="Draft"),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="Medium"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("assignee", sa.String(length=128), nullable=False),
        sa.Column("materials_reserved", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _ts("scheduled_start_date", nullable=False),
        _ts("due_date", nullable=False),
        _ts("actual_start_date"),
        _ts("actual_end_date"),
        sa.Column("notes", sa.String(length=1000), nullable=True),
        sa.Column("cancellation_reason", sa.String(length=500), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        _ts("created_at", nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_mo_qty_positive"),
        sa.CheckConstraint("progress >= 0 and progress <= 100", name="ck_mo_progress_range"),
        sa.CheckConstraint(
            "status in ('Draft','Confirmed','In Progress','To Close','Done','Cancelled')",
            name="ck_mo_status",
        ),
    )
    op.create_index("ix_manufacturing_orders_reference", "manufacturing_orders", ["reference"], unique=True)
    op.create_index("ix_manufacturing_orders_bom_id", "manufacturing_orders", ["bom_id"])
    op.create_index("ix_manufacturing_orders_finished_product_id", "manufacturing_orders", ["finished_product_id"])
    op.create_index("ix_manufacturing_orders_status", "manufacturing_orders", ["status"])
    op.create_index("ix_manufacturing_orders_assignee", "manufacturing_orders", ["assignee"])
    op.create_index("ix_manufacturing_orders_due_date", "manufacturing_orders", ["due_date"])

    op.create_table(
        "mo_components",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "manufacturing_order_id", sa.Integer(),
            sa.ForeignKey("manufacturing_orders.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("material_id", sa.Integer(), sa.ForeignKey("materials.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("unit", sa.String(length=16), nullable=False),
        sa.Column("quantity_per_unit", sa.Numeric(14, 3), nullable=False),
        sa.Column("required_quantity", sa.Numeric(14, 3), nullable=False),
        sa.Column("unit_cost", sa.Numeric(14, 4), nullable=False, server_default=sa.text("0")),
        sa.Column("waste_pct", sa.Numeric(5, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("quantity_reserved", sa.Numeric(14, 3), nullable=False, server_default=sa.text("0")),
        sa.Column("quantity_consumed", sa.Numeric(14, 3), nullable=False, server_default=sa.text("0")),
        sa.CheckConstraint("required_quantity > 0", name="ck_mo_component_qty_positive"),
    )
    op.create_index("ix_mo_components_manufacturing_order_id", "mo_components", ["manufacturing_order_id"])
    op.create_index("ix_mo_components_material_id", "mo_components", ["material_id"])

    op.create_table(
        "work_orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reference", sa.String(length=64), nullable=False),
        sa.Column(
            "manufacturing_order_id", sa.Integer(),
            sa.ForeignKey("manufacturing_orders.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("operation_name", sa.String(length=255), nullable=False),
        sa.Column("work_center_id", sa.Integer(), sa.ForeignKey("work_centers.id"), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("expected_duration", sa.Integer(), nullable=False),
        sa.Column("setup_time", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("real_duration", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("worked_minutes", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("paused_minutes", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="Pending"),
        sa.Column("assignee", sa.String(length=128), nullable=False),
        _ts("started_at"),
        _ts("last_resumed_at"),
        _ts("paused_at"),
        _ts("ended_at"),
        sa.Column("quality_check_required", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("quality_passed", sa.Boolean(), nullable=True),
        sa.Column("quality_notes", sa.String(length=500), nullable=True),
        sa.Column("quality_checked_by", sa.String(length=128), nullable=True),
        _ts("quality_checked_at"),
        sa.Column("cancellation_reason", sa.String(length=500), nullable=True),
        _ts("created_at", nullable=False),
        sa.UniqueConstraint("manufacturing_order_id", "sequence", name="uq_wo_mo_sequence"),
        sa.CheckConstraint(
            "status in ('Pending','In Progress','Paused','Completed','Cancelled')",
            name="ck_wo_status",
        ),
    )
    op.create_index("ix_work_orders_reference", "work_orders", ["reference"], unique=True)
    op.create_index("ix_work_orders_manufacturing_order_id", "work_orders", ["manufacturing_order_id"])
    op.create_index("ix_work_orders_work_center_id", "work_orders", ["work_center_id"])
    op.create_index("ix_work_orders_status", "work_orders", ["status"])
    op.create_index("ix_work_orders_assignee", "work_orders", ["assignee"])

    op.create_table(
        "work_order_comments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("work_order_id", sa.Integer(), sa.ForeignKey("work_orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("text", sa.String(length=500), nullable=False),
        sa.Column("author", sa.String(length=128), nullable=False),
        _ts("created_at", nullable=False),
    )
    op.create_index("ix_work_order_comments_work_order_id", "work_order_comments", ["work_order_id"])

    op.create_table(
        "stock_ledger",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("material_id", sa.Integer(), sa.ForeignKey("materials.id"), nullable=False),
        sa.Column("movement_type", sa.String(length=16), nullable=False),
        sa.Column("quantity", sa.Numeric(14, 3), nullable=False),
        sa.Column("unit_cost", sa.Numeric(14, 4), nullable=False, server_default=sa.text("0")),
        sa.Column("reference", sa.String(length=64), nullable=False),
        sa.Column("reference_type", sa.String(length=32), nullable=False),
        sa.Column("manufacturing_order_id", sa.Integer(), sa.ForeignKey("manufacturing_orders.id"), nullable=True),
        sa.Column("work_order_id", sa.Integer(), sa.ForeignKey("work_orders.id"), nullable=True),
        sa.Column("on_hand_after", sa.Numeric(14, 3), nullable=False),
        sa.Column("reserved_after", sa.Numeric(14, 3), nullable=False),
        sa.Column("notes", sa.String(length=500), nullable=True),
        sa.Column("performed_by", sa.String(length=128), nullable=True),
        _ts("created_at", nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_ledger_qty_positive"),
        sa.CheckConstraint("movement_type in ('IN','OUT','RESERVE','RELEASE')", name="ck_ledger_movement_type"),
    )
    op.create_index("ix_stock_ledger_material_id", "stock_ledger", ["material_id"])
    op.create_index("ix_stock_ledger_movement_type", "stock_ledger", ["movement_type"])
    op.create_index("ix_stock_ledger_reference", "stock_ledger", ["reference"])
    op.create_index("ix_stock_ledger_manufacturing_order_id", "stock_ledger", ["manufacturing_order_id"])
    op.create_index("ix_stock_ledger_material_created", "stock_ledger", ["material_id", "created_at"])

    op.create_table(
        "reference_counters",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("prefix", sa.String(length=16), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("last_seq", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )
    op.create_unique_constraint("uq_reference_counters_prefix_year", "reference_counters", ["prefix", "year"])

def downgrade():
    op.drop_constraint("uq_reference_counters_prefix_year", "reference_counters", type_="unique")
    op.drop_table("reference_counters")
    for table in (
        "stock_ledger",
        "work_order_comments",
        "work_orders",
        "mo_components",
        "manufacturing_orders",
        "bom_operations",
        "bom_components",
        "boms",
        "work_centers",
        "materials",
    ):
        op.drop_table(table)
