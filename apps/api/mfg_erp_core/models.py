from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, ForeignKey,
    Integer, Numeric, String
)
from sqlalchemy import Index, UniqueConstraint

from mfg_erp_core.clock import now_utc

class Base(DeclarativeBase):
    pass

class Material(Base):
    __tablename__ = "materials"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255), index=True)
    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    category: Mapped[str] = mapped_column(String(32), index=True)
    unit: Mapped[str] = mapped_column(String(16), nullable=False)

    on_hand: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False, default=0)
    reserved: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False, default=0)
    reorder_level: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False, default=0)
    max_stock: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False, default=1000)
    average_cost: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=0)
    last_cost: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=0)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="Active", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("reserved >= 0", name="ck_material_reserved_nonneg"),
        CheckConstraint("on_hand >= reserved", name="ck_material_on_hand_covers_reserved"),
    )

class WorkCenter(Base):
    __tablename__ = "work_centers"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(255), unique=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    center_type: Mapped[str] = mapped_column(String(32), nullable=False)
    location: Mapped[str] = mapped_column(String(128), nullable=False)

    cost_per_hour: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    hours_per_day: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=8)
    days_per_week: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    efficiency_pct: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=85)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="Active", index=True)
    downtime_minutes: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    last_downtime_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    downtime_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc)

class BillOfMaterials(Base):
    __tablename__ = "boms"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    reference: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    finished_product_id: Mapped[int] = mapped_column(ForeignKey("materials.id"), index=True)
    version: Mapped[str] = mapped_column(String(16), nullable=False, default="1.0")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="Draft", index=True)
    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    output_quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False, default=1)
    unit: Mapped[str] = mapped_column(String(16), nullable=False, default="pcs")
    estimated_cost: Mapped[Decimal] = mapped_column(Numeric(16, 4), nullable=False, default=0)
    estimated_cycle_time: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # minutes

    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    obsoleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        CheckConstraint("status in ('Draft','Active','Obsolete')", name="ck_bom_status"),
    )

class BOMComponent(Base):
    __tablename__ = "bom_components"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    bom_id: Mapped[int] = mapped_column(ForeignKey("boms.id", ondelete="CASCADE"), index=True)
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    material_id: Mapped[int] = mapped_column(ForeignKey("materials.id"), index=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    unit: Mapped[str] = mapped_column(String(16), nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=0)
    waste_pct: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=0)
    is_critical: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[str | None] = mapped_column(String(200), nullable=True)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_bom_component_qty_positive"),
        CheckConstraint("waste_pct >= 0 and waste_pct <= 100", name="ck_bom_component_waste_range"),
    )

class BOMOperation(Base):
    __tablename__ = "bom_operations"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    bom_id: Mapped[int] = mapped_column(ForeignKey("boms.id", ondelete="CASCADE"), index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    work_center_id: Mapped[int] = mapped_column(ForeignKey("work_centers.id"), index=True)
    duration: Mapped[int] = mapped_column(Integer, nullable=False)  # minutes
    setup_time: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    teardown_time: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    quality_check_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("bom_id", "sequence", name="uq_bom_operation_sequence"),
        CheckConstraint("sequence >= 1", name="ck_bom_operation_sequence_positive"),
        CheckConstraint("duration >= 1", name="ck_bom_operation_duration_positive"),
    )

class ManufacturingOrder(Base):
    __tablename__ = "manufacturing_orders"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    reference: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    bom_id: Mapped[int] = mapped_column(ForeignKey("boms.id"), index=True)
    finished_product_id: Mapped[int] = mapped_column(ForeignKey("materials.id"), index=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    quantity_produced: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False, default=0)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="Draft", index=True)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="Medium")
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    assignee: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    materials_reserved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    scheduled_start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    actual_start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    notes: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_mo_qty_positive"),
        CheckConstraint("progress >= 0 and progress <= 100", name="ck_mo_progress_range"),
        CheckConstraint(
            "status in ('Draft','Confirmed','In Progress','To Close','Done','Cancelled')",
            name="ck_mo_status",
        ),
    )

class MOComponent(Base):
    __tablename__ = "mo_components"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    manufacturing_order_id: Mapped[int] = mapped_column(
        ForeignKey("manufacturing_orders.id", ondelete="CASCADE"), index=True
    )
    material_id: Mapped[int] = mapped_column(ForeignKey("materials.id"), index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[str] = mapped_column(String(16), nullable=False)
    quantity_per_unit: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    required_quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=0)
    waste_pct: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=0)
    quantity_reserved: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False, default=0)
    quantity_consumed: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False, default=0)

    __table_args__ = (CheckConstraint("required_quantity > 0", name="ck_mo_component_qty_positive"),)

class WorkOrder(Base):
    __tablename__ = "work_orders"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    reference: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    manufacturing_order_id: Mapped[int] = mapped_column(
        ForeignKey("manufacturing_orders.id", ondelete="CASCADE"), index=True
    )
    operation_name: Mapped[str] = mapped_column(String(255), nullable=False)
    work_center_id: Mapped[int] = mapped_column(ForeignKey("work_centers.id"), index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    expected_duration: Mapped[int] = mapped_column(Integer, nullable=False)  # minutes
    setup_time: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    real_duration: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    worked_minutes: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    paused_minutes: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="Pending", index=True)
    assignee: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_resumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    quality_check_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    quality_passed: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    quality_notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    quality_checked_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    quality_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    cancellation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        UniqueConstraint("manufacturing_order_id", "sequence", name="uq_wo_mo_sequence"),
        CheckConstraint(
            "status in ('Pending','In Progress','Paused','Completed','Cancelled')",
            name="ck_wo_status",
        ),
    )

class WorkOrderComment(Base):
    __tablename__ = "work_order_comments"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    work_order_id: Mapped[int] = mapped_column(ForeignKey("work_orders.id", ondelete="CASCADE"), index=True)
    text: Mapped[str] = mapped_column(String(500), nullable=False)
    author: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc)

class StockLedgerEntry(Base):
    __tablename__ = "stock_ledger"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    material_id: Mapped[int] = mapped_column(ForeignKey("materials.id"), index=True)
    movement_type: Mapped[str] = mapped_column(String(16), index=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=0)

    reference: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    reference_type: Mapped[str] = mapped_column(String(32), nullable=False)
    manufacturing_order_id: Mapped[int | None] = mapped_column(
        ForeignKey("manufacturing_orders.id"), nullable=True, index=True
    )
    work_order_id: Mapped[int | None] = mapped_column(ForeignKey("work_orders.id"), nullable=True)

    # material balance right after this entry was applied
    on_hand_after: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    reserved_after: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)

    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    performed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_ledger_qty_positive"),
        CheckConstraint("movement_type in ('IN','OUT','RESERVE','RELEASE')", name="ck_ledger_movement_type"),
    )

Index("ix_stock_ledger_material_created", StockLedgerEntry.material_id, StockLedgerEntry.created_at)

class ReferenceCounter(Base):
    __tablename__ = "reference_counters"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    prefix: Mapped[str] = mapped_column(String(16), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    last_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("prefix", "year", name="uq_reference_counters_prefix_year"),
    )
