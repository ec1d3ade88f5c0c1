from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, condecimal
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from mfg_erp_core import errors
from mfg_erp_core.db import get_session
from mfg_erp_core.models import ManufacturingOrder, Material, MOComponent, StockLedgerEntry, WorkOrder
from mfg_erp_core.statuses import MO_CLOSED, MovementType
from mfg_erp_core.stock import as_qty, available, balance_for, lock_material, low_stock_materials, record_movement

router = APIRouter(prefix="/stock-ledger", tags=["stock-ledger"])

Qty = condecimal(gt=0, max_digits=14, decimal_places=3)
Cost = condecimal(ge=0, max_digits=14, decimal_places=4)

class StockTransactionRequest(BaseModel):
    material_id: int
    type: MovementType
    quantity: Qty
    reference: str = Field(min_length=1, max_length=64)
    reference_type: str = Field(default="Adjustment", max_length=32)
    unit_cost: Cost | None = None
    manufacturing_order_id: int | None = None
    work_order_id: int | None = None
    notes: str | None = Field(default=None, max_length=500)
    performed_by: str | None = None
    performed_at: datetime | None = None


def entry_out(e: StockLedgerEntry, material: Material | None = None) -> dict:
    out = {
        "id": e.id,
        "material_id": e.material_id,
        "type": e.movement_type,
        "quantity": float(e.quantity),
        "unit_cost": float(e.unit_cost),
        "total_cost": float(e.quantity * e.unit_cost),
        "reference": e.reference,
        "reference_type": e.reference_type,
        "manufacturing_order_id": e.manufacturing_order_id,
        "work_order_id": e.work_order_id,
        "on_hand_after": float(e.on_hand_after),
        "reserved_after": float(e.reserved_after),
        "notes": e.notes,
        "performed_by": e.performed_by,
        "created_at": e.created_at,
    }
    if material is not None:
        out["material_code"] = material.code
        out["material_name"] = material.name
    return out


@router.get("")
async def list_entries(
    type: MovementType | None = None,
    reference: str | None = None,
    limit: int = 200,
    offset: int = 0,
    session: AsyncSession = Depends(get_session),
):
    q = (
        select(StockLedgerEntry, Material)
        .join(Material, Material.id == StockLedgerEntry.material_id)
        .order_by(StockLedgerEntry.created_at.desc(), StockLedgerEntry.id.desc())
        .limit(limit)
        .offset(offset)
    )
    if type is not None:
        q = q.where(StockLedgerEntry.movement_type == type.value)
    if reference:
        q = q.where(StockLedgerEntry.reference == reference)
    rows = (await session.execute(q)).all()
    return [entry_out(e, m) for (e, m) in rows]


async def mo_held_reservation(session: AsyncSession, material_id: int) -> Decimal:
    """Quantity of a material still reserved by open manufacturing orders."""
    held = (await session.execute(
        select(func.coalesce(func.sum(MOComponent.quantity_reserved), 0))
        .join(ManufacturingOrder, ManufacturingOrder.id == MOComponent.manufacturing_order_id)
        .where(MOComponent.material_id == material_id)
        .where(ManufacturingOrder.status.notin_([s.value for s in MO_CLOSED]))
    )).scalar_one()
    return as_qty(held)


async def record_transaction_txn(req: StockTransactionRequest, session: AsyncSession) -> tuple[StockLedgerEntry, Material]:
    if req.type in (MovementType.RESERVE, MovementType.RELEASE) and (
        req.manufacturing_order_id is not None or req.work_order_id is not None
    ):
        raise errors.ValidationError(
            "Order reservations are made through the manufacturing order, not the ledger"
        )

    if req.manufacturing_order_id is not None:
        found = (await session.execute(
            select(ManufacturingOrder.id).where(ManufacturingOrder.id == req.manufacturing_order_id)
        )).scalar_one_or_none()
        if found is None:
            raise errors.NotFound(f"Manufacturing order {req.manufacturing_order_id} not found")
    if req.work_order_id is not None:
        found = (await session.execute(
            select(WorkOrder.id).where(WorkOrder.id == req.work_order_id)
        )).scalar_one_or_none()
        if found is None:
            raise errors.NotFound(f"Work order {req.work_order_id} not found")

    m = await lock_material(session, req.material_id)

    if req.type == MovementType.RELEASE:
        held = await mo_held_reservation(session, m.id)
        if as_qty(m.reserved) - as_qty(req.quantity) < held:
            raise errors.InvalidState(
                f"Cannot release stock held by manufacturing orders for {m.code}. "
                f"reserved={m.reserved} held_by_orders={held} requested={req.quantity}"
            )

    entry = await record_movement(
        session, m, req.type, req.quantity,
        reference=req.reference,
        reference_type=req.reference_type,
        unit_cost=req.unit_cost,
        manufacturing_order_id=req.manufacturing_order_id,
        work_order_id=req.work_order_id,
        notes=req.notes,
        performed_by=req.performed_by,
        at=req.performed_at,
    )
    return entry, m


@router.post("", status_code=201)
async def record_transaction(req: StockTransactionRequest, session: AsyncSession = Depends(get_session)):
    entry, m = await record_transaction_txn(req, session)
    await session.commit()
    return {
        "entry": entry_out(entry, m),
        "material": {
            "id": m.id,
            "on_hand": float(m.on_hand),
            "reserved": float(m.reserved),
            "available": float(available(m)),
        },
    }


@router.get("/alerts/low-stock")
async def low_stock_alerts(limit: int = 200, session: AsyncSession = Depends(get_session)):
    rows = await low_stock_materials(session, limit)
    return [
        {
            "material_id": m.id,
            "code": m.code,
            "name": m.name,
            "on_hand": float(m.on_hand),
            "reserved": float(m.reserved),
            "available": float(available(m)),
            "reorder_level": float(m.reorder_level),
            "unit": m.unit,
        }
        for m in rows
    ]


@router.get("/materials/{material_id}")
async def entries_for_material(material_id: int, limit: int = 200, offset: int = 0, session: AsyncSession = Depends(get_session)):
    m = (await session.execute(select(Material).where(Material.id == material_id))).scalar_one_or_none()
    if not m:
        raise errors.NotFound(f"Material {material_id} not found")
    rows = (await session.execute(
        select(StockLedgerEntry)
        .where(StockLedgerEntry.material_id == material_id)
        .order_by(StockLedgerEntry.created_at.desc(), StockLedgerEntry.id.desc())
        .limit(limit)
        .offset(offset)
    )).scalars().all()
    return [entry_out(e, m) for e in rows]


@router.get("/materials/{material_id}/balance")
async def material_balance(material_id: int, session: AsyncSession = Depends(get_session)):
    b = await balance_for(session, material_id)
    return {
        **b,
        "on_hand": float(b["on_hand"]),
        "reserved": float(b["reserved"]),
        "available": float(b["available"]),
        "record_on_hand": float(b["record_on_hand"]),
        "record_reserved": float(b["record_reserved"]),
    }
