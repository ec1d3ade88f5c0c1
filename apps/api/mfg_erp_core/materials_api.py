from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, condecimal
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from mfg_erp_core import errors
from mfg_erp_core.clock import now_utc
from mfg_erp_core.db import get_session
from mfg_erp_core.models import Material
from mfg_erp_core.ref_codes import next_reference
from mfg_erp_core.statuses import MaterialCategory, MaterialStatus, Unit
from mfg_erp_core.stock import (
    available, lock_material, low_stock_materials, record_movement, stock_status,
)

router = APIRouter(prefix="/materials", tags=["materials"])

Qty = condecimal(gt=0, max_digits=14, decimal_places=3)
NonNegQty = condecimal(ge=0, max_digits=14, decimal_places=3)
Cost = condecimal(ge=0, max_digits=14, decimal_places=4)

class MaterialCreateRequest(BaseModel):
    code: str | None = Field(default=None, min_length=2, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=1000)
    category: MaterialCategory
    unit: Unit
    opening_stock: NonNegQty = Decimal("0")
    opening_unit_cost: Cost | None = None
    reorder_level: NonNegQty = Decimal("0")
    max_stock: NonNegQty = Decimal("1000")
    average_cost: Cost = Decimal("0")
    performed_by: str | None = None

class MaterialUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=1000)
    category: MaterialCategory | None = None
    unit: Unit | None = None
    reorder_level: NonNegQty | None = None
    max_stock: NonNegQty | None = None
    status: MaterialStatus | None = None

class StockAdjustRequest(BaseModel):
    type: Literal["IN", "OUT"]
    quantity: Qty
    unit_cost: Cost | None = None
    reference: str | None = Field(default=None, max_length=64)
    notes: str | None = Field(default=None, max_length=500)
    performed_by: str | None = None
    performed_at: datetime | None = None


def material_out(m: Material) -> dict:
    return {
        "id": m.id,
        "code": m.code,
        "name": m.name,
        "description": m.description,
        "category": m.category,
        "unit": m.unit,
        "on_hand": float(m.on_hand),
        "reserved": float(m.reserved),
        "available": float(available(m)),
        "reorder_level": float(m.reorder_level),
        "max_stock": float(m.max_stock),
        "average_cost": float(m.average_cost),
        "last_cost": float(m.last_cost),
        "total_value": float(m.on_hand * m.average_cost),
        "stock_status": stock_status(m),
        "status": m.status,
        "created_at": m.created_at,
        "updated_at": m.updated_at,
    }


async def create_material_txn(req: MaterialCreateRequest, session: AsyncSession) -> Material:
    now = now_utc()
    code = req.code.strip().upper() if req.code else await next_reference(session, "MAT", now)

    existing = (await session.execute(select(Material.id).where(Material.code == code))).scalar_one_or_none()
    if existing:
        raise errors.Conflict(f"Material code already exists: {code}")

    m = Material(
        code=code,
        name=req.name.strip(),
        description=req.description,
        category=req.category.value,
        unit=req.unit.value,
        on_hand=Decimal("0"),
        reserved=Decimal("0"),
        reorder_level=req.reorder_level,
        max_stock=req.max_stock,
        average_cost=req.average_cost,
        last_cost=req.average_cost,
        status=MaterialStatus.ACTIVE.value,
        created_at=now,
    )
    session.add(m)
    await session.flush()

    # Opening stock goes through the ledger so replay starts from zero.
    if req.opening_stock > 0:
        await record_movement(
            session, m, "IN", req.opening_stock,
            reference=m.code,
            reference_type="Opening Balance",
            unit_cost=req.opening_unit_cost if req.opening_unit_cost is not None else req.average_cost,
            performed_by=req.performed_by,
            at=now,
        )
    return m


async def get_material(session: AsyncSession, material_id: int) -> Material:
    m = (await session.execute(select(Material).where(Material.id == material_id))).scalar_one_or_none()
    if not m:
        raise errors.NotFound(f"Material {material_id} not found")
    return m


@router.get("")
async def list_materials(
    category: MaterialCategory | None = None,
    status: MaterialStatus | None = None,
    search: str | None = None,
    limit: int = 200,
    offset: int = 0,
    session: AsyncSession = Depends(get_session),
):
    q = select(Material).order_by(Material.name.asc(), Material.id.asc()).limit(limit).offset(offset)
    if category is not None:
        q = q.where(Material.category == category.value)
    if status is not None:
        q = q.where(Material.status == status.value)
    if search:
        pattern = f"%{search.strip()}%"
        q = q.where(or_(Material.name.ilike(pattern), Material.code.ilike(pattern)))
    rows = (await session.execute(q)).scalars().all()
    return [material_out(m) for m in rows]


@router.get("/low-stock")
async def list_low_stock(limit: int = 200, session: AsyncSession = Depends(get_session)):
    rows = await low_stock_materials(session, limit)
    return [material_out(m) for m in rows]


@router.get("/stats/overview")
async def materials_stats(session: AsyncSession = Depends(get_session)):
    rows = (await session.execute(
        select(
            Material.category,
            func.count(Material.id),
            func.coalesce(func.sum(Material.on_hand * Material.average_cost), 0),
        ).group_by(Material.category)
    )).all()
    low = len(await low_stock_materials(session, limit=100000))
    out_of_stock = (await session.execute(
        select(func.count(Material.id)).where(Material.on_hand <= 0)
    )).scalar_one()

    return {
        "total_materials": sum(r[1] for r in rows),
        "total_value": float(sum(Decimal(str(r[2])) for r in rows)),
        "low_stock_count": low,
        "out_of_stock_count": out_of_stock,
        "by_category": [
            {"category": cat, "count": count, "total_value": float(value)}
            for cat, count, value in rows
        ],
    }


@router.get("/{material_id}")
async def read_material(material_id: int, session: AsyncSession = Depends(get_session)):
    return material_out(await get_material(session, material_id))


@router.post("", status_code=201)
async def create_material(req: MaterialCreateRequest, session: AsyncSession = Depends(get_session)):
    m = await create_material_txn(req, session)
    await session.commit()
    return material_out(m)


@router.put("/{material_id}")
async def update_material(material_id: int, req: MaterialUpdateRequest, session: AsyncSession = Depends(get_session)):
    m = await get_material(session, material_id)

    # Quantities are owned by the stock ledger; only descriptive fields change here.
    changes = req.model_dump(exclude_unset=True, exclude_none=True)
    for field, value in changes.items():
        setattr(m, field, value.value if hasattr(value, "value") else value)
    m.updated_at = now_utc()

    await session.commit()
    return material_out(m)


@router.post("/{material_id}/stock")
async def adjust_stock(material_id: int, req: StockAdjustRequest, session: AsyncSession = Depends(get_session)):
    m = await lock_material(session, material_id)
    entry = await record_movement(
        session, m, req.type, req.quantity,
        reference=req.reference or "MANUAL",
        reference_type="Purchase" if req.type == "IN" and req.unit_cost is not None else "Adjustment",
        unit_cost=req.unit_cost,
        notes=req.notes,
        performed_by=req.performed_by,
        at=req.performed_at,
    )
    await session.commit()
    return {"material": material_out(m), "ledger_entry_id": entry.id}
