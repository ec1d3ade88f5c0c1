from __future__ import annotations

import logging
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, condecimal, conint
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mfg_erp_core import config, errors
from mfg_erp_core.clock import now_utc
from mfg_erp_core.db import get_session
from mfg_erp_core.models import BillOfMaterials, BOMComponent, BOMOperation, Material, WorkCenter
from mfg_erp_core.ref_codes import next_reference
from mfg_erp_core.statuses import BOM_TRANSITIONS, BOMStatus, Unit, check_transition

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/boms", tags=["bom"])

Qty = condecimal(gt=0, max_digits=14, decimal_places=3)
Cost = condecimal(ge=0, max_digits=14, decimal_places=4)
Percent = condecimal(ge=0, le=100, max_digits=5, decimal_places=2)

class BOMComponentIn(BaseModel):
    material_id: int
    quantity: Qty
    unit: Unit | None = None
    unit_cost: Cost | None = None
    waste_pct: Percent = Decimal("0")
    is_critical: bool = False
    notes: str | None = Field(default=None, max_length=200)

class BOMOperationIn(BaseModel):
    sequence: conint(ge=1)
    name: str = Field(min_length=1, max_length=255)
    work_center_id: int
    duration: conint(ge=1)
    setup_time: conint(ge=0) = 0
    teardown_time: conint(ge=0) = 0
    description: str | None = Field(default=None, max_length=500)
    quality_check_required: bool = False

class BOMCreateRequest(BaseModel):
    finished_product_id: int
    version: str = Field(default="1.0", min_length=1, max_length=16)
    description: str | None = Field(default=None, max_length=1000)
    output_quantity: Qty = Decimal("1")
    unit: Unit = Unit.PCS
    components: list[BOMComponentIn] = Field(min_length=1)
    operations: list[BOMOperationIn] = Field(min_length=1)
    created_by: str | None = None

class BOMApproveRequest(BaseModel):
    approved_by: str | None = None


def estimate_cost(components) -> Decimal:
    """Material cost of one BOM output: sum of quantity x unit cost."""
    return sum((Decimal(str(c.quantity)) * Decimal(str(c.unit_cost)) for c in components), Decimal("0"))


def estimate_cycle_time(operations) -> int:
    return sum(op.duration + op.setup_time + op.teardown_time for op in operations)


def validate_operation_sequences(operations) -> None:
    seen: set[int] = set()
    previous = 0
    for op in operations:
        if op.sequence in seen:
            raise errors.ValidationError(f"Duplicate operation sequence: {op.sequence}")
        if op.sequence <= previous:
            raise errors.ValidationError(
                f"Operation sequences must be strictly increasing (got {op.sequence} after {previous})"
            )
        seen.add(op.sequence)
        previous = op.sequence


async def load_bom(session: AsyncSession, bom_id: int, lock: bool = False) -> BillOfMaterials:
    q = select(BillOfMaterials).where(BillOfMaterials.id == bom_id)
    if lock:
        q = q.with_for_update()
    bom = (await session.execute(q)).scalar_one_or_none()
    if not bom:
        raise errors.NotFound(f"Bill of materials {bom_id} not found")
    return bom


async def bom_lines(session: AsyncSession, bom_id: int) -> tuple[list[BOMComponent], list[BOMOperation]]:
    components = (await session.execute(
        select(BOMComponent).where(BOMComponent.bom_id == bom_id).order_by(BOMComponent.line_number)
    )).scalars().all()
    operations = (await session.execute(
        select(BOMOperation).where(BOMOperation.bom_id == bom_id).order_by(BOMOperation.sequence)
    )).scalars().all()
    return list(components), list(operations)


async def bom_out(session: AsyncSession, bom: BillOfMaterials) -> dict:
    components, operations = await bom_lines(session, bom.id)
    return {
        "id": bom.id,
        "reference": bom.reference,
        "finished_product_id": bom.finished_product_id,
        "version": bom.version,
        "status": bom.status,
        "description": bom.description,
        "output_quantity": float(bom.output_quantity),
        "unit": bom.unit,
        "estimated_cost": float(bom.estimated_cost),
        "estimated_cycle_time": bom.estimated_cycle_time,
        "created_by": bom.created_by,
        "approved_by": bom.approved_by,
        "approved_at": bom.approved_at,
        "obsoleted_at": bom.obsoleted_at,
        "created_at": bom.created_at,
        "components": [{
            "id": c.id,
            "line_number": c.line_number,
            "material_id": c.material_id,
            "quantity": float(c.quantity),
            "unit": c.unit,
            "unit_cost": float(c.unit_cost),
            "line_cost": float(Decimal(str(c.quantity)) * Decimal(str(c.unit_cost))),
            "waste_pct": float(c.waste_pct),
            "is_critical": c.is_critical,
            "notes": c.notes,
        } for c in components],
        "operations": [{
            "id": op.id,
            "sequence": op.sequence,
            "name": op.name,
            "work_center_id": op.work_center_id,
            "duration": op.duration,
            "setup_time": op.setup_time,
            "teardown_time": op.teardown_time,
            "description": op.description,
            "quality_check_required": op.quality_check_required,
        } for op in operations],
    }


async def create_bom_txn(req: BOMCreateRequest, session: AsyncSession) -> BillOfMaterials:
    validate_operation_sequences(req.operations)

    product = (await session.execute(
        select(Material).where(Material.id == req.finished_product_id)
    )).scalar_one_or_none()
    if not product:
        raise errors.NotFound(f"Finished product material {req.finished_product_id} not found")

    material_ids = list({c.material_id for c in req.components})
    if req.finished_product_id in material_ids:
        raise errors.ValidationError("A BOM cannot list its finished product as a component")
    if len(material_ids) != len(req.components):
        raise errors.ValidationError("Each material may appear only once in a BOM")

    materials = (await session.execute(select(Material).where(Material.id.in_(material_ids)))).scalars().all()
    material_map = {m.id: m for m in materials}
    missing = [i for i in material_ids if i not in material_map]
    if missing:
        raise errors.NotFound(f"Component material(s) not found: {', '.join(str(i) for i in sorted(missing))}")

    wc_ids = list({op.work_center_id for op in req.operations})
    found_wcs = (await session.execute(select(WorkCenter.id).where(WorkCenter.id.in_(wc_ids)))).scalars().all()
    missing = sorted(set(wc_ids) - set(found_wcs))
    if missing:
        raise errors.NotFound(f"Work center(s) not found: {', '.join(str(i) for i in missing)}")

    now = now_utc()
    components = [
        BOMComponent(
            line_number=n,
            material_id=c.material_id,
            quantity=c.quantity,
            unit=(c.unit.value if c.unit else material_map[c.material_id].unit),
            # Without an explicit price the component is costed at the material's average cost.
            unit_cost=c.unit_cost if c.unit_cost is not None else Decimal(str(material_map[c.material_id].average_cost)),
            waste_pct=c.waste_pct,
            is_critical=c.is_critical,
            notes=c.notes,
        )
        for n, c in enumerate(req.components, start=1)
    ]
    operations = [
        BOMOperation(
            sequence=op.sequence,
            name=op.name,
            work_center_id=op.work_center_id,
            duration=op.duration,
            setup_time=op.setup_time,
            teardown_time=op.teardown_time,
            description=op.description,
            quality_check_required=op.quality_check_required,
        )
        for op in req.operations
    ]

    bom = BillOfMaterials(
        reference=await next_reference(session, "BOM", now),
        finished_product_id=req.finished_product_id,
        version=req.version,
        status=BOMStatus.DRAFT.value,
        description=req.description,
        output_quantity=req.output_quantity,
        unit=req.unit.value,
        estimated_cost=estimate_cost(components),
        estimated_cycle_time=estimate_cycle_time(operations),
        created_by=req.created_by,
        created_at=now,
    )
    session.add(bom)
    await session.flush()

    for line in components + operations:
        line.bom_id = bom.id
        session.add(line)
    await session.flush()

    logger.info("bom %s created for material %s (%d components, %d operations)",
                bom.reference, product.code, len(components), len(operations))
    return bom


async def approve_txn(bom_id: int, session: AsyncSession, approved_by: str | None = None) -> BillOfMaterials:
    bom = await load_bom(session, bom_id, lock=True)
    if bom.status != BOMStatus.DRAFT.value:
        raise errors.InvalidState(f"Only draft BOMs can be approved (status={bom.status})")

    if config.SINGLE_ACTIVE_BOM:
        # Lock the product row so two approvals for the same product serialize.
        await session.execute(
            select(Material.id).where(Material.id == bom.finished_product_id).with_for_update()
        )
        active = (await session.execute(
            select(BillOfMaterials.reference)
            .where(BillOfMaterials.finished_product_id == bom.finished_product_id)
            .where(BillOfMaterials.status == BOMStatus.ACTIVE.value)
            .where(BillOfMaterials.id != bom.id)
        )).scalars().first()
        if active:
            raise errors.Conflict(f"Product already has an active BOM: {active}")

    check_transition(BOM_TRANSITIONS, bom.status, BOMStatus.ACTIVE, "BOM")
    bom.status = BOMStatus.ACTIVE.value
    bom.approved_by = approved_by
    bom.approved_at = now_utc()
    logger.info("bom %s approved", bom.reference)
    return bom


async def mark_obsolete_txn(bom_id: int, session: AsyncSession) -> BillOfMaterials:
    bom = await load_bom(session, bom_id, lock=True)
    check_transition(BOM_TRANSITIONS, bom.status, BOMStatus.OBSOLETE, "BOM")
    bom.status = BOMStatus.OBSOLETE.value
    bom.obsoleted_at = now_utc()
    logger.info("bom %s marked obsolete", bom.reference)
    return bom


@router.get("")
async def list_boms(
    status: BOMStatus | None = None,
    finished_product_id: int | None = None,
    search: str | None = None,
    limit: int = 200,
    offset: int = 0,
    session: AsyncSession = Depends(get_session),
):
    q = (
        select(BillOfMaterials, Material)
        .join(Material, Material.id == BillOfMaterials.finished_product_id)
        .order_by(BillOfMaterials.created_at.desc(), BillOfMaterials.id.desc())
        .limit(limit)
        .offset(offset)
    )
    if status is not None:
        q = q.where(BillOfMaterials.status == status.value)
    if finished_product_id is not None:
        q = q.where(BillOfMaterials.finished_product_id == finished_product_id)
    if search:
        q = q.where(BillOfMaterials.reference.ilike(f"%{search.strip()}%") | Material.name.ilike(f"%{search.strip()}%"))

    rows = (await session.execute(q)).all()
    return [
        {
            "id": b.id,
            "reference": b.reference,
            "finished_product_id": m.id,
            "finished_product_name": m.name,
            "version": b.version,
            "status": b.status,
            "estimated_cost": float(b.estimated_cost),
            "estimated_cycle_time": b.estimated_cycle_time,
            "created_at": b.created_at,
        }
        for (b, m) in rows
    ]


@router.get("/{bom_id}")
async def read_bom(bom_id: int, session: AsyncSession = Depends(get_session)):
    return await bom_out(session, await load_bom(session, bom_id))


@router.post("", status_code=201)
async def create_bom(req: BOMCreateRequest, session: AsyncSession = Depends(get_session)):
    bom = await create_bom_txn(req, session)
    await session.commit()
    return await bom_out(session, bom)


@router.post("/{bom_id}/approve")
async def approve_bom(bom_id: int, req: BOMApproveRequest | None = None, session: AsyncSession = Depends(get_session)):
    bom = await approve_txn(bom_id, session, approved_by=req.approved_by if req else None)
    await session.commit()
    return await bom_out(session, bom)


@router.post("/{bom_id}/obsolete")
async def obsolete_bom(bom_id: int, session: AsyncSession = Depends(get_session)):
    bom = await mark_obsolete_txn(bom_id, session)
    await session.commit()
    return await bom_out(session, bom)
