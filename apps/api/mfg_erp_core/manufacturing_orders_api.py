from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, condecimal
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from mfg_erp_core import errors
from mfg_erp_core.bom_api import bom_lines, load_bom
from mfg_erp_core.clock import as_utc, minutes_between, now_utc
from mfg_erp_core.db import get_session
from mfg_erp_core.models import ManufacturingOrder, Material, MOComponent, WorkOrder
from mfg_erp_core.ref_codes import next_reference
from mfg_erp_core.statuses import (
    BOMStatus, MO_CLOSED, MO_OPEN, MO_TRANSITIONS, MOStatus, Priority, WOStatus, check_transition,
)
from mfg_erp_core.stock import COST_PLACES, ZERO, as_qty, available, lock_materials, record_movement

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/manufacturing-orders", tags=["manufacturing-orders"])

Qty = condecimal(gt=0, max_digits=14, decimal_places=3)

REFERENCE_TYPE = "Manufacturing Order"
WO_OPEN = {WOStatus.PENDING.value, WOStatus.IN_PROGRESS.value, WOStatus.PAUSED.value}

class MOCreateRequest(BaseModel):
    quantity: Qty
    scheduled_start_date: datetime
    due_date: datetime
    assignee: str = Field(min_length=1, max_length=128)
    priority: Priority = Priority.MEDIUM
    notes: str | None = Field(default=None, max_length=1000)
    created_by: str | None = None

class MOStatusRequest(BaseModel):
    status: MOStatus
    reason: str | None = Field(default=None, max_length=500)

class MOActionRequest(BaseModel):
    performed_by: str | None = None
    performed_at: datetime | None = None


def progress_percent(completed: int, total: int) -> int:
    """100 * completed / total, rounded half up."""
    if total <= 0:
        return 0
    return (200 * completed + total) // (2 * total)


def planned_cost(components) -> Decimal:
    return sum((as_qty(c.required_quantity) * as_qty(c.unit_cost) for c in components), ZERO)


def is_delayed(mo: ManufacturingOrder, now: datetime | None = None) -> bool:
    if mo.status in (MOStatus.DONE.value, MOStatus.CANCELLED.value):
        return False
    return as_utc(mo.due_date) < (now or now_utc())


async def load_mo(session: AsyncSession, mo_id: int, lock: bool = False) -> ManufacturingOrder:
    q = select(ManufacturingOrder).where(ManufacturingOrder.id == mo_id)
    if lock:
        q = q.with_for_update()
    mo = (await session.execute(q)).scalar_one_or_none()
    if not mo:
        raise errors.NotFound(f"Manufacturing order {mo_id} not found")
    return mo


async def mo_components(session: AsyncSession, mo_id: int) -> list[MOComponent]:
    return list((await session.execute(
        select(MOComponent).where(MOComponent.manufacturing_order_id == mo_id).order_by(MOComponent.id)
    )).scalars().all())


async def mo_work_orders(session: AsyncSession, mo_id: int, lock: bool = False) -> list[WorkOrder]:
    q = select(WorkOrder).where(WorkOrder.manufacturing_order_id == mo_id).order_by(WorkOrder.sequence)
    if lock:
        q = q.with_for_update()
    return list((await session.execute(q)).scalars().all())


async def mo_out(session: AsyncSession, mo: ManufacturingOrder) -> dict:
    components = await mo_components(session, mo.id)
    work_orders = await mo_work_orders(session, mo.id)
    cost = planned_cost(components)
    return {
        "id": mo.id,
        "reference": mo.reference,
        "bom_id": mo.bom_id,
        "finished_product_id": mo.finished_product_id,
        "quantity": float(mo.quantity),
        "quantity_produced": float(mo.quantity_produced),
        "status": mo.status,
        "priority": mo.priority,
        "progress": mo.progress,
        "assignee": mo.assignee,
        "materials_reserved": mo.materials_reserved,
        "scheduled_start_date": mo.scheduled_start_date,
        "due_date": mo.due_date,
        "actual_start_date": mo.actual_start_date,
        "actual_end_date": mo.actual_end_date,
        "notes": mo.notes,
        "cancellation_reason": mo.cancellation_reason,
        "created_by": mo.created_by,
        "created_at": mo.created_at,
        "planned_cost": float(cost),
        "planned_unit_cost": float(cost / as_qty(mo.quantity)),
        "is_delayed": is_delayed(mo),
        "components": [{
            "id": c.id,
            "material_id": c.material_id,
            "name": c.name,
            "unit": c.unit,
            "quantity_per_unit": float(c.quantity_per_unit),
            "required_quantity": float(c.required_quantity),
            "unit_cost": float(c.unit_cost),
            "waste_pct": float(c.waste_pct),
            "quantity_reserved": float(c.quantity_reserved),
            "quantity_consumed": float(c.quantity_consumed),
        } for c in components],
        "work_orders": [{
            "id": w.id,
            "reference": w.reference,
            "sequence": w.sequence,
            "operation_name": w.operation_name,
            "work_center_id": w.work_center_id,
            "status": w.status,
            "expected_duration": w.expected_duration,
            "real_duration": float(w.real_duration),
        } for w in work_orders],
    }


async def create_from_bom_txn(bom_id: int, req: MOCreateRequest, session: AsyncSession) -> ManufacturingOrder:
    if as_utc(req.due_date) < as_utc(req.scheduled_start_date):
        raise errors.ValidationError("due_date cannot be before scheduled_start_date")

    bom = await load_bom(session, bom_id)
    if bom.status != BOMStatus.ACTIVE.value:
        raise errors.InvalidState(f"BOM {bom.reference} is {bom.status}; only active BOMs can be manufactured")

    components, _ = await bom_lines(session, bom.id)
    names = dict((await session.execute(
        select(Material.id, Material.name).where(Material.id.in_([c.material_id for c in components]))
    )).all())

    now = now_utc()
    mo = ManufacturingOrder(
        reference=await next_reference(session, "MO", now),
        bom_id=bom.id,
        finished_product_id=bom.finished_product_id,
        quantity=req.quantity,
        quantity_produced=ZERO,
        status=MOStatus.DRAFT.value,
        priority=req.priority.value,
        progress=0,
        assignee=req.assignee,
        materials_reserved=False,
        scheduled_start_date=req.scheduled_start_date,
        due_date=req.due_date,
        notes=req.notes,
        created_by=req.created_by,
        created_at=now,
    )
    session.add(mo)
    await session.flush()

    for c in components:
        session.add(MOComponent(
            manufacturing_order_id=mo.id,
            material_id=c.material_id,
            name=names.get(c.material_id, ""),
            unit=c.unit,
            quantity_per_unit=c.quantity,
            required_quantity=as_qty(c.quantity) * as_qty(req.quantity),
            unit_cost=c.unit_cost,
            waste_pct=c.waste_pct,
            quantity_reserved=ZERO,
            quantity_consumed=ZERO,
        ))
    await session.flush()

    logger.info("mo %s created from bom %s qty=%s", mo.reference, bom.reference, req.quantity)
    return mo


async def generate_work_orders_txn(mo_id: int, session: AsyncSession) -> list[WorkOrder]:
    mo = await load_mo(session, mo_id, lock=True)
    if MOStatus(mo.status) in MO_CLOSED:
        raise errors.InvalidState(f"Manufacturing order {mo.reference} is {mo.status}")

    existing = (await session.execute(
        select(func.count(WorkOrder.id)).where(WorkOrder.manufacturing_order_id == mo.id)
    )).scalar_one()
    if existing:
        raise errors.Conflict(f"Work orders already generated for {mo.reference}")

    _, operations = await bom_lines(session, mo.bom_id)
    if not operations:
        raise errors.InvalidState(f"BOM of {mo.reference} has no operations")

    now = now_utc()
    work_orders = []
    for op in operations:
        wo = WorkOrder(
            reference=await next_reference(session, "WO", now, width=3),
            manufacturing_order_id=mo.id,
            operation_name=op.name,
            work_center_id=op.work_center_id,
            sequence=op.sequence,
            expected_duration=op.duration,
            setup_time=op.setup_time,
            real_duration=ZERO,
            worked_minutes=ZERO,
            paused_minutes=ZERO,
            status=WOStatus.PENDING.value,
            assignee=mo.assignee,
            quality_check_required=op.quality_check_required,
            created_at=now,
        )
        session.add(wo)
        work_orders.append(wo)

    if mo.status == MOStatus.DRAFT.value:
        check_transition(MO_TRANSITIONS, mo.status, MOStatus.CONFIRMED, "Manufacturing order")
        mo.status = MOStatus.CONFIRMED.value
    mo.progress = 0

    await session.flush()
    logger.info("mo %s: generated %d work orders", mo.reference, len(work_orders))
    return work_orders


async def reserve_materials_txn(mo_id: int, session: AsyncSession, performed_by: str | None = None) -> ManufacturingOrder:
    mo = await load_mo(session, mo_id, lock=True)
    if MOStatus(mo.status) in MO_CLOSED:
        raise errors.InvalidState(f"Manufacturing order {mo.reference} is {mo.status}")
    if mo.materials_reserved:
        raise errors.Conflict(f"Materials already reserved for {mo.reference}")

    components = await mo_components(session, mo.id)
    materials = await lock_materials(session, [c.material_id for c in components])

    # Check every line before touching any balance.
    needed: dict[int, Decimal] = {}
    for c in components:
        needed[c.material_id] = needed.get(c.material_id, ZERO) + as_qty(c.required_quantity)
    for material_id, qty in needed.items():
        m = materials[material_id]
        if available(m) < qty:
            logger.warning(
                "mo %s: reservation refused for %s, available=%s required=%s",
                mo.reference, m.code, available(m), qty,
            )
            raise errors.InsufficientStock(
                f"Insufficient stock for {m.code}. available={available(m)} required={qty}"
            )

    for c in components:
        await record_movement(
            session, materials[c.material_id], "RESERVE", c.required_quantity,
            reference=mo.reference,
            reference_type=REFERENCE_TYPE,
            manufacturing_order_id=mo.id,
            performed_by=performed_by,
        )
        c.quantity_reserved = as_qty(c.required_quantity)

    mo.materials_reserved = True
    await session.flush()
    logger.info("mo %s: reserved %d component lines", mo.reference, len(components))
    return mo


async def release_reservations(session: AsyncSession, mo: ManufacturingOrder, components, materials, performed_by=None) -> None:
    for c in components:
        qty = as_qty(c.quantity_reserved)
        if qty > 0:
            await record_movement(
                session, materials[c.material_id], "RELEASE", qty,
                reference=mo.reference,
                reference_type=REFERENCE_TYPE,
                manufacturing_order_id=mo.id,
                performed_by=performed_by,
            )
            c.quantity_reserved = ZERO
    mo.materials_reserved = False


async def complete_mo_txn(mo_id: int, session: AsyncSession, performed_by: str | None = None, at: datetime | None = None) -> ManufacturingOrder:
    mo = await load_mo(session, mo_id, lock=True)
    if mo.status in (MOStatus.DRAFT.value, MOStatus.DONE.value, MOStatus.CANCELLED.value):
        raise errors.InvalidState(f"Manufacturing order {mo.reference} is {mo.status} and cannot be completed")

    work_orders = await mo_work_orders(session, mo.id)
    if not work_orders:
        raise errors.InvalidState(f"Manufacturing order {mo.reference} has no work orders")
    unfinished = [w.reference for w in work_orders if w.status != WOStatus.COMPLETED.value]
    if unfinished:
        raise errors.InvalidState(f"Work orders not completed: {', '.join(unfinished)}")

    check_transition(MO_TRANSITIONS, mo.status, MOStatus.DONE, "Manufacturing order")

    components = await mo_components(session, mo.id)
    materials = await lock_materials(session, [c.material_id for c in components] + [mo.finished_product_id])

    if not mo.materials_reserved:
        needed: dict[int, Decimal] = {}
        for c in components:
            needed[c.material_id] = needed.get(c.material_id, ZERO) + as_qty(c.required_quantity)
        for material_id, qty in needed.items():
            m = materials[material_id]
            if available(m) < qty:
                logger.warning(
                    "mo %s: consumption refused for %s, available=%s required=%s",
                    mo.reference, m.code, available(m), qty,
                )
                raise errors.InsufficientStock(
                    f"Insufficient stock for {m.code}. available={available(m)} required={qty}"
                )

    now = at or now_utc()
    await release_reservations(session, mo, components, materials, performed_by)
    for c in components:
        await record_movement(
            session, materials[c.material_id], "OUT", c.required_quantity,
            reference=mo.reference,
            reference_type=REFERENCE_TYPE,
            unit_cost=c.unit_cost,
            manufacturing_order_id=mo.id,
            performed_by=performed_by,
            at=now,
        )
        c.quantity_consumed = as_qty(c.required_quantity)

    quantity = as_qty(mo.quantity)
    await record_movement(
        session, materials[mo.finished_product_id], "IN", quantity,
        reference=mo.reference,
        reference_type=REFERENCE_TYPE,
        unit_cost=(planned_cost(components) / quantity).quantize(COST_PLACES),
        manufacturing_order_id=mo.id,
        performed_by=performed_by,
        at=now,
    )

    mo.status = MOStatus.DONE.value
    mo.progress = 100
    mo.quantity_produced = quantity
    mo.actual_end_date = now
    if mo.actual_start_date is None:
        mo.actual_start_date = now
    await session.flush()
    logger.info("mo %s completed, produced %s", mo.reference, quantity)
    return mo


async def update_status_txn(mo_id: int, req: MOStatusRequest, session: AsyncSession) -> ManufacturingOrder:
    mo = await load_mo(session, mo_id, lock=True)
    if req.status == MOStatus.DONE:
        raise errors.InvalidState("Use the complete action to finish a manufacturing order")

    previous = mo.status
    check_transition(MO_TRANSITIONS, mo.status, req.status, "Manufacturing order")
    now = now_utc()

    if req.status == MOStatus.IN_PROGRESS and mo.actual_start_date is None:
        mo.actual_start_date = now

    if req.status == MOStatus.CANCELLED:
        if mo.materials_reserved:
            components = await mo_components(session, mo.id)
            materials = await lock_materials(session, [c.material_id for c in components])
            await release_reservations(session, mo, components, materials)
        for w in await mo_work_orders(session, mo.id, lock=True):
            if w.status not in WO_OPEN:
                continue
            if w.status == WOStatus.IN_PROGRESS.value and w.last_resumed_at:
                w.worked_minutes = as_qty(w.worked_minutes) + minutes_between(w.last_resumed_at, now)
            w.status = WOStatus.CANCELLED.value
            w.cancellation_reason = req.reason or f"{mo.reference} cancelled"
            w.ended_at = now
        mo.cancellation_reason = req.reason

    mo.status = req.status.value
    await session.flush()
    logger.info("mo %s: %s -> %s", mo.reference, previous, mo.status)
    return mo


async def recompute_progress(session: AsyncSession, mo_id: int) -> ManufacturingOrder:
    """Derive progress from work-order completion and move the MO along with it."""
    mo = await load_mo(session, mo_id, lock=True)
    statuses = [w.status for w in await mo_work_orders(session, mo.id)]
    completed = sum(1 for s in statuses if s == WOStatus.COMPLETED.value)
    mo.progress = progress_percent(completed, len(statuses))

    if MOStatus(mo.status) in MO_OPEN:
        if mo.progress == 100:
            mo.status = MOStatus.TO_CLOSE.value
        elif mo.progress > 0:
            mo.status = MOStatus.IN_PROGRESS.value
        if mo.actual_start_date is None and mo.progress > 0:
            mo.actual_start_date = now_utc()

    await session.flush()
    logger.info("mo %s progress=%d status=%s", mo.reference, mo.progress, mo.status)
    return mo


@router.get("")
async def list_manufacturing_orders(
    status: MOStatus | None = None,
    assignee: str | None = None,
    priority: Priority | None = None,
    search: str | None = None,
    limit: int = 200,
    offset: int = 0,
    session: AsyncSession = Depends(get_session),
):
    q = (
        select(ManufacturingOrder, Material)
        .join(Material, Material.id == ManufacturingOrder.finished_product_id)
        .order_by(ManufacturingOrder.created_at.desc(), ManufacturingOrder.id.desc())
        .limit(limit)
        .offset(offset)
    )
    if status is not None:
        q = q.where(ManufacturingOrder.status == status.value)
    if assignee:
        q = q.where(ManufacturingOrder.assignee == assignee)
    if priority is not None:
        q = q.where(ManufacturingOrder.priority == priority.value)
    if search:
        pattern = f"%{search.strip()}%"
        q = q.where(or_(ManufacturingOrder.reference.ilike(pattern), Material.name.ilike(pattern)))

    now = now_utc()
    rows = (await session.execute(q)).all()
    return [
        {
            "id": mo.id,
            "reference": mo.reference,
            "finished_product_id": m.id,
            "finished_product_name": m.name,
            "quantity": float(mo.quantity),
            "status": mo.status,
            "priority": mo.priority,
            "progress": mo.progress,
            "assignee": mo.assignee,
            "materials_reserved": mo.materials_reserved,
            "scheduled_start_date": mo.scheduled_start_date,
            "due_date": mo.due_date,
            "is_delayed": is_delayed(mo, now),
        }
        for (mo, m) in rows
    ]


@router.get("/stats/overview")
async def manufacturing_order_stats(session: AsyncSession = Depends(get_session)):
    rows = (await session.execute(
        select(
            ManufacturingOrder.status,
            func.count(ManufacturingOrder.id),
            func.coalesce(func.sum(ManufacturingOrder.quantity), 0),
        ).group_by(ManufacturingOrder.status)
    )).all()
    overdue = (await session.execute(
        select(func.count(ManufacturingOrder.id))
        .where(ManufacturingOrder.due_date < now_utc())
        .where(ManufacturingOrder.status.notin_([s.value for s in MO_CLOSED]))
    )).scalar_one()

    return {
        "total": sum(r[1] for r in rows),
        "overdue": overdue,
        "by_status": [
            {"status": s, "count": count, "total_quantity": float(qty)}
            for s, count, qty in rows
        ],
    }


@router.get("/{mo_id}")
async def read_manufacturing_order(mo_id: int, session: AsyncSession = Depends(get_session)):
    return await mo_out(session, await load_mo(session, mo_id))


@router.post("/from-bom/{bom_id}", status_code=201)
async def create_from_bom(bom_id: int, req: MOCreateRequest, session: AsyncSession = Depends(get_session)):
    mo = await create_from_bom_txn(bom_id, req, session)
    await session.commit()
    return await mo_out(session, mo)


@router.post("/{mo_id}/generate-work-orders", status_code=201)
async def generate_work_orders(mo_id: int, session: AsyncSession = Depends(get_session)):
    await generate_work_orders_txn(mo_id, session)
    await session.commit()
    return await mo_out(session, await load_mo(session, mo_id))


@router.post("/{mo_id}/reserve-materials")
async def reserve_materials(mo_id: int, req: MOActionRequest | None = None, session: AsyncSession = Depends(get_session)):
    mo = await reserve_materials_txn(mo_id, session, performed_by=req.performed_by if req else None)
    await session.commit()
    return await mo_out(session, mo)


@router.post("/{mo_id}/complete")
async def complete_manufacturing_order(mo_id: int, req: MOActionRequest | None = None, session: AsyncSession = Depends(get_session)):
    mo = await complete_mo_txn(
        mo_id, session,
        performed_by=req.performed_by if req else None,
        at=req.performed_at if req else None,
    )
    await session.commit()
    return await mo_out(session, mo)


@router.post("/{mo_id}/status")
async def update_manufacturing_order_status(mo_id: int, req: MOStatusRequest, session: AsyncSession = Depends(get_session)):
    mo = await update_status_txn(mo_id, req, session)
    await session.commit()
    return await mo_out(session, mo)
