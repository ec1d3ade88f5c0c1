from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from mfg_erp_core.clock import now_utc
from mfg_erp_core.db import get_session
from mfg_erp_core.models import ManufacturingOrder, Material, WorkCenter, WorkOrder
from mfg_erp_core.statuses import MO_CLOSED, MaterialStatus, MOStatus, WOStatus

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("")
async def dashboard(recent: int = 5, session: AsyncSession = Depends(get_session)):
    mo_by_status = dict((await session.execute(
        select(ManufacturingOrder.status, func.count(ManufacturingOrder.id)).group_by(ManufacturingOrder.status)
    )).all())
    overdue = (await session.execute(
        select(func.count(ManufacturingOrder.id))
        .where(ManufacturingOrder.due_date < now_utc())
        .where(ManufacturingOrder.status.notin_([s.value for s in MO_CLOSED]))
    )).scalar_one()

    wo_by_status = dict((await session.execute(
        select(WorkOrder.status, func.count(WorkOrder.id)).group_by(WorkOrder.status)
    )).all())

    wc_by_status = dict((await session.execute(
        select(WorkCenter.status, func.count(WorkCenter.id)).group_by(WorkCenter.status)
    )).all())

    # efficiency per completed WO = expected / real * 100
    eff_rows = (await session.execute(
        select(
            WorkCenter.id,
            WorkCenter.code,
            WorkCenter.name,
            func.count(WorkOrder.id),
            func.avg(WorkOrder.expected_duration * 100.0 / WorkOrder.real_duration),
        )
        .join(WorkOrder, WorkOrder.work_center_id == WorkCenter.id)
        .where(WorkOrder.status == WOStatus.COMPLETED.value)
        .where(WorkOrder.real_duration > 0)
        .group_by(WorkCenter.id, WorkCenter.code, WorkCenter.name)
        .order_by(WorkCenter.code)
    )).all()

    active_materials = Material.status == MaterialStatus.ACTIVE.value
    low_stock = (await session.execute(
        select(func.count(Material.id)).where(active_materials).where(Material.on_hand <= Material.reorder_level)
    )).scalar_one()
    out_of_stock = (await session.execute(
        select(func.count(Material.id)).where(active_materials).where(Material.on_hand <= 0)
    )).scalar_one()

    recent_rows = (await session.execute(
        select(ManufacturingOrder, Material.name)
        .join(Material, Material.id == ManufacturingOrder.finished_product_id)
        .order_by(ManufacturingOrder.created_at.desc(), ManufacturingOrder.id.desc())
        .limit(recent)
    )).all()

    return {
        "manufacturing_orders": {
            "total": sum(mo_by_status.values()),
            "by_status": {s.value: mo_by_status.get(s.value, 0) for s in MOStatus},
            "in_progress": mo_by_status.get(MOStatus.IN_PROGRESS.value, 0),
            "overdue": overdue,
        },
        "work_orders": {
            "total": sum(wo_by_status.values()),
            "by_status": {s.value: wo_by_status.get(s.value, 0) for s in WOStatus},
        },
        "work_centers": {
            "total": sum(wc_by_status.values()),
            "by_status": wc_by_status,
            "efficiency": [
                {
                    "work_center_id": wc_id,
                    "code": code,
                    "name": name,
                    "completed_work_orders": n,
                    "average_efficiency": round(float(avg), 2) if avg is not None else None,
                }
                for wc_id, code, name, n, avg in eff_rows
            ],
        },
        "materials": {
            "low_stock": low_stock,
            "out_of_stock": out_of_stock,
        },
        "recent_orders": [
            {
                "id": mo.id,
                "reference": mo.reference,
                "product": product_name,
                "quantity": float(mo.quantity),
                "status": mo.status,
                "progress": mo.progress,
                "due_date": mo.due_date,
            }
            for mo, product_name in recent_rows
        ],
    }
