from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, condecimal, conint
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from mfg_erp_core import errors
from mfg_erp_core.clock import as_utc, minutes_between, now_utc
from mfg_erp_core.db import get_session
from mfg_erp_core.models import WorkCenter
from mfg_erp_core.statuses import WORK_CENTER_DOWN, WorkCenterStatus, WorkCenterType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/work-centers", tags=["work-centers"])

Money = condecimal(ge=0, max_digits=12, decimal_places=2)
Hours = condecimal(ge=1, le=24, max_digits=5, decimal_places=2)
Percent = condecimal(ge=0, le=100, max_digits=5, decimal_places=2)

class WorkCenterCreateRequest(BaseModel):
    code: str = Field(min_length=2, max_length=32)
    name: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=500)
    center_type: WorkCenterType
    location: str = Field(min_length=1, max_length=128)
    cost_per_hour: Money
    hours_per_day: Hours = Decimal("8")
    days_per_week: conint(ge=1, le=7) = 5
    efficiency_pct: Percent = Decimal("85")

class WorkCenterUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=500)
    center_type: WorkCenterType | None = None
    location: str | None = Field(default=None, min_length=1, max_length=128)
    cost_per_hour: Money | None = None
    hours_per_day: Hours | None = None
    days_per_week: conint(ge=1, le=7) | None = None
    efficiency_pct: Percent | None = None

class WorkCenterStatusRequest(BaseModel):
    status: WorkCenterStatus
    reason: str | None = Field(default=None, max_length=500)
    changed_at: datetime | None = None


def effective_capacity_hours(wc: WorkCenter) -> float:
    """Productive hours per week after efficiency losses."""
    return round(float(wc.hours_per_day) * wc.days_per_week * float(wc.efficiency_pct) / 100, 2)


def work_center_out(wc: WorkCenter) -> dict:
    return {
        "id": wc.id,
        "code": wc.code,
        "name": wc.name,
        "description": wc.description,
        "center_type": wc.center_type,
        "location": wc.location,
        "cost_per_hour": float(wc.cost_per_hour),
        "hours_per_day": float(wc.hours_per_day),
        "days_per_week": wc.days_per_week,
        "efficiency_pct": float(wc.efficiency_pct),
        "effective_capacity_hours": effective_capacity_hours(wc),
        "status": wc.status,
        "downtime_minutes": float(wc.downtime_minutes),
        "last_downtime_at": wc.last_downtime_at,
        "downtime_reason": wc.downtime_reason,
        "created_at": wc.created_at,
    }


async def get_work_center(session: AsyncSession, work_center_id: int, lock: bool = False) -> WorkCenter:
    q = select(WorkCenter).where(WorkCenter.id == work_center_id)
    if lock:
        q = q.with_for_update()
    wc = (await session.execute(q)).scalar_one_or_none()
    if not wc:
        raise errors.NotFound(f"Work center {work_center_id} not found")
    return wc


async def create_work_center_txn(req: WorkCenterCreateRequest, session: AsyncSession) -> WorkCenter:
    code = req.code.strip().upper()
    clash = (await session.execute(
        select(WorkCenter.id).where(or_(WorkCenter.code == code, WorkCenter.name == req.name.strip()))
    )).first()
    if clash:
        raise errors.Conflict(f"Work center code or name already exists: {code}")

    wc = WorkCenter(
        code=code,
        name=req.name.strip(),
        description=req.description,
        center_type=req.center_type.value,
        location=req.location,
        cost_per_hour=req.cost_per_hour,
        hours_per_day=req.hours_per_day,
        days_per_week=req.days_per_week,
        efficiency_pct=req.efficiency_pct,
        status=WorkCenterStatus.ACTIVE.value,
        downtime_minutes=Decimal("0"),
        created_at=now_utc(),
    )
    session.add(wc)
    await session.flush()
    return wc


async def change_status_txn(work_center_id: int, req: WorkCenterStatusRequest, session: AsyncSession) -> WorkCenter:
    wc = await get_work_center(session, work_center_id, lock=True)
    now = req.changed_at or now_utc()
    current = WorkCenterStatus(wc.status)

    if req.status in WORK_CENTER_DOWN and current == WorkCenterStatus.ACTIVE:
        wc.last_downtime_at = now
        if req.reason:
            wc.downtime_reason = req.reason

    # Back in service: book the time spent down.
    if req.status == WorkCenterStatus.ACTIVE and current in WORK_CENTER_DOWN and wc.last_downtime_at:
        wc.downtime_minutes = Decimal(str(wc.downtime_minutes)) + minutes_between(as_utc(wc.last_downtime_at), now)

    wc.status = req.status.value
    logger.info("work center %s: %s -> %s", wc.code, current.value, req.status.value)
    return wc


@router.get("")
async def list_work_centers(
    center_type: WorkCenterType | None = None,
    status: WorkCenterStatus | None = None,
    limit: int = 200,
    offset: int = 0,
    session: AsyncSession = Depends(get_session),
):
    q = select(WorkCenter).order_by(WorkCenter.code.asc()).limit(limit).offset(offset)
    if center_type is not None:
        q = q.where(WorkCenter.center_type == center_type.value)
    if status is not None:
        q = q.where(WorkCenter.status == status.value)
    rows = (await session.execute(q)).scalars().all()
    return [work_center_out(w) for w in rows]


@router.get("/{work_center_id}")
async def read_work_center(work_center_id: int, session: AsyncSession = Depends(get_session)):
    return work_center_out(await get_work_center(session, work_center_id))


@router.post("", status_code=201)
async def create_work_center(req: WorkCenterCreateRequest, session: AsyncSession = Depends(get_session)):
    wc = await create_work_center_txn(req, session)
    await session.commit()
    return work_center_out(wc)


@router.put("/{work_center_id}")
async def update_work_center(work_center_id: int, req: WorkCenterUpdateRequest, session: AsyncSession = Depends(get_session)):
    wc = await get_work_center(session, work_center_id, lock=True)
    changes = req.model_dump(exclude_unset=True, exclude_none=True)
    if "name" in changes:
        changes["name"] = changes["name"].strip()
        clash = (await session.execute(
            select(WorkCenter.id).where(WorkCenter.name == changes["name"]).where(WorkCenter.id != wc.id)
        )).first()
        if clash:
            raise errors.Conflict(f"Work center name already exists: {changes['name']}")
    for field, value in changes.items():
        setattr(wc, field, value.value if hasattr(value, "value") else value)
    await session.commit()
    return work_center_out(wc)


@router.post("/{work_center_id}/status")
async def update_work_center_status(work_center_id: int, req: WorkCenterStatusRequest, session: AsyncSession = Depends(get_session)):
    wc = await change_status_txn(work_center_id, req, session)
    await session.commit()
    return work_center_out(wc)
