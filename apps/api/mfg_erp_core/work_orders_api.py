from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, condecimal
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mfg_erp_core import errors
from mfg_erp_core.clock import minutes_between, now_utc
from mfg_erp_core.db import get_session
from mfg_erp_core.manufacturing_orders_api import load_mo, recompute_progress
from mfg_erp_core.models import ManufacturingOrder, WorkCenter, WorkOrder, WorkOrderComment
from mfg_erp_core.statuses import MOStatus, WO_TRANSITIONS, WOStatus, check_transition
from mfg_erp_core.stock import as_qty

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/work-orders", tags=["work-orders"])

Minutes = condecimal(ge=0, max_digits=12, decimal_places=2)

MO_NOT_WORKABLE = {MOStatus.DRAFT.value, MOStatus.DONE.value, MOStatus.CANCELLED.value}

class WOActionRequest(BaseModel):
    performed_by: str | None = None
    performed_at: datetime | None = None

class QualityCheckIn(BaseModel):
    passed: bool
    notes: str | None = Field(default=None, max_length=500)
    checked_by: str | None = Field(default=None, max_length=128)

class WOCompleteRequest(BaseModel):
    real_duration: Minutes | None = None
    quality_check: QualityCheckIn | None = None
    performed_at: datetime | None = None

class WOCancelRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)
    performed_at: datetime | None = None

class CommentCreateRequest(BaseModel):
    text: str = Field(min_length=1, max_length=500)
    author: str = Field(min_length=1, max_length=128)


def efficiency(wo: WorkOrder) -> float | None:
    """expected / real duration as a percentage; None until there is a real duration."""
    real = as_qty(wo.real_duration)
    if real <= 0:
        return None
    return round(float(wo.expected_duration) / float(real) * 100, 2)


def work_order_out(wo: WorkOrder, mo_reference: str | None = None, work_center_name: str | None = None) -> dict:
    return {
        "id": wo.id,
        "reference": wo.reference,
        "manufacturing_order_id": wo.manufacturing_order_id,
        "manufacturing_order_reference": mo_reference,
        "operation_name": wo.operation_name,
        "work_center_id": wo.work_center_id,
        "work_center_name": work_center_name,
        "sequence": wo.sequence,
        "status": wo.status,
        "assignee": wo.assignee,
        "expected_duration": wo.expected_duration,
        "setup_time": wo.setup_time,
        "real_duration": float(wo.real_duration),
        "worked_minutes": float(wo.worked_minutes),
        "paused_minutes": float(wo.paused_minutes),
        "efficiency": efficiency(wo),
        "started_at": wo.started_at,
        "paused_at": wo.paused_at,
        "ended_at": wo.ended_at,
        "quality_check_required": wo.quality_check_required,
        "quality_passed": wo.quality_passed,
        "quality_notes": wo.quality_notes,
        "quality_checked_by": wo.quality_checked_by,
        "quality_checked_at": wo.quality_checked_at,
        "cancellation_reason": wo.cancellation_reason,
        "created_at": wo.created_at,
    }


async def load_wo(session: AsyncSession, wo_id: int, lock: bool = False) -> WorkOrder:
    q = select(WorkOrder).where(WorkOrder.id == wo_id)
    if lock:
        q = q.with_for_update().execution_options(populate_existing=True)
    wo = (await session.execute(q)).scalar_one_or_none()
    if not wo:
        raise errors.NotFound(f"Work order {wo_id} not found")
    return wo


async def lock_wo_with_mo(session: AsyncSession, wo_id: int) -> tuple[WorkOrder, ManufacturingOrder]:
    # MO before WO, the same order the MO cancel path locks in.
    wo = await load_wo(session, wo_id)
    mo = await load_mo(session, wo.manufacturing_order_id, lock=True)
    wo = await load_wo(session, wo_id, lock=True)
    return wo, mo


def _stop_clock(wo: WorkOrder, now: datetime) -> None:
    if wo.status == WOStatus.IN_PROGRESS.value and wo.last_resumed_at is not None:
        wo.worked_minutes = as_qty(wo.worked_minutes) + minutes_between(wo.last_resumed_at, now)
        wo.last_resumed_at = None


async def start_txn(wo_id: int, session: AsyncSession, at: datetime | None = None) -> WorkOrder:
    wo, mo = await lock_wo_with_mo(session, wo_id)
    check_transition(WO_TRANSITIONS, wo.status, WOStatus.IN_PROGRESS, "Work order")
    if mo.status in MO_NOT_WORKABLE:
        raise errors.InvalidState(f"Manufacturing order {mo.reference} is {mo.status}")

    blocking = (await session.execute(
        select(WorkOrder.reference)
        .where(WorkOrder.manufacturing_order_id == mo.id)
        .where(WorkOrder.sequence < wo.sequence)
        .where(WorkOrder.status != WOStatus.COMPLETED.value)
        .order_by(WorkOrder.sequence)
    )).scalars().all()
    if blocking:
        raise errors.InvalidState(f"Earlier work orders not completed: {', '.join(blocking)}")

    now = at or now_utc()
    if wo.status == WOStatus.PENDING.value:
        wo.started_at = now
    else:
        wo.paused_minutes = as_qty(wo.paused_minutes) + minutes_between(wo.paused_at, now)
        wo.paused_at = None
    previous = wo.status
    wo.status = WOStatus.IN_PROGRESS.value
    wo.last_resumed_at = now

    if mo.status == MOStatus.CONFIRMED.value:
        mo.status = MOStatus.IN_PROGRESS.value
        if mo.actual_start_date is None:
            mo.actual_start_date = now
        logger.info("mo %s: Confirmed -> In Progress (first work order started)", mo.reference)

    await session.flush()
    logger.info("wo %s: %s -> In Progress", wo.reference, previous)
    return wo


async def pause_txn(wo_id: int, session: AsyncSession, at: datetime | None = None) -> WorkOrder:
    wo, _ = await lock_wo_with_mo(session, wo_id)
    check_transition(WO_TRANSITIONS, wo.status, WOStatus.PAUSED, "Work order")
    now = at or now_utc()
    _stop_clock(wo, now)
    wo.status = WOStatus.PAUSED.value
    wo.paused_at = now
    await session.flush()
    logger.info("wo %s paused after %s worked minutes", wo.reference, wo.worked_minutes)
    return wo


async def complete_txn(wo_id: int, req: WOCompleteRequest, session: AsyncSession) -> WorkOrder:
    wo, mo = await lock_wo_with_mo(session, wo_id)
    check_transition(WO_TRANSITIONS, wo.status, WOStatus.COMPLETED, "Work order")
    if wo.quality_check_required and req.quality_check is None:
        raise errors.ValidationError(f"Work order {wo.reference} requires a quality check")

    now = req.performed_at or now_utc()
    _stop_clock(wo, now)
    wo.status = WOStatus.COMPLETED.value
    wo.ended_at = now
    wo.real_duration = req.real_duration if req.real_duration is not None else as_qty(wo.worked_minutes)

    if req.quality_check is not None:
        wo.quality_passed = req.quality_check.passed
        wo.quality_notes = req.quality_check.notes
        wo.quality_checked_by = req.quality_check.checked_by
        wo.quality_checked_at = now

    await session.flush()
    logger.info("wo %s completed, real_duration=%s", wo.reference, wo.real_duration)
    await recompute_progress(session, mo.id)
    return wo


async def cancel_txn(wo_id: int, req: WOCancelRequest, session: AsyncSession) -> WorkOrder:
    wo, _ = await lock_wo_with_mo(session, wo_id)
    check_transition(WO_TRANSITIONS, wo.status, WOStatus.CANCELLED, "Work order")
    now = req.performed_at or now_utc()
    _stop_clock(wo, now)
    previous = wo.status
    wo.status = WOStatus.CANCELLED.value
    wo.cancellation_reason = req.reason
    wo.ended_at = now
    await session.flush()
    logger.info("wo %s: %s -> Cancelled (%s)", wo.reference, previous, req.reason)
    return wo


async def add_comment_txn(wo_id: int, req: CommentCreateRequest, session: AsyncSession) -> WorkOrderComment:
    await load_wo(session, wo_id)
    comment = WorkOrderComment(work_order_id=wo_id, text=req.text, author=req.author, created_at=now_utc())
    session.add(comment)
    await session.flush()
    return comment


async def _out(session: AsyncSession, wo: WorkOrder) -> dict:
    mo_ref = (await session.execute(
        select(ManufacturingOrder.reference).where(ManufacturingOrder.id == wo.manufacturing_order_id)
    )).scalar_one_or_none()
    wc_name = (await session.execute(
        select(WorkCenter.name).where(WorkCenter.id == wo.work_center_id)
    )).scalar_one_or_none()
    return work_order_out(wo, mo_ref, wc_name)


@router.get("")
async def list_work_orders(
    status: WOStatus | None = None,
    mo_id: int | None = None,
    work_center_id: int | None = None,
    assignee: str | None = None,
    limit: int = 200,
    offset: int = 0,
    session: AsyncSession = Depends(get_session),
):
    q = (
        select(WorkOrder, ManufacturingOrder.reference, WorkCenter.name)
        .join(ManufacturingOrder, ManufacturingOrder.id == WorkOrder.manufacturing_order_id)
        .join(WorkCenter, WorkCenter.id == WorkOrder.work_center_id)
        .order_by(WorkOrder.manufacturing_order_id.desc(), WorkOrder.sequence.asc())
        .limit(limit)
        .offset(offset)
    )
    if status is not None:
        q = q.where(WorkOrder.status == status.value)
    if mo_id is not None:
        q = q.where(WorkOrder.manufacturing_order_id == mo_id)
    if work_center_id is not None:
        q = q.where(WorkOrder.work_center_id == work_center_id)
    if assignee:
        q = q.where(WorkOrder.assignee == assignee)

    rows = (await session.execute(q)).all()
    return [work_order_out(wo, mo_ref, wc_name) for (wo, mo_ref, wc_name) in rows]


@router.get("/{wo_id}")
async def read_work_order(wo_id: int, session: AsyncSession = Depends(get_session)):
    return await _out(session, await load_wo(session, wo_id))


@router.post("/{wo_id}/start")
async def start_work_order(wo_id: int, req: WOActionRequest | None = None, session: AsyncSession = Depends(get_session)):
    wo = await start_txn(wo_id, session, at=req.performed_at if req else None)
    await session.commit()
    return await _out(session, wo)


@router.post("/{wo_id}/pause")
async def pause_work_order(wo_id: int, req: WOActionRequest | None = None, session: AsyncSession = Depends(get_session)):
    wo = await pause_txn(wo_id, session, at=req.performed_at if req else None)
    await session.commit()
    return await _out(session, wo)


@router.post("/{wo_id}/complete")
async def complete_work_order(wo_id: int, req: WOCompleteRequest | None = None, session: AsyncSession = Depends(get_session)):
    wo = await complete_txn(wo_id, req or WOCompleteRequest(), session)
    await session.commit()
    return await _out(session, wo)


@router.post("/{wo_id}/cancel")
async def cancel_work_order(wo_id: int, req: WOCancelRequest, session: AsyncSession = Depends(get_session)):
    wo = await cancel_txn(wo_id, req, session)
    await session.commit()
    return await _out(session, wo)


@router.get("/{wo_id}/comments")
async def list_comments(wo_id: int, session: AsyncSession = Depends(get_session)):
    await load_wo(session, wo_id)
    rows = (await session.execute(
        select(WorkOrderComment)
        .where(WorkOrderComment.work_order_id == wo_id)
        .order_by(WorkOrderComment.created_at.asc(), WorkOrderComment.id.asc())
    )).scalars().all()
    return [
        {"id": c.id, "text": c.text, "author": c.author, "created_at": c.created_at}
        for c in rows
    ]


@router.post("/{wo_id}/comments", status_code=201)
async def add_comment(wo_id: int, req: CommentCreateRequest, session: AsyncSession = Depends(get_session)):
    c = await add_comment_txn(wo_id, req, session)
    await session.commit()
    return {"id": c.id, "work_order_id": c.work_order_id, "text": c.text, "author": c.author, "created_at": c.created_at}
