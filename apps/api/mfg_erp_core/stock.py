from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mfg_erp_core import errors
from mfg_erp_core.clock import now_utc
from mfg_erp_core.models import Material, StockLedgerEntry
from mfg_erp_core.statuses import MaterialStatus, MovementType

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
COST_PLACES = Decimal("0.0001")


def as_qty(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def available(material: Material) -> Decimal:
    """Stock not yet earmarked for an order: on_hand - reserved."""
    return as_qty(material.on_hand) - as_qty(material.reserved)


def stock_status(material: Material) -> str:
    on_hand = as_qty(material.on_hand)
    if on_hand <= 0:
        return "Out of Stock"
    if on_hand <= as_qty(material.reorder_level):
        return "Low Stock"
    if on_hand >= as_qty(material.max_stock):
        return "Overstock"
    return "In Stock"


async def lock_material(session: AsyncSession, material_id: int) -> Material:
    material = (await session.execute(
        select(Material).where(Material.id == material_id).with_for_update()
    )).scalar_one_or_none()
    if not material:
        raise errors.NotFound(f"Material {material_id} not found")
    return material


async def lock_materials(session: AsyncSession, material_ids: Iterable[int]) -> dict[int, Material]:
    """Lock several materials, always in ascending id order so concurrent
    multi-material transactions cannot deadlock each other."""
    ids = sorted(set(material_ids))
    if not ids:
        return {}
    rows = (await session.execute(
        select(Material).where(Material.id.in_(ids)).order_by(Material.id).with_for_update()
    )).scalars().all()
    found = {m.id: m for m in rows}
    missing = [i for i in ids if i not in found]
    if missing:
        raise errors.NotFound(f"Material(s) not found: {', '.join(str(i) for i in missing)}")
    return found


def _apply(material: Material, movement_type: MovementType, qty: Decimal, unit_cost: Decimal | None) -> None:
    on_hand = as_qty(material.on_hand)
    reserved = as_qty(material.reserved)

    if movement_type == MovementType.IN:
        if unit_cost is not None:
            # weighted average over the stock already on hand
            total_value = on_hand * as_qty(material.average_cost) + qty * unit_cost
            material.average_cost = (total_value / (on_hand + qty)).quantize(COST_PLACES)
            material.last_cost = unit_cost
        material.on_hand = on_hand + qty

    elif movement_type == MovementType.OUT:
        if on_hand - qty < reserved:
            raise errors.InsufficientStock(
                f"Insufficient stock for {material.code}. on_hand={on_hand} "
                f"reserved={reserved} requested={qty}"
            )
        material.on_hand = on_hand - qty

    elif movement_type == MovementType.RESERVE:
        if on_hand - reserved < qty:
            raise errors.InsufficientStock(
                f"Insufficient available stock for {material.code}. "
                f"available={on_hand - reserved} requested={qty}"
            )
        material.reserved = reserved + qty

    elif movement_type == MovementType.RELEASE:
        if qty > reserved:
            raise errors.InvalidState(
                f"Cannot release more than reserved for {material.code}. reserved={reserved} requested={qty}"
            )
        material.reserved = reserved - qty


async def record_movement(
    session: AsyncSession,
    material: Material,
    movement_type: MovementType | str,
    quantity,
    reference: str,
    reference_type: str = "Adjustment",
    *,
    unit_cost=None,
    manufacturing_order_id: int | None = None,
    work_order_id: int | None = None,
    notes: str | None = None,
    performed_by: str | None = None,
    at: datetime | None = None,
) -> StockLedgerEntry:
    """Apply one movement to a locked material and append its ledger entry.

    This is the only place on_hand/reserved change. Prior entries are never
    touched, so replaying the ledger reproduces the material's balance.
    """
    movement_type = MovementType(movement_type)
    qty = as_qty(quantity)
    if qty <= 0:
        raise errors.ValidationError("Movement quantity must be greater than 0")
    cost = as_qty(unit_cost) if unit_cost is not None else None
    if cost is not None and cost < 0:
        raise errors.ValidationError("unit_cost cannot be negative")

    _apply(material, movement_type, qty, cost)

    entry = StockLedgerEntry(
        material_id=material.id,
        movement_type=movement_type.value,
        quantity=qty,
        unit_cost=cost if cost is not None else as_qty(material.average_cost),
        reference=reference,
        reference_type=reference_type,
        manufacturing_order_id=manufacturing_order_id,
        work_order_id=work_order_id,
        on_hand_after=material.on_hand,
        reserved_after=material.reserved,
        notes=notes,
        performed_by=performed_by,
        created_at=at or now_utc(),
    )
    material.updated_at = entry.created_at
    session.add(entry)
    await session.flush()

    logger.info(
        "stock %s %s qty=%s ref=%s on_hand=%s reserved=%s",
        movement_type.value, material.code, qty, reference, material.on_hand, material.reserved,
    )
    return entry


def replay(entries: Iterable[StockLedgerEntry]) -> tuple[Decimal, Decimal]:
    on_hand = ZERO
    reserved = ZERO
    for e in entries:
        qty = as_qty(e.quantity)
        if e.movement_type == MovementType.IN.value:
            on_hand += qty
        elif e.movement_type == MovementType.OUT.value:
            on_hand -= qty
        elif e.movement_type == MovementType.RESERVE.value:
            reserved += qty
        elif e.movement_type == MovementType.RELEASE.value:
            reserved -= qty
    return on_hand, reserved


async def balance_for(session: AsyncSession, material_id: int) -> dict:
    """Rebuild a material's balance from its ledger and compare with the live record."""
    material = (await session.execute(
        select(Material).where(Material.id == material_id)
    )).scalar_one_or_none()
    if not material:
        raise errors.NotFound(f"Material {material_id} not found")

    entries = (await session.execute(
        select(StockLedgerEntry)
        .where(StockLedgerEntry.material_id == material_id)
        .order_by(StockLedgerEntry.id.asc())
    )).scalars().all()

    on_hand, reserved = replay(entries)
    consistent = on_hand == as_qty(material.on_hand) and reserved == as_qty(material.reserved)
    if not consistent:
        logger.warning(
            "ledger mismatch for %s: ledger on_hand=%s reserved=%s, record on_hand=%s reserved=%s",
            material.code, on_hand, reserved, material.on_hand, material.reserved,
        )

    return {
        "material_id": material.id,
        "material_code": material.code,
        "entries": len(entries),
        "on_hand": on_hand,
        "reserved": reserved,
        "available": on_hand - reserved,
        "record_on_hand": as_qty(material.on_hand),
        "record_reserved": as_qty(material.reserved),
        "consistent": consistent,
    }


async def low_stock_materials(session: AsyncSession, limit: int = 200) -> list[Material]:
    return list((await session.execute(
        select(Material)
        .where(Material.status == MaterialStatus.ACTIVE.value)
        .where(Material.on_hand <= Material.reorder_level)
        .order_by(Material.on_hand.asc(), Material.id.asc())
        .limit(limit)
    )).scalars().all())
