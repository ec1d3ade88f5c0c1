"""Status enums and their allowed transitions.

Each entity has a closed set of states; `check_transition` is the single place
that decides whether a move is legal.
"""
from __future__ import annotations

from enum import Enum

from mfg_erp_core import errors


class BOMStatus(str, Enum):
    DRAFT = "Draft"
    ACTIVE = "Active"
    OBSOLETE = "Obsolete"


class MOStatus(str, Enum):
    DRAFT = "Draft"
    CONFIRMED = "Confirmed"
    IN_PROGRESS = "In Progress"
    TO_CLOSE = "To Close"
    DONE = "Done"
    CANCELLED = "Cancelled"


class WOStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "In Progress"
    PAUSED = "Paused"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class WorkCenterStatus(str, Enum):
    ACTIVE = "Active"
    MAINTENANCE = "Maintenance"
    INACTIVE = "Inactive"
    BROKEN = "Broken"


class MovementType(str, Enum):
    IN = "IN"
    OUT = "OUT"
    RESERVE = "RESERVE"
    RELEASE = "RELEASE"


class Priority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    URGENT = "Urgent"


class MaterialCategory(str, Enum):
    RAW_MATERIAL = "Raw Material"
    COMPONENT = "Component"
    FINISHED_GOOD = "Finished Good"
    CONSUMABLE = "Consumable"
    TOOL = "Tool"


class MaterialStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    DISCONTINUED = "Discontinued"
    OBSOLETE = "Obsolete"


class Unit(str, Enum):
    PCS = "pcs"
    KG = "kg"
    M = "m"
    L = "l"
    M2 = "m2"
    M3 = "m3"
    BOX = "box"
    PACK = "pack"
    SET = "set"


class WorkCenterType(str, Enum):
    MACHINE = "Machine"
    ASSEMBLY = "Assembly"
    QUALITY = "Quality"
    PACKAGING = "Packaging"
    STORAGE = "Storage"


BOM_TRANSITIONS: dict[BOMStatus, set[BOMStatus]] = {
    BOMStatus.DRAFT: {BOMStatus.ACTIVE},
    BOMStatus.ACTIVE: {BOMStatus.OBSOLETE},
    BOMStatus.OBSOLETE: set(),
}

MO_TRANSITIONS: dict[MOStatus, set[MOStatus]] = {
    MOStatus.DRAFT: {MOStatus.CONFIRMED, MOStatus.CANCELLED},
    MOStatus.CONFIRMED: {MOStatus.IN_PROGRESS, MOStatus.CANCELLED},
    MOStatus.IN_PROGRESS: {MOStatus.TO_CLOSE, MOStatus.CANCELLED},
    MOStatus.TO_CLOSE: {MOStatus.DONE, MOStatus.CANCELLED},
    MOStatus.DONE: set(),
    MOStatus.CANCELLED: set(),
}

WO_TRANSITIONS: dict[WOStatus, set[WOStatus]] = {
    WOStatus.PENDING: {WOStatus.IN_PROGRESS, WOStatus.CANCELLED},
    WOStatus.IN_PROGRESS: {WOStatus.PAUSED, WOStatus.COMPLETED, WOStatus.CANCELLED},
    WOStatus.PAUSED: {WOStatus.IN_PROGRESS, WOStatus.CANCELLED},
    WOStatus.COMPLETED: set(),
    WOStatus.CANCELLED: set(),
}

WORK_CENTER_DOWN = {WorkCenterStatus.MAINTENANCE, WorkCenterStatus.BROKEN}

MO_OPEN = {MOStatus.CONFIRMED, MOStatus.IN_PROGRESS, MOStatus.TO_CLOSE}
MO_CLOSED = {MOStatus.DONE, MOStatus.CANCELLED}


def check_transition(table: dict, current: str, target: str, what: str) -> None:
    status_cls = type(next(iter(table)))
    current, target = status_cls(current), status_cls(target)
    if target not in table[current]:
        raise errors.InvalidState(f"{what} cannot move from {current.value} to {target.value}")
