from __future__ import annotations

from datetime import datetime
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from mfg_erp_core.clock import now_utc
from mfg_erp_core.models import ReferenceCounter

async def next_reference(session: AsyncSession, prefix: str, at: datetime | None = None, width: int = 4) -> str:
    """Next `PREFIX-<year>-<seq>` reference; sequences restart every year.

    Race-safe: concurrent callers for a new year both insert-or-ignore the
    counter row, then serialize on its row lock before bumping it.
    """
    if at is None:
        at = now_utc()
    year = at.year

    await session.execute(
        text("""
            INSERT INTO reference_counters(prefix, year, last_seq)
            VALUES (:p, :y, 0)
            ON CONFLICT (prefix, year) DO NOTHING
        """),
        {"p": prefix, "y": year},
    )

    counter = (await session.execute(
        select(ReferenceCounter)
        .where(ReferenceCounter.prefix == prefix)
        .where(ReferenceCounter.year == year)
        .with_for_update()
        .execution_options(populate_existing=True)
    )).scalar_one()

    counter.last_seq += 1
    await session.flush()

    return f"{prefix}-{year}-{counter.last_seq:0{width}d}"
