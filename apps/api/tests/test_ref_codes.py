from datetime import datetime, timezone

from sqlalchemy import select

from mfg_erp_core.models import ReferenceCounter
from mfg_erp_core.ref_codes import next_reference


async def test_sequence_per_prefix_and_year(session):
    jan = datetime(2026, 1, 5, tzinfo=timezone.utc)
    assert await next_reference(session, "MO", at=jan) == "MO-2026-0001"
    assert await next_reference(session, "MO", at=jan) == "MO-2026-0002"
    assert await next_reference(session, "WO", at=jan) == "WO-2026-0001"
    assert await next_reference(session, "MO", at=datetime(2027, 1, 1, tzinfo=timezone.utc)) == "MO-2027-0001"
    await session.commit()

    assert await next_reference(session, "MO", at=jan, width=6) == "MO-2026-000003"
    await session.commit()

    rows = (await session.execute(
        select(ReferenceCounter.prefix, ReferenceCounter.year, ReferenceCounter.last_seq)
        .order_by(ReferenceCounter.prefix, ReferenceCounter.year)
    )).all()
    assert [tuple(r) for r in rows] == [("MO", 2026, 3), ("MO", 2027, 1), ("WO", 2026, 1)]


async def test_existing_counter_row_is_reused(session):
    session.add(ReferenceCounter(prefix="BOM", year=2026, last_seq=41))
    await session.commit()

    at = datetime(2026, 6, 1, tzinfo=timezone.utc)
    assert await next_reference(session, "BOM", at=at) == "BOM-2026-0042"
    await session.commit()

    count = len((await session.execute(select(ReferenceCounter))).scalars().all())
    assert count == 1
