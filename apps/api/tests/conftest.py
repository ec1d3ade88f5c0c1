import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from main import app
from mfg_erp_core.db import get_session
from mfg_erp_core.models import Base


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
async def client(session_factory):
    async def override_get_session():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_session] = override_get_session
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_material(client):
    async def _make(name="Steel Sheet", opening_stock=0, average_cost=0, category="Raw Material", unit="pcs", **extra):
        body = {
            "name": name,
            "category": category,
            "unit": unit,
            "opening_stock": str(opening_stock),
            "average_cost": str(average_cost),
            **extra,
        }
        r = await client.post("/materials", json=body)
        assert r.status_code == 201, r.text
        return r.json()
    return _make


@pytest.fixture
def make_work_center(client):
    counter = {"n": 0}

    async def _make(name=None, **extra):
        counter["n"] += 1
        n = counter["n"]
        body = {
            "code": f"WC{n:02d}",
            "name": name or f"Work Center {n}",
            "center_type": "Machine",
            "location": "Hall A",
            "cost_per_hour": "40",
            **extra,
        }
        r = await client.post("/work-centers", json=body)
        assert r.status_code == 201, r.text
        return r.json()
    return _make


@pytest.fixture
def make_bom(client, make_work_center):
    async def _make(product_id, components, operations=None, approve=True):
        """components: [(material_id, quantity, unit_cost)]; operations: [(name, duration, extra)]"""
        if operations is None:
            operations = [("Cut", 30, {}), ("Assemble", 45, {})]
        ops = []
        for seq, (op_name, duration, extra) in enumerate(operations, start=1):
            wc = await make_work_center()
            ops.append({"sequence": seq * 10, "name": op_name, "work_center_id": wc["id"], "duration": duration, **extra})
        body = {
            "finished_product_id": product_id,
            "components": [
                {"material_id": mid, "quantity": str(qty), "unit_cost": str(cost)}
                for (mid, qty, cost) in components
            ],
            "operations": ops,
        }
        r = await client.post("/boms", json=body)
        assert r.status_code == 201, r.text
        bom = r.json()
        if approve:
            r = await client.post(f"/boms/{bom['id']}/approve")
            assert r.status_code == 200, r.text
            bom = r.json()
        return bom
    return _make


@pytest.fixture
def make_mo(client):
    async def _make(bom_id, quantity=10, **extra):
        start = datetime.now(timezone.utc)
        body = {
            "quantity": str(quantity),
            "scheduled_start_date": start.isoformat(),
            "due_date": (start + timedelta(days=7)).isoformat(),
            "assignee": "alice",
            **extra,
        }
        r = await client.post(f"/manufacturing-orders/from-bom/{bom_id}", json=body)
        assert r.status_code == 201, r.text
        return r.json()
    return _make


@pytest.fixture
async def widget_setup(make_material, make_bom):
    """Finished product WIDGET built from 5 x BOLT at 2.00, two operations."""
    product = await make_material(name="Widget", category="Finished Good")
    bolt = await make_material(name="Bolt", category="Component", opening_stock=100, average_cost=2)
    bom = await make_bom(product["id"], [(bolt["id"], 5, 2)])
    return {"product": product, "bolt": bolt, "bom": bom}
