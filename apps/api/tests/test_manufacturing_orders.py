import re
from datetime import datetime, timedelta, timezone

import pytest

from mfg_erp_core.manufacturing_orders_api import progress_percent


async def _finish_all_work_orders(client, mo_id):
    mo = (await client.get(f"/manufacturing-orders/{mo_id}")).json()
    for wo in mo["work_orders"]:
        r = await client.post(f"/work-orders/{wo['id']}/start")
        assert r.status_code == 200, r.text
        r = await client.post(f"/work-orders/{wo['id']}/complete", json={"real_duration": "30"})
        assert r.status_code == 200, r.text


async def test_create_from_bom_snapshots_required_quantity(client, widget_setup, make_mo):
    mo = await make_mo(widget_setup["bom"]["id"], quantity=10)

    assert re.fullmatch(r"MO-\d{4}-0001", mo["reference"])
    assert mo["status"] == "Draft"
    assert mo["progress"] == 0
    [line] = mo["components"]
    assert line["material_id"] == widget_setup["bolt"]["id"]
    assert line["required_quantity"] == 50.0
    assert mo["planned_cost"] == pytest.approx(100.0)
    assert mo["planned_unit_cost"] == pytest.approx(10.0)


async def test_create_from_draft_bom_is_invalid_state(client, make_material, make_bom, make_mo):
    product = await make_material(name="Gadget")
    part = await make_material(name="Spring")
    bom = await make_bom(product["id"], [(part["id"], 1, 1)], approve=False)

    start = datetime.now(timezone.utc)
    r = await client.post(f"/manufacturing-orders/from-bom/{bom['id']}", json={
        "quantity": "1",
        "scheduled_start_date": start.isoformat(),
        "due_date": (start + timedelta(days=1)).isoformat(),
        "assignee": "bob",
    })
    assert r.status_code == 409
    assert r.json()["error"] == "InvalidState"


async def test_create_from_missing_bom_is_not_found(client):
    start = datetime.now(timezone.utc)
    r = await client.post("/manufacturing-orders/from-bom/777", json={
        "quantity": "1",
        "scheduled_start_date": start.isoformat(),
        "due_date": start.isoformat(),
        "assignee": "bob",
    })
    assert r.status_code == 404


async def test_create_rejects_due_before_start_and_zero_quantity(client, widget_setup):
    bom_id = widget_setup["bom"]["id"]
    start = datetime.now(timezone.utc)
    r = await client.post(f"/manufacturing-orders/from-bom/{bom_id}", json={
        "quantity": "1",
        "scheduled_start_date": start.isoformat(),
        "due_date": (start - timedelta(days=1)).isoformat(),
        "assignee": "bob",
    })
    assert r.status_code == 422
    assert r.json()["error"] == "ValidationError"

    r = await client.post(f"/manufacturing-orders/from-bom/{bom_id}", json={
        "quantity": "0",
        "scheduled_start_date": start.isoformat(),
        "due_date": start.isoformat(),
        "assignee": "bob",
    })
    assert r.status_code == 422


async def test_generate_work_orders_follows_operations(client, widget_setup, make_mo):
    mo = await make_mo(widget_setup["bom"]["id"])
    r = await client.post(f"/manufacturing-orders/{mo['id']}/generate-work-orders")
    assert r.status_code == 201, r.text
    mo = r.json()

    assert mo["status"] == "Confirmed"
    wos = mo["work_orders"]
    assert [w["operation_name"] for w in wos] == ["Cut", "Assemble"]
    assert [w["expected_duration"] for w in wos] == [30, 45]
    assert all(w["status"] == "Pending" for w in wos)
    assert all(re.fullmatch(r"WO-\d{4}-\d{3}", w["reference"]) for w in wos)

    r = await client.post(f"/manufacturing-orders/{mo['id']}/generate-work-orders")
    assert r.status_code == 409
    assert r.json()["error"] == "Conflict"


async def test_reserve_materials_moves_stock_to_reserved(client, widget_setup, make_mo):
    bolt_id = widget_setup["bolt"]["id"]
    mo = await make_mo(widget_setup["bom"]["id"], quantity=10)

    r = await client.post(f"/manufacturing-orders/{mo['id']}/reserve-materials")
    assert r.status_code == 200, r.text
    assert r.json()["materials_reserved"] is True
    assert r.json()["components"][0]["quantity_reserved"] == 50.0

    bolt = (await client.get(f"/materials/{bolt_id}")).json()
    assert bolt["on_hand"] == 100.0
    assert bolt["reserved"] == 50.0
    assert bolt["available"] == 50.0

    r = await client.post(f"/manufacturing-orders/{mo['id']}/reserve-materials")
    assert r.status_code == 409
    assert r.json()["error"] == "Conflict"


async def test_reserve_is_all_or_nothing(client, make_material, make_bom, make_mo):
    product = await make_material(name="Bike")
    frame = await make_material(name="Frame", opening_stock=100)
    wheel = await make_material(name="Wheel", opening_stock=30)
    bom = await make_bom(product["id"], [(frame["id"], 1, 50), (wheel["id"], 5, 2)])
    mo = await make_mo(bom["id"], quantity=10)

    r = await client.post(f"/manufacturing-orders/{mo['id']}/reserve-materials")
    assert r.status_code == 409
    assert r.json()["error"] == "InsufficientStock"

    for material_id, on_hand in ((frame["id"], 100.0), (wheel["id"], 30.0)):
        m = (await client.get(f"/materials/{material_id}")).json()
        assert m["on_hand"] == on_hand
        assert m["reserved"] == 0.0

    mo = (await client.get(f"/manufacturing-orders/{mo['id']}")).json()
    assert mo["materials_reserved"] is False
    r = await client.get("/stock-ledger", params={"type": "RESERVE"})
    assert r.json() == []


async def test_complete_requires_all_work_orders_completed(client, widget_setup, make_mo):
    mo = await make_mo(widget_setup["bom"]["id"])

    r = await client.post(f"/manufacturing-orders/{mo['id']}/complete")
    assert r.status_code == 409
    assert r.json()["error"] == "InvalidState"

    mo = (await client.post(f"/manufacturing-orders/{mo['id']}/generate-work-orders")).json()
    first = mo["work_orders"][0]
    await client.post(f"/work-orders/{first['id']}/start")
    await client.post(f"/work-orders/{first['id']}/complete")

    r = await client.post(f"/manufacturing-orders/{mo['id']}/complete")
    assert r.status_code == 409
    assert r.json()["error"] == "InvalidState"


async def test_complete_reserved_order_consumes_and_produces(client, widget_setup, make_mo):
    bolt_id = widget_setup["bolt"]["id"]
    product_id = widget_setup["product"]["id"]
    mo = await make_mo(widget_setup["bom"]["id"], quantity=10)
    await client.post(f"/manufacturing-orders/{mo['id']}/generate-work-orders")
    await client.post(f"/manufacturing-orders/{mo['id']}/reserve-materials")
    await _finish_all_work_orders(client, mo["id"])

    mo = (await client.get(f"/manufacturing-orders/{mo['id']}")).json()
    assert mo["status"] == "To Close"
    assert mo["progress"] == 100

    r = await client.post(f"/manufacturing-orders/{mo['id']}/complete")
    assert r.status_code == 200, r.text
    done = r.json()
    assert done["status"] == "Done"
    assert done["progress"] == 100
    assert done["quantity_produced"] == 10.0
    assert done["actual_end_date"] is not None

    bolt = (await client.get(f"/materials/{bolt_id}")).json()
    assert bolt["on_hand"] == 50.0
    assert bolt["reserved"] == 0.0

    product = (await client.get(f"/materials/{product_id}")).json()
    assert product["on_hand"] == 10.0
    assert product["average_cost"] == pytest.approx(10.0)

    entries = (await client.get(f"/stock-ledger/materials/{product_id}")).json()
    assert [e["type"] for e in entries] == ["IN"]
    assert entries[0]["quantity"] == 10.0
    assert entries[0]["reference"] == mo["reference"]

    bolt_types = sorted(e["type"] for e in (await client.get(f"/stock-ledger/materials/{bolt_id}")).json())
    assert bolt_types == ["IN", "OUT", "RELEASE", "RESERVE"]


async def test_complete_unreserved_order_checks_availability(client, make_material, make_bom, make_mo):
    product = await make_material(name="Kite")
    cloth = await make_material(name="Cloth", opening_stock=5)
    bom = await make_bom(product["id"], [(cloth["id"], 1, 1)])
    mo = await make_mo(bom["id"], quantity=10)
    await client.post(f"/manufacturing-orders/{mo['id']}/generate-work-orders")
    await _finish_all_work_orders(client, mo["id"])

    r = await client.post(f"/manufacturing-orders/{mo['id']}/complete")
    assert r.status_code == 409
    assert r.json()["error"] == "InsufficientStock"

    assert (await client.get(f"/materials/{cloth['id']}")).json()["on_hand"] == 5.0
    assert (await client.get(f"/materials/{product['id']}")).json()["on_hand"] == 0.0
    assert (await client.get(f"/manufacturing-orders/{mo['id']}")).json()["status"] == "To Close"


async def test_cancel_releases_reservations_and_cancels_work_orders(client, widget_setup, make_mo):
    bolt_id = widget_setup["bolt"]["id"]
    mo = await make_mo(widget_setup["bom"]["id"], quantity=4)
    await client.post(f"/manufacturing-orders/{mo['id']}/generate-work-orders")
    await client.post(f"/manufacturing-orders/{mo['id']}/reserve-materials")
    assert (await client.get(f"/materials/{bolt_id}")).json()["reserved"] == 20.0

    r = await client.post(f"/manufacturing-orders/{mo['id']}/status", json={"status": "Cancelled", "reason": "customer"})
    assert r.status_code == 200, r.text
    mo = r.json()
    assert mo["status"] == "Cancelled"
    assert mo["materials_reserved"] is False
    assert all(w["status"] == "Cancelled" for w in mo["work_orders"])

    bolt = (await client.get(f"/materials/{bolt_id}")).json()
    assert bolt["reserved"] == 0.0
    assert bolt["on_hand"] == 100.0

    r = await client.post(f"/manufacturing-orders/{mo['id']}/status", json={"status": "Confirmed"})
    assert r.status_code == 409


async def test_status_done_only_through_complete(client, widget_setup, make_mo):
    mo = await make_mo(widget_setup["bom"]["id"])
    r = await client.post(f"/manufacturing-orders/{mo['id']}/status", json={"status": "Done"})
    assert r.status_code == 409
    assert r.json()["error"] == "InvalidState"

    r = await client.post(f"/manufacturing-orders/{mo['id']}/status", json={"status": "In Progress"})
    assert r.status_code == 409

    r = await client.post(f"/manufacturing-orders/{mo['id']}/status", json={"status": "Confirmed"})
    assert r.status_code == 200
    r = await client.post(f"/manufacturing-orders/{mo['id']}/status", json={"status": "In Progress"})
    assert r.status_code == 200
    assert r.json()["actual_start_date"] is not None


async def test_list_and_stats(client, widget_setup, make_mo):
    bom_id = widget_setup["bom"]["id"]
    await make_mo(bom_id, quantity=2)
    late = await make_mo(
        bom_id, quantity=3, priority="Urgent",
        scheduled_start_date=(datetime.now(timezone.utc) - timedelta(days=10)).isoformat(),
        due_date=(datetime.now(timezone.utc) - timedelta(days=1)).isoformat(),
    )

    r = await client.get("/manufacturing-orders", params={"priority": "Urgent"})
    assert [m["id"] for m in r.json()] == [late["id"]]
    assert r.json()[0]["is_delayed"] is True

    r = await client.get("/manufacturing-orders", params={"search": "Widget"})
    assert len(r.json()) == 2

    stats = (await client.get("/manufacturing-orders/stats/overview")).json()
    assert stats["total"] == 2
    assert stats["overdue"] == 1
    [draft] = stats["by_status"]
    assert draft == {"status": "Draft", "count": 2, "total_quantity": 5.0}


@pytest.mark.parametrize("completed,total,expected", [
    (0, 3, 0), (1, 3, 33), (2, 3, 67), (1, 2, 50), (3, 3, 100), (1, 8, 13), (0, 0, 0),
])
def test_progress_percent_rounds_half_up(completed, total, expected):
    assert progress_percent(completed, total) == expected
