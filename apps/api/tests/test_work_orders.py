from datetime import datetime, timedelta, timezone

import pytest


@pytest.fixture
async def confirmed_mo(client, widget_setup, make_mo):
    mo = await make_mo(widget_setup["bom"]["id"], quantity=2)
    r = await client.post(f"/manufacturing-orders/{mo['id']}/generate-work-orders")
    assert r.status_code == 201, r.text
    return r.json()


async def test_start_first_work_order_moves_mo_in_progress(client, confirmed_mo):
    first, _ = confirmed_mo["work_orders"]
    r = await client.post(f"/work-orders/{first['id']}/start")
    assert r.status_code == 200, r.text
    wo = r.json()
    assert wo["status"] == "In Progress"
    assert wo["started_at"] is not None
    assert wo["manufacturing_order_reference"] == confirmed_mo["reference"]

    mo = (await client.get(f"/manufacturing-orders/{confirmed_mo['id']}")).json()
    assert mo["status"] == "In Progress"
    assert mo["actual_start_date"] is not None


async def test_later_work_order_waits_for_earlier_ones(client, confirmed_mo):
    first, second = confirmed_mo["work_orders"]
    r = await client.post(f"/work-orders/{second['id']}/start")
    assert r.status_code == 409
    assert r.json()["error"] == "InvalidState"

    await client.post(f"/work-orders/{first['id']}/start")
    await client.post(f"/work-orders/{first['id']}/complete")
    r = await client.post(f"/work-orders/{second['id']}/start")
    assert r.status_code == 200


async def test_cannot_start_work_order_of_cancelled_mo(client, widget_setup, make_mo):
    mo = await make_mo(widget_setup["bom"]["id"])
    mo = (await client.post(f"/manufacturing-orders/{mo['id']}/generate-work-orders")).json()
    await client.post(f"/manufacturing-orders/{mo['id']}/status", json={"status": "Cancelled"})

    r = await client.post(f"/work-orders/{mo['work_orders'][0]['id']}/start")
    assert r.status_code == 409


async def test_pause_resume_accumulates_minutes(client, confirmed_mo):
    first, _ = confirmed_mo["work_orders"]
    t0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

    await client.post(f"/work-orders/{first['id']}/start", json={"performed_at": t0.isoformat()})
    r = await client.post(f"/work-orders/{first['id']}/pause", json={"performed_at": (t0 + timedelta(minutes=20)).isoformat()})
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "Paused"
    assert r.json()["worked_minutes"] == 20.0

    r = await client.post(f"/work-orders/{first['id']}/pause")
    assert r.status_code == 409

    r = await client.post(f"/work-orders/{first['id']}/start", json={"performed_at": (t0 + timedelta(minutes=30)).isoformat()})
    assert r.status_code == 200
    assert r.json()["paused_minutes"] == 10.0

    r = await client.post(f"/work-orders/{first['id']}/complete", json={"performed_at": (t0 + timedelta(minutes=45)).isoformat()})
    assert r.status_code == 200
    wo = r.json()
    assert wo["status"] == "Completed"
    assert wo["worked_minutes"] == 35.0
    assert wo["real_duration"] == 35.0
    assert wo["efficiency"] == pytest.approx(30 / 35 * 100, abs=0.01)
    assert wo["ended_at"] is not None


async def test_complete_requires_running_work_order(client, confirmed_mo):
    first, _ = confirmed_mo["work_orders"]
    r = await client.post(f"/work-orders/{first['id']}/complete")
    assert r.status_code == 409
    assert r.json()["error"] == "InvalidState"


async def test_progress_after_one_of_two_completed(client, confirmed_mo):
    first, _ = confirmed_mo["work_orders"]
    await client.post(f"/work-orders/{first['id']}/start")
    r = await client.post(f"/work-orders/{first['id']}/complete", json={"real_duration": "25"})
    assert r.status_code == 200
    assert r.json()["real_duration"] == 25.0

    mo = (await client.get(f"/manufacturing-orders/{confirmed_mo['id']}")).json()
    assert mo["progress"] == 50
    assert mo["status"] == "In Progress"


async def test_quality_check_required_on_completion(client, make_material, make_bom, make_mo):
    product = await make_material(name="Valve")
    body = await make_material(name="Body", opening_stock=10)
    bom = await make_bom(
        product["id"], [(body["id"], 1, 4)],
        operations=[("Machine", 15, {}), ("Inspect", 10, {"quality_check_required": True})],
    )
    mo = await make_mo(bom["id"], quantity=1)
    mo = (await client.post(f"/manufacturing-orders/{mo['id']}/generate-work-orders")).json()
    first, inspect = mo["work_orders"]

    await client.post(f"/work-orders/{first['id']}/start")
    await client.post(f"/work-orders/{first['id']}/complete")
    await client.post(f"/work-orders/{inspect['id']}/start")

    r = await client.post(f"/work-orders/{inspect['id']}/complete")
    assert r.status_code == 422
    assert r.json()["error"] == "ValidationError"

    r = await client.post(f"/work-orders/{inspect['id']}/complete", json={
        "quality_check": {"passed": False, "notes": "burr on flange", "checked_by": "qc1"},
    })
    assert r.status_code == 200, r.text
    wo = r.json()
    assert wo["quality_passed"] is False
    assert wo["quality_notes"] == "burr on flange"
    assert wo["quality_checked_at"] is not None


async def test_cancel_work_order_blocks_mo_completion(client, confirmed_mo):
    first, second = confirmed_mo["work_orders"]
    await client.post(f"/work-orders/{first['id']}/start")
    await client.post(f"/work-orders/{first['id']}/complete")

    r = await client.post(f"/work-orders/{second['id']}/cancel", json={"reason": "machine broken"})
    assert r.status_code == 200
    assert r.json()["status"] == "Cancelled"
    assert r.json()["cancellation_reason"] == "machine broken"

    r = await client.post(f"/work-orders/{second['id']}/cancel", json={"reason": "again"})
    assert r.status_code == 409

    r = await client.post(f"/manufacturing-orders/{confirmed_mo['id']}/complete")
    assert r.status_code == 409


async def test_comments(client, confirmed_mo):
    first, _ = confirmed_mo["work_orders"]
    r = await client.post(f"/work-orders/{first['id']}/comments", json={"text": "tool changed", "author": "op7"})
    assert r.status_code == 201
    await client.post(f"/work-orders/{first['id']}/comments", json={"text": "resumed", "author": "op7"})

    r = await client.get(f"/work-orders/{first['id']}/comments")
    assert [c["text"] for c in r.json()] == ["tool changed", "resumed"]

    r = await client.post("/work-orders/999/comments", json={"text": "x", "author": "y"})
    assert r.status_code == 404


async def test_list_work_orders_filters(client, confirmed_mo):
    first, second = confirmed_mo["work_orders"]
    await client.post(f"/work-orders/{first['id']}/start")

    r = await client.get("/work-orders", params={"status": "In Progress"})
    assert [w["id"] for w in r.json()] == [first["id"]]

    r = await client.get("/work-orders", params={"mo_id": confirmed_mo["id"]})
    assert [w["id"] for w in r.json()] == [first["id"], second["id"]]

    r = await client.get("/work-orders", params={"work_center_id": second["work_center_id"]})
    assert [w["id"] for w in r.json()] == [second["id"]]
