import re

import pytest

from mfg_erp_core import config


async def test_create_bom_computes_cost_and_cycle_time(client, make_material, make_work_center):
    product = await make_material(name="Table", category="Finished Good")
    leg = await make_material(name="Leg", opening_stock=40, average_cost=3)
    top = await make_material(name="Top", opening_stock=10, average_cost=25)
    wc = await make_work_center()

    r = await client.post("/boms", json={
        "finished_product_id": product["id"],
        "components": [
            {"material_id": leg["id"], "quantity": "4", "unit_cost": "3.50"},
            {"material_id": top["id"], "quantity": "1"},
        ],
        "operations": [
            {"sequence": 1, "name": "Drill", "work_center_id": wc["id"], "duration": 20, "setup_time": 5},
            {"sequence": 2, "name": "Assemble", "work_center_id": wc["id"], "duration": 30, "teardown_time": 10},
        ],
    })
    assert r.status_code == 201, r.text
    bom = r.json()

    assert re.fullmatch(r"BOM-\d{4}-0001", bom["reference"])
    assert bom["status"] == "Draft"
    # top has no explicit unit_cost and falls back to the material's average cost
    assert bom["components"][1]["unit_cost"] == 25.0
    assert bom["estimated_cost"] == pytest.approx(4 * 3.5 + 25)
    assert bom["estimated_cost"] == pytest.approx(sum(c["line_cost"] for c in bom["components"]))
    assert bom["estimated_cycle_time"] == 20 + 5 + 30 + 10
    assert [op["sequence"] for op in bom["operations"]] == [1, 2]


async def test_create_bom_rejects_non_increasing_sequences(client, make_material, make_work_center):
    product = await make_material(name="Chair")
    part = await make_material(name="Seat")
    wc = await make_work_center()

    r = await client.post("/boms", json={
        "finished_product_id": product["id"],
        "components": [{"material_id": part["id"], "quantity": "1"}],
        "operations": [
            {"sequence": 2, "name": "A", "work_center_id": wc["id"], "duration": 10},
            {"sequence": 2, "name": "B", "work_center_id": wc["id"], "duration": 10},
        ],
    })
    assert r.status_code == 422
    assert r.json()["error"] == "ValidationError"


async def test_create_bom_rejects_zero_quantity_and_empty_lists(client, make_material, make_work_center):
    product = await make_material(name="Lamp")
    part = await make_material(name="Bulb")
    wc = await make_work_center()
    op = {"sequence": 1, "name": "Fit", "work_center_id": wc["id"], "duration": 5}

    r = await client.post("/boms", json={
        "finished_product_id": product["id"],
        "components": [{"material_id": part["id"], "quantity": "0"}],
        "operations": [op],
    })
    assert r.status_code == 422
    assert r.json()["error"] == "ValidationError"

    r = await client.post("/boms", json={
        "finished_product_id": product["id"],
        "components": [],
        "operations": [op],
    })
    assert r.status_code == 422


async def test_create_bom_rejects_self_component(client, make_material, make_work_center):
    product = await make_material(name="Frame")
    wc = await make_work_center()
    r = await client.post("/boms", json={
        "finished_product_id": product["id"],
        "components": [{"material_id": product["id"], "quantity": "1"}],
        "operations": [{"sequence": 1, "name": "Weld", "work_center_id": wc["id"], "duration": 5}],
    })
    assert r.status_code == 422


async def test_create_bom_unknown_material_is_not_found(client, make_material, make_work_center):
    product = await make_material(name="Box")
    wc = await make_work_center()
    r = await client.post("/boms", json={
        "finished_product_id": product["id"],
        "components": [{"material_id": 9999, "quantity": "1"}],
        "operations": [{"sequence": 1, "name": "Fold", "work_center_id": wc["id"], "duration": 5}],
    })
    assert r.status_code == 404
    assert r.json()["error"] == "NotFound"


async def test_approve_and_obsolete_lifecycle(client, make_material, make_bom):
    product = await make_material(name="Shelf")
    board = await make_material(name="Board")
    bom = await make_bom(product["id"], [(board["id"], 3, 1)], approve=False)

    r = await client.post(f"/boms/{bom['id']}/obsolete")
    assert r.status_code == 409
    assert r.json()["error"] == "InvalidState"

    r = await client.post(f"/boms/{bom['id']}/approve", json={"approved_by": "qa"})
    assert r.status_code == 200
    assert r.json()["status"] == "Active"
    assert r.json()["approved_by"] == "qa"

    r = await client.post(f"/boms/{bom['id']}/approve")
    assert r.status_code == 409
    assert r.json()["error"] == "InvalidState"

    r = await client.post(f"/boms/{bom['id']}/obsolete")
    assert r.status_code == 200
    assert r.json()["status"] == "Obsolete"


async def test_approve_missing_bom_is_not_found(client):
    r = await client.post("/boms/4242/approve")
    assert r.status_code == 404


async def test_second_active_bom_for_product_conflicts(client, make_material, make_bom):
    assert config.SINGLE_ACTIVE_BOM
    product = await make_material(name="Desk")
    board = await make_material(name="Plank")
    await make_bom(product["id"], [(board["id"], 2, 1)])
    second = await make_bom(product["id"], [(board["id"], 3, 1)], approve=False)

    r = await client.post(f"/boms/{second['id']}/approve")
    assert r.status_code == 409
    assert r.json()["error"] == "Conflict"


async def test_second_bom_allowed_when_policy_off(client, make_material, make_bom, monkeypatch):
    monkeypatch.setattr(config, "SINGLE_ACTIVE_BOM", False)
    product = await make_material(name="Bench")
    board = await make_material(name="Slat")
    await make_bom(product["id"], [(board["id"], 2, 1)])
    second = await make_bom(product["id"], [(board["id"], 3, 1)])
    assert second["status"] == "Active"


async def test_list_boms_filters_by_status(client, make_material, make_bom):
    product = await make_material(name="Stool")
    part = await make_material(name="Peg")
    draft = await make_bom(product["id"], [(part["id"], 1, 1)], approve=False)
    other = await make_material(name="Cabinet")
    active = await make_bom(other["id"], [(part["id"], 1, 1)])

    r = await client.get("/boms", params={"status": "Draft"})
    assert [b["id"] for b in r.json()] == [draft["id"]]

    r = await client.get("/boms", params={"status": "Active"})
    assert [b["id"] for b in r.json()] == [active["id"]]
    assert r.json()[0]["finished_product_name"] == "Cabinet"
