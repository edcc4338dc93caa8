import pytest
from sqlalchemy import text

from app.db.models.containers import ContainerStockAllocation
from app.db.models.freight import OutboundProductLine
from app.db.models.stock import PutAwayStock
from app.events.outbox import OutboxEvent
from services.errors import ValidationError
from services.wms.inventory_ops.allocation_service import (
    DemandLine,
    OutboundLineTarget,
    PoolScope,
    allocate_line,
    allocate_outbound,
)


@pytest.fixture
def pool(build):
    """Three pallets of batch B1 (40/40/20) in one warehouse, received oldest first."""
    wh = build.warehouse()
    sku = build.sku()
    job = build.inbound_job(wh)
    line = build.inbound_line(job, sku)
    pallets = [
        build.pallet(sku, wh, hu_qty=40, lpn="LPNPOOL0001", line=line, location="A-01", minutes=1),
        build.pallet(sku, wh, hu_qty=40, lpn="LPNPOOL0002", line=line, location="A-02", minutes=2),
        build.pallet(sku, wh, hu_qty=20, lpn="LPNPOOL0003", line=line, location="A-03", minutes=3),
    ]
    return {"wh": wh, "sku": sku, "line": line, "pallets": pallets}


@pytest.fixture
def export(build, pool):
    booking, container = build.export_container(pool["wh"])
    alloc = build.stock_allocation(booking, container, [
        {"sku_id": pool["sku"].id, "batch_number": "B1", "expected_qty": 100, "allocated_qty": 0, "lpns": []},
        {"sku_id": pool["sku"].id, "batch_number": "B1", "expected_qty": 40, "allocated_qty": 0, "lpns": []},
    ])
    return {"booking": booking, "container": container, "alloc": alloc}


def _allocate(client, export, *items):
    url = f"/export-container-bookings/{export['booking'].id}/stock-allocations/{export['alloc'].id}/allocate"
    return client.post(url, json={"allocations": list(items)})


def _line(db, export, index=0):
    db.expire_all()
    return db.query(ContainerStockAllocation).filter_by(id=export["alloc"].id).one().product_lines[index]


def _status(db, lpn):
    db.expire_all()
    return db.query(PutAwayStock).filter_by(lpn_number=lpn).one()


def test_quantity_mode_takes_whole_pallets_oldest_first(client, db_session, export):
    r = _allocate(client, export, {"productLineIndex": 0, "batchNumber": "B1", "quantity": 50})

    assert r.status_code == 200, r.text
    body = r.json()
    assert "errors" not in body
    assert body["allocations"][0]["allocatedQty"] == 80
    assert body["allocations"][0]["allocatedLPNs"] == ["LPNPOOL0001", "LPNPOOL0002"]
    assert body["allocations"][0]["location"] == "A-01"

    line = _line(db_session, export)
    assert line["allocated_qty"] == 80
    assert line["allocated_weight"] == 800
    assert line["plt_qty"] == 2.0
    assert line["allocated_cubic_per_hu"] == 1.0
    assert line["lpns"] == ["LPNPOOL0001", "LPNPOOL0002"]
    assert line["location"] == "A-01"

    rec = _status(db_session, "LPNPOOL0001")
    assert rec.allocation_status == "allocated"
    assert rec.container_stock_allocation_id == export["alloc"].id
    assert rec.container_detail_id == export["container"].id
    assert rec.allocated_by == "anonymous"
    assert db_session.query(OutboxEvent).filter(OutboxEvent.topic == "StockAllocated").count() == 1


def test_quantity_mode_is_capped_at_remaining_demand(client, db_session, export):
    _allocate(client, export, {"productLineIndex": 0, "batchNumber": "B1", "quantity": 50})
    r = _allocate(client, export, {"productLineIndex": 0, "batchNumber": "B1", "quantity": 50})

    assert r.json()["allocations"][0]["allocatedLPNs"] == ["LPNPOOL0003"]
    line = _line(db_session, export)
    assert line["allocated_qty"] == 100
    assert line["lpns"] == ["LPNPOOL0001", "LPNPOOL0002", "LPNPOOL0003"]
    # cumulative metrics, cubic stays per unit
    assert line["allocated_weight"] == 1000
    assert line["plt_qty"] == 2.5
    assert line["allocated_cubic_per_hu"] == 1.0
    assert line["location"] == "A-01"


def test_fully_allocated_line_is_reported(client, db_session, export):
    _allocate(client, export, {"productLineIndex": 0, "batchNumber": "B1", "quantity": 100})

    r = _allocate(client, export, {"productLineIndex": 0, "batchNumber": "B1", "quantity": 10})

    assert r.status_code == 200
    assert r.json()["allocations"] == []
    assert r.json()["errors"] == [
        {"productLineIndex": 0, "error": "Product line is already fully allocated (100/100)"},
    ]


def test_stage_moves_to_allocated_once_every_line_is_covered(client, db_session, build, pool, export):
    build.pallet(pool["sku"], pool["wh"], hu_qty=40, lpn="LPNPOOL0004", line=pool["line"], minutes=4)

    _allocate(client, export, {"productLineIndex": 0, "batchNumber": "B1", "quantity": 100})
    db_session.expire_all()
    assert db_session.query(ContainerStockAllocation).filter_by(id=export["alloc"].id).one().stage == "expected"

    _allocate(client, export, {"productLineIndex": 1, "batchNumber": "B1", "quantity": 40})

    db_session.expire_all()
    assert db_session.query(ContainerStockAllocation).filter_by(id=export["alloc"].id).one().stage == "allocated"


def test_insufficient_stock_allocates_nothing(client, db_session, build, pool):
    booking, container = build.export_container(pool["wh"])
    alloc = build.stock_allocation(booking, container, [
        {"sku_id": pool["sku"].id, "batch_number": "B1", "expected_qty": 200, "allocated_qty": 0, "lpns": []},
    ])
    export = {"booking": booking, "container": container, "alloc": alloc}

    r = _allocate(client, export, {"productLineIndex": 0, "batchNumber": "B1", "quantity": 150})

    assert r.json()["errors"][0]["error"] == (
        "Insufficient stock. Available: 100, Still needed: 150 (already allocated: 0/200)"
    )
    assert _line(db_session, export)["allocated_qty"] == 0
    assert {_status(db_session, p.lpn_number).allocation_status for p in pool["pallets"]} == {"available"}


def test_fifo_follows_receipt_time_not_insert_order(client, db_session, build, pool):
    late = pool["pallets"][0]
    late.created_at = late.created_at.replace(hour=23)
    db_session.commit()
    booking, container = build.export_container(pool["wh"])
    alloc = build.stock_allocation(booking, container, [
        {"sku_id": pool["sku"].id, "batch_number": "B1", "expected_qty": 40, "allocated_qty": 0, "lpns": []},
    ])

    r = _allocate(client, {"booking": booking, "alloc": alloc},
                  {"productLineIndex": 0, "batchNumber": "B1", "quantity": 40})

    assert r.json()["allocations"][0]["allocatedLPNs"] == ["LPNPOOL0002"]


def test_explicit_lpns(client, db_session, export):
    r = _allocate(client, export, {"productLineIndex": 1, "batchNumber": "B1", "lpnIds": ["LPNPOOL0002"]})

    assert r.json()["allocations"][0]["allocatedQty"] == 40
    assert _line(db_session, export, 1)["lpns"] == ["LPNPOOL0002"]


def test_reselecting_own_lpns_is_a_no_op(client, db_session, export):
    _allocate(client, export, {"productLineIndex": 0, "batchNumber": "B1", "lpnIds": ["LPNPOOL0001"]})

    r = _allocate(client, export, {"productLineIndex": 0, "batchNumber": "B1", "lpnIds": ["LPNPOOL0001"]})

    assert "errors" not in r.json()
    assert r.json()["allocations"][0]["allocatedQty"] == 0
    line = _line(db_session, export)
    assert line["allocated_qty"] == 40
    assert line["lpns"] == ["LPNPOOL0001"]


def test_unknown_lpns_are_listed(client, export):
    r = _allocate(client, export, {"productLineIndex": 0, "batchNumber": "B1", "lpnIds": ["LPNPOOL0001", "LPNNOPE"]})

    assert r.json()["errors"][0]["error"] == "LPNs not found: LPNNOPE"


def test_lpns_held_by_another_line_are_rejected(client, db_session, build, export, pool):
    out_job = build.outbound_job(pool["wh"])
    out_line = build.outbound_line(out_job, pool["sku"])
    held = pool["pallets"][0]
    held.allocation_status = "allocated"
    held.outbound_inventory_id = out_job.id
    held.outbound_product_line_id = out_line.id
    db_session.commit()

    r = _allocate(client, export, {"productLineIndex": 0, "batchNumber": "B1", "lpnIds": ["LPNPOOL0001"]})

    assert r.json()["errors"][0]["error"] == "Some LPNs are already allocated elsewhere: LPNPOOL0001"
    assert _line(db_session, export)["allocated_qty"] == 0


def test_explicit_selection_over_expected_is_rejected(client, db_session, export):
    r = _allocate(client, export, {"productLineIndex": 1, "batchNumber": "B1",
                                   "lpnIds": ["LPNPOOL0001", "LPNPOOL0003"]})

    assert r.json()["errors"][0]["error"].startswith("Allocation would exceed expected quantity: selected 60")
    assert _status(db_session, "LPNPOOL0001").allocation_status == "available"


def test_items_are_independent(client, db_session, export):
    r = _allocate(
        client,
        export,
        {"productLineIndex": 9, "batchNumber": "B1", "quantity": 10},
        {"productLineIndex": 1, "quantity": 10},
        {"productLineIndex": 1, "batchNumber": "B1", "quantity": 40},
    )

    body = r.json()
    assert r.status_code == 200
    assert len(body["allocations"]) == 1
    assert body["errors"] == [
        {"productLineIndex": 9, "error": "Invalid product line index"},
        {"productLineIndex": 1, "error": "productLineIndex and batchNumber are required"},
    ]
    assert _line(db_session, export, 1)["allocated_qty"] == 40


def test_neither_lpns_nor_quantity(client, export):
    r = _allocate(client, export, {"productLineIndex": 0, "batchNumber": "B1"})

    assert r.json()["errors"][0]["error"] == "Either lpnIds or quantity must be provided"


def test_empty_request_is_rejected(client, export):
    r = _allocate(client, export)

    assert r.status_code == 400
    assert r.json()["message"] == "Allocations array is required"


def test_booking_of_another_tenant_is_forbidden(client, build, pool):
    booking, container = build.export_container(pool["wh"], tenant_id="other")
    alloc = build.stock_allocation(booking, container, [
        {"sku_id": pool["sku"].id, "batch_number": "B1", "expected_qty": 10},
    ])

    r = _allocate(client, {"booking": booking, "alloc": alloc},
                  {"productLineIndex": 0, "batchNumber": "B1", "quantity": 10})

    assert r.status_code == 403


def test_allocation_of_another_booking_is_rejected(client, build, export, pool):
    other_booking, _ = build.export_container(pool["wh"])

    r = _allocate(client, {"booking": other_booking, "alloc": export["alloc"]},
                  {"productLineIndex": 0, "batchNumber": "B1", "quantity": 10})

    assert r.status_code == 400
    assert r.json()["message"] == "Stock allocation does not belong to this booking"


def test_available_stock_lists_the_pool_oldest_first(client, export):
    url = f"/export-container-bookings/{export['booking'].id}/stock-allocations/{export['alloc'].id}/available-stock"

    r = client.get(url, params={"productLineIndex": 0})

    body = r.json()
    assert r.status_code == 200, r.text
    assert body["batchNumber"] == "B1"
    assert body["totalAvailableQty"] == 100
    assert [x["lpnNumber"] for x in body["lpns"]] == ["LPNPOOL0001", "LPNPOOL0002", "LPNPOOL0003"]


def test_outbound_job_allocation(client, db_session, build, pool):
    out_job = build.outbound_job(pool["wh"])
    out_line = build.outbound_line(out_job, pool["sku"], expected=40)

    r = client.post(f"/outbound-inventory/{out_job.id}/allocate", json={
        "allocations": [{"productLineId": out_line.id, "batchNumber": "B1", "quantity": 40}],
    })

    assert r.status_code == 200, r.text
    assert r.json()["allocations"][0]["productLineId"] == out_line.id
    db_session.expire_all()
    line = db_session.query(OutboundProductLine).filter_by(id=out_line.id).one()
    assert line.allocated_qty == 40
    assert line.lpns == ["LPNPOOL0001"]
    rec = _status(db_session, "LPNPOOL0001")
    assert rec.outbound_product_line_id == out_line.id
    assert rec.outbound_inventory_id == out_job.id


def test_outbound_line_of_another_job(client, build, pool):
    out_job = build.outbound_job(pool["wh"])
    other_line = build.outbound_line(build.outbound_job(pool["wh"]), pool["sku"])

    r = client.post(f"/outbound-inventory/{out_job.id}/allocate", json={
        "allocations": [{"productLineId": other_line.id, "batchNumber": "B1", "quantity": 10}],
    })

    assert r.json()["errors"][0]["error"] == "Product line does not belong to this job"


def test_batch_without_stock(db_session, build, pool):
    out_job = build.outbound_job(pool["wh"])
    out_line = build.outbound_line(out_job, pool["sku"], batch="ZZ")

    with pytest.raises(ValidationError) as exc:
        allocate_line(db_session, OutboundLineTarget(out_line, out_job), batch_number="ZZ",
                      scope=PoolScope(warehouse_id=pool["wh"].id, container_id=None), quantity=10)

    assert exc.value.message == f"No stock found for batch ZZ and SKU {pool['sku'].id}"


def test_concurrent_update_becomes_a_per_item_conflict(db_session, build, pool):
    out_job = build.outbound_job(pool["wh"])
    out_line = build.outbound_line(out_job, pool["sku"], expected=40)
    assert out_line.version_id == 1
    # Another writer bumps the row behind this session's back
    db_session.execute(
        text("UPDATE freight_outbound_product_line SET version_id = version_id + 1 WHERE id = :id"),
        {"id": out_line.id},
    )

    out = allocate_outbound(db_session, job_id=out_job.id, items=[
        {"product_line_id": out_line.id, "batch_number": "B1", "quantity": 40},
    ])

    assert out["allocations"] == []
    assert out["errors"] == [
        {"productLineId": out_line.id, "error": "Product line was changed by another request, retry the allocation"},
    ]
    assert _status(db_session, "LPNPOOL0001").allocation_status == "available"


def test_released_pallet_can_be_allocated_again(client, db_session, build, pool):
    out_job = build.outbound_job(pool["wh"])
    out_line = build.outbound_line(out_job, pool["sku"], expected=40)
    url = f"/outbound-inventory/{out_job.id}/allocate"
    item = {"productLineId": out_line.id, "batchNumber": "B1", "quantity": 40}
    client.post(url, json={"allocations": [item]})
    pallet = _status(db_session, "LPNPOOL0001")

    r = client.put(f"/inventory/records/{pallet.id}", json={"allocationStatus": "available"})

    assert r.status_code == 200, r.text
    db_session.expire_all()
    line = db_session.query(OutboundProductLine).filter_by(id=out_line.id).one()
    assert line.allocated_qty == 0
    assert line.allocated_weight == 0
    assert line.plt_qty == 0
    assert line.lpns == []
    assert line.location is None

    again = client.post(url, json={"allocations": [item]}).json()
    assert "errors" not in again
    assert again["allocations"][0]["allocatedLPNs"] == ["LPNPOOL0001"]


def test_releasing_a_container_pallet_updates_its_line(client, db_session, export):
    _allocate(client, export, {"productLineIndex": 1, "batchNumber": "B1", "lpnIds": ["LPNPOOL0001"]})
    pallet = _status(db_session, "LPNPOOL0001")

    r = client.put(f"/inventory/records/{pallet.id}", json={"allocationStatus": "available"})

    assert r.status_code == 200, r.text
    line = _line(db_session, export, 1)
    assert line["allocated_qty"] == 0
    assert line["lpns"] == []
    assert _status(db_session, "LPNPOOL0001").container_stock_allocation_id is None


def test_outbound_available_stock_lists_each_line(client, build, pool):
    out_job = build.outbound_job(pool["wh"])
    out_line = build.outbound_line(out_job, pool["sku"], expected=60)
    other_line = build.outbound_line(out_job, pool["sku"], batch="ZZ", expected=10)

    r = client.get(f"/outbound-inventory/{out_job.id}/available-stock")

    assert r.status_code == 200, r.text
    by_line = {a["productLineId"]: a for a in r.json()["availability"]}
    first, second = by_line[out_line.id], by_line[other_line.id]
    assert first["requiredQty"] == 60
    assert first["availableQty"] == 100
    assert [x["lpnNumber"] for x in first["availableLPNs"]] == ["LPNPOOL0001", "LPNPOOL0002", "LPNPOOL0003"]
    assert second["availableQty"] == 0
    assert second["availableLPNs"] == []


def test_outbound_available_stock_of_another_tenant(client, build, pool):
    foreign = build.outbound_job(None, tenant_id="other")

    assert client.get(f"/outbound-inventory/{foreign.id}/available-stock").status_code == 404


def test_demand_line_needs_every_hook():
    class Partial(DemandLine):
        def linkage(self) -> dict:
            return {}

    with pytest.raises(TypeError):
        Partial()
