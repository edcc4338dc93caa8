import pytest
from jose import jwt

from app.core.config import JWT_ALG, JWT_SECRET
from app.db.models.freight import InboundProductLine, OutboundProductLine
from app.db.models.security_audit import AuditLog
from app.db.models.stock import PickupStock, PutAwayStock
from services.errors import InvalidTransitionError, ValidationError
from services.wms.inventory_ops.status_service import transition


@pytest.fixture
def stock(build):
    wh = build.warehouse()
    sku = build.sku()
    job = build.inbound_job(wh)
    line = build.inbound_line(job, sku)
    p1 = build.pallet(sku, wh, hu_qty=40, lpn="LPNAAAAA001", line=line)
    p2 = build.pallet(sku, wh, hu_qty=40, lpn="LPNAAAAA002", line=line)
    out_job = build.outbound_job(wh)
    out_line = build.outbound_line(out_job, sku)
    return {"wh": wh, "sku": sku, "line": line, "p1": p1, "p2": p2, "out_job": out_job, "out_line": out_line}


def _put(client, record_id, **body):
    return client.put(f"/inventory/records/{record_id}", json=body)


def _allocate(client, stock, pallet):
    return _put(client, pallet.id, allocationStatus="allocated", outboundProductLineId=stock["out_line"].id)


def _entries(db):
    db.expire_all()
    return db.query(PickupStock).all()


def test_allocate_requires_outbound_line(client, stock):
    r = _put(client, stock["p1"].id, allocationStatus="allocated")

    assert r.status_code == 400
    assert r.json()["message"] == "Outbound product line is required when changing status to allocated"


def test_allocate_sets_linkage(client, stock):
    r = _allocate(client, stock, stock["p1"])

    assert r.status_code == 200, r.text
    rec = r.json()["record"]
    assert rec["allocationStatus"] == "allocated"
    assert rec["outboundProductLineId"] == stock["out_line"].id
    assert rec["outboundInventoryId"] == stock["out_job"].id
    assert rec["allocatedBy"] == "anonymous"
    assert rec["allocatedAt"] is not None


def test_allocated_by_comes_from_the_bearer_token(client, stock):
    token = jwt.encode({"sub": "user-42", "email": "ops@acme.test"}, JWT_SECRET, algorithm=JWT_ALG)

    r = client.put(f"/inventory/records/{stock['p1'].id}",
                   json={"allocationStatus": "allocated", "outboundProductLineId": stock["out_line"].id},
                   headers={"Authorization": f"Bearer {token}"})

    assert r.json()["record"]["allocatedBy"] == "user-42"


def test_bad_token_is_treated_as_anonymous(client, stock):
    r = client.put(f"/inventory/records/{stock['p1'].id}",
                   json={"allocationStatus": "allocated", "outboundProductLineId": stock["out_line"].id},
                   headers={"Authorization": "Bearer not-a-jwt"})

    assert r.json()["record"]["allocatedBy"] == "anonymous"


def test_allocate_rejects_mismatched_outbound_job(client, build, stock):
    other_job = build.outbound_job(stock["wh"])

    r = _put(client, stock["p1"].id, allocationStatus="allocated",
             outboundProductLineId=stock["out_line"].id, outboundInventoryId=other_job.id)

    assert r.status_code == 400
    assert r.json()["message"] == "Outbound job does not match the selected product line"


def test_allocate_to_another_tenants_line_is_forbidden(client, build, stock):
    foreign_job = build.outbound_job(None, tenant_id="other")
    foreign_line = build.outbound_line(foreign_job, stock["sku"])

    r = _put(client, stock["p1"].id, allocationStatus="allocated", outboundProductLineId=foreign_line.id)

    assert r.status_code == 403


def test_pick_adds_pallet_to_pickup_ledger(client, db_session, stock):
    _allocate(client, stock, stock["p1"])
    _allocate(client, stock, stock["p2"])

    _put(client, stock["p1"].id, allocationStatus="picked")
    r = _put(client, stock["p2"].id, allocationStatus="picked")

    assert r.status_code == 200, r.text
    entries = _entries(db_session)
    assert len(entries) == 1
    assert [p["lpn_number"] for p in entries[0].picked_up_lpns] == ["LPNAAAAA001", "LPNAAAAA002"]
    assert entries[0].picked_up_qty == 80
    assert entries[0].final_picked_up_qty == 80
    assert entries[0].outbound_product_line_id == stock["out_line"].id


def test_unpick_to_available_removes_pallet_and_clears_linkage(client, db_session, stock):
    for p in (stock["p1"], stock["p2"]):
        _allocate(client, stock, p)
        _put(client, p.id, allocationStatus="picked")
    entry = _entries(db_session)[0]
    entry.buffer_qty = 5
    db_session.commit()

    r = _put(client, stock["p1"].id, allocationStatus="available")

    assert r.status_code == 200, r.text
    rec = r.json()["record"]
    assert rec["allocationStatus"] == "available"
    assert rec["outboundProductLineId"] is None
    assert rec["allocatedAt"] is None
    entry = _entries(db_session)[0]
    assert [p["lpn_number"] for p in entry.picked_up_lpns] == ["LPNAAAAA002"]
    assert entry.picked_up_qty == 40
    assert entry.final_picked_up_qty == 45


def test_unpick_to_allocated_keeps_linkage(client, db_session, stock):
    _allocate(client, stock, stock["p1"])
    _put(client, stock["p1"].id, allocationStatus="picked")

    r = _put(client, stock["p1"].id, allocationStatus="allocated")

    assert r.status_code == 200, r.text
    assert r.json()["record"]["outboundProductLineId"] == stock["out_line"].id
    assert _entries(db_session)[0].picked_up_lpns == []
    assert _entries(db_session)[0].picked_up_qty == 0


def test_round_trip_leaves_no_stale_pickup(client, db_session, stock):
    p = stock["p1"]
    _allocate(client, stock, p)
    _put(client, p.id, allocationStatus="picked")
    _put(client, p.id, allocationStatus="available")
    r = _allocate(client, stock, p)

    assert r.json()["record"]["outboundProductLineId"] == stock["out_line"].id
    for entry in _entries(db_session):
        assert all(x["lpn_id"] != p.id for x in entry.picked_up_lpns)

    _put(client, p.id, allocationStatus="picked")
    lpns = [x["lpn_id"] for e in _entries(db_session) for x in e.picked_up_lpns]
    assert lpns.count(p.id) == 1


def test_available_cannot_jump_to_picked(db_session, stock):
    with pytest.raises(InvalidTransitionError) as exc:
        transition(db_session, stock["p1"], "picked")

    assert exc.value.current == "available"
    assert exc.value.requested == "picked"
    assert exc.value.message.endswith("available LPNs can only be updated to allocated")


def test_unknown_status_is_rejected(db_session, stock):
    with pytest.raises(ValidationError) as exc:
        transition(db_session, stock["p1"], "picked_up")

    assert exc.value.message == "Invalid allocation status"


def test_pick_requires_outbound_linkage(db_session, stock):
    rec = stock["p1"]
    rec.allocation_status = "allocated"
    db_session.commit()

    with pytest.raises(ValidationError) as exc:
        transition(db_session, rec, "picked")

    assert exc.value.message == "LPN must be allocated to an outbound product line before picking"


def test_available_to_picked_over_http(client, stock):
    r = _put(client, stock["p1"].id, allocationStatus="picked")

    assert r.status_code == 400
    assert "Invalid status transition from available to picked" in r.json()["message"]


def test_same_status_is_a_no_op(db_session, stock):
    assert transition(db_session, stock["p1"], "available") is False


def test_status_change_is_audited(client, db_session, stock):
    _allocate(client, stock, stock["p1"])

    db_session.expire_all()
    rows = db_session.query(AuditLog).filter(AuditLog.entity_id == stock["p1"].id).all()
    assert [r.action for r in rows] == ["STOCK_STATUS_CHANGE"]
    assert rows[0].payload["to"] == "allocated"


def test_edit_location_and_quantity(client, stock):
    r = _put(client, stock["p1"].id, location="Z-99", huQty=35)

    assert r.status_code == 200
    assert r.json()["record"]["location"] == "Z-99"
    assert r.json()["record"]["huQty"] == 35


def test_empty_update_is_rejected(client, stock):
    r = _put(client, stock["p1"].id)

    assert r.status_code == 400
    assert r.json()["message"] == "No valid fields to update"


def test_batch_change_splits_the_pallet_onto_its_own_line(client, db_session, stock):
    r = _put(client, stock["p1"].id, batchNumber="B2")

    assert r.status_code == 200, r.text
    db_session.expire_all()
    p1 = db_session.query(PutAwayStock).filter_by(id=stock["p1"].id).one()
    p2 = db_session.query(PutAwayStock).filter_by(id=stock["p2"].id).one()
    new_line = db_session.query(InboundProductLine).filter_by(id=p1.inbound_product_line_id).one()
    assert new_line.id != stock["line"].id
    assert new_line.batch_number == "B2"
    assert new_line.split_from_id == stock["line"].id
    assert p2.inbound_product_line_id == stock["line"].id

    r = client.get(f"/inventory/records/{p1.id}")
    assert r.json()["record"]["batchNumber"] == "B2"


def test_split_pallet_still_counts_towards_original_line(client, db_session, stock):
    _put(client, stock["p1"].id, batchNumber="B2")
    line = stock["line"]

    # received 100 at 40 per pallet: 3 pallets, 2 already exist
    r = client.post("/put-away-stock", json={
        "jobId": line.inbound_inventory_id,
        "warehouseId": stock["wh"].id,
        "bulkLocations": [{"productLineId": line.id, "location": "A-09"}],
    })

    assert r.json()["count"] == 1


def test_delete_is_soft(client, db_session, stock):
    r = client.delete(f"/inventory/records/{stock['p1'].id}")

    assert r.status_code == 200
    assert r.json()["message"] == "Record deleted successfully"
    assert client.get(f"/inventory/records/{stock['p1'].id}").status_code == 404
    db_session.expire_all()
    assert db_session.query(PutAwayStock).filter_by(id=stock["p1"].id).one().lifecycle == "deleted"


def test_records_of_other_tenants_are_not_found(client, build, stock):
    foreign = build.pallet(stock["sku"], stock["wh"], hu_qty=10, lpn="LPNFOREIGN1", tenant_id="other")

    assert client.get(f"/inventory/records/{foreign.id}").status_code == 404
    assert _put(client, foreign.id, location="X").status_code == 404
    assert client.delete(f"/inventory/records/{foreign.id}").status_code == 404


def _out_line(db, stock):
    db.expire_all()
    return db.query(OutboundProductLine).filter_by(id=stock["out_line"].id).one()


def test_linking_a_pallet_counts_towards_the_line(client, db_session, stock):
    _allocate(client, stock, stock["p1"])

    line = _out_line(db_session, stock)
    assert line.allocated_qty == 40
    assert line.allocated_weight == 400
    assert line.plt_qty == 1
    assert line.lpns == ["LPNAAAAA001"]
    assert line.location == "A-01"


def test_unpicking_to_available_takes_the_pallet_off_the_line(client, db_session, stock):
    _allocate(client, stock, stock["p1"])
    _allocate(client, stock, stock["p2"])
    _put(client, stock["p1"].id, allocationStatus="picked")

    r = _put(client, stock["p1"].id, allocationStatus="available")

    assert r.status_code == 200, r.text
    line = _out_line(db_session, stock)
    assert line.allocated_qty == 40
    assert line.allocated_weight == 400
    assert line.plt_qty == 1
    assert line.lpns == ["LPNAAAAA002"]


def test_linking_past_expected_quantity_is_rejected(client, build, stock):
    extra = build.pallet(stock["sku"], stock["wh"], hu_qty=40, lpn="LPNAAAAA003", line=stock["line"])
    for p in (stock["p1"], stock["p2"]):
        _allocate(client, stock, p)

    r = _allocate(client, stock, extra)

    assert r.status_code == 400
    assert r.json()["message"].startswith("Allocation would exceed expected quantity: selected 40")
