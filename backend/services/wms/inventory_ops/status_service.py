"""
Allocation status state machine for unit-load (pallet) records.

    available -> allocated          link to an outbound product line and add to its metrics
    allocated -> picked             add the pallet to the pickup ledger
    allocated -> available          take the pallet back off its demand line
    picked    -> available          release from the pickup ledger and the demand line
    picked    -> allocated          release from the pickup ledger, keep the linkage

Any other pair is rejected. Requesting the current status is a no-op.
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.tenant import get_tenant_id
from app.db.models.freight import InboundProductLine, OutboundInventory, OutboundProductLine
from app.db.models.stock import AllocationStatus, PutAwayStock
from app.events.bus import publish, ALLOCATION_STATUS_CHANGED, PUT_AWAY_RECORD_DELETED
from services.errors import ForbiddenError, InvalidTransitionError, NotFoundError, ValidationError
from services.wms.inventory_ops.allocation_service import OutboundLineTarget, assign_to_demand, release_from_demand
from services.wms.inventory_ops.pickup_ledger import record_pick, release_pick
from services.wms.inventory_ops.putaway_service import record_dict
from services.wms.inventory_ops.unit_loads import dec

logger = logging.getLogger(__name__)

AVAILABLE = AllocationStatus.AVAILABLE.value
ALLOCATED = AllocationStatus.ALLOCATED.value
PICKED = AllocationStatus.PICKED.value

ALLOWED_TRANSITIONS: dict[str, tuple[str, ...]] = {
    AVAILABLE: (ALLOCATED,),
    ALLOCATED: (PICKED, AVAILABLE),
    PICKED: (AVAILABLE, ALLOCATED),
}


def get_record(db: Session, record_id: str) -> PutAwayStock:
    rec = db.query(PutAwayStock).filter(PutAwayStock.id == record_id).first()
    # Other tenants' and deleted records look exactly like missing ones
    if not rec or rec.tenant_id != get_tenant_id() or rec.is_deleted:
        raise NotFoundError("Record not found")
    return rec


def _link_outbound_line(
    db: Session,
    record: PutAwayStock,
    outbound_product_line_id: str | None,
    outbound_inventory_id: str | None,
    actor: str,
) -> None:
    if not outbound_product_line_id:
        raise ValidationError("Outbound product line is required when changing status to allocated")
    line = db.query(OutboundProductLine).filter(OutboundProductLine.id == outbound_product_line_id).first()
    if not line:
        raise NotFoundError("Outbound product line not found")
    if outbound_inventory_id and line.outbound_inventory_id != outbound_inventory_id:
        raise ValidationError("Outbound job does not match the selected product line")
    job = db.query(OutboundInventory).filter(OutboundInventory.id == line.outbound_inventory_id).first()
    if not job or job.tenant_id != get_tenant_id():
        raise ForbiddenError("Outbound product line does not belong to this tenant")

    assign_to_demand(db, OutboundLineTarget(line, job), [record], actor=actor)


def transition(
    db: Session,
    record: PutAwayStock,
    new_status: str,
    *,
    outbound_product_line_id: str | None = None,
    outbound_inventory_id: str | None = None,
    actor: str = "system",
) -> bool:
    """Apply one status change and its side effects. Returns False for a no-op.

    Does not commit.
    """
    if new_status not in ALLOWED_TRANSITIONS:
        raise ValidationError("Invalid allocation status", payload={"allocationStatus": new_status})
    current = record.allocation_status
    if new_status == current:
        return False
    allowed = ALLOWED_TRANSITIONS.get(current, ())
    if new_status not in allowed:
        raise InvalidTransitionError(current, new_status, list(allowed))

    if current == AVAILABLE and new_status == ALLOCATED:
        _link_outbound_line(db, record, outbound_product_line_id, outbound_inventory_id, actor)
    elif current == ALLOCATED and new_status == PICKED:
        if not record.has_outbound_linkage:
            raise ValidationError("LPN must be allocated to an outbound product line before picking")
        record_pick(db, record)
    elif current == ALLOCATED and new_status == AVAILABLE:
        release_from_demand(db, record)
        record.clear_linkage()
    elif current == PICKED and new_status == AVAILABLE:
        release_pick(db, record)
        release_from_demand(db, record)
        record.clear_linkage()
    elif current == PICKED and new_status == ALLOCATED:
        release_pick(db, record)

    record.allocation_status = new_status
    publish(db, ALLOCATION_STATUS_CHANGED, {
        "tenant_id": record.tenant_id,
        "record_id": record.id,
        "lpn_number": record.lpn_number,
        "from": current,
        "to": new_status,
    })
    audit(db, actor=actor, action="STOCK_STATUS_CHANGE", entity_type="put_away_stock", entity_id=record.id,
          payload={"from": current, "to": new_status, "lpn_number": record.lpn_number})
    logger.info("LPN %s: %s -> %s", record.lpn_number, current, new_status)
    return True


def _split_batch(db: Session, record: PutAwayStock, batch_number: str) -> str | None:
    """Move one pallet onto its own copy of its inbound line carrying the new batch."""
    if not record.inbound_product_line_id:
        raise ValidationError("Batch number can only be changed on pallets received through an inbound job")
    line = db.query(InboundProductLine).filter(InboundProductLine.id == record.inbound_product_line_id).first()
    if not line:
        raise NotFoundError("Inbound product line not found")
    if line.batch_number == batch_number:
        return None

    qty = int(round(float(record.hu_qty or 0)))
    copy = InboundProductLine(
        inbound_inventory_id=line.inbound_inventory_id,
        sku_id=line.sku_id,
        batch_number=batch_number,
        expected_qty=qty,
        received_qty=qty,
        lpn_qty=line.lpn_qty,
        expected_weight=line.expected_weight,
        received_weight=line.received_weight,
        received_cubic_per_hu=line.received_cubic_per_hu,
        expiry_date=line.expiry_date,
        split_from_id=line.split_from_id or line.id,
        meta=dict(line.meta or {}),
    )
    db.add(copy)
    db.flush()
    record.inbound_product_line_id = copy.id
    return copy.id


def update_record(db: Session, record_id: str, changes: dict, *, actor: str = "system") -> dict:
    """Edit a pallet: location, quantity, allocation status and batch number."""
    rec = get_record(db, record_id)
    before = {"location": rec.location, "hu_qty": float(rec.hu_qty), "allocation_status": rec.allocation_status}
    edited = False

    if changes.get("location") is not None:
        location = changes["location"].strip()
        if not location:
            raise ValidationError("Location cannot be empty")
        rec.location = location
        edited = True

    if changes.get("hu_qty") is not None:
        if float(changes["hu_qty"]) <= 0:
            raise ValidationError("huQty must be greater than 0")
        rec.hu_qty = dec(changes["hu_qty"])
        edited = True

    if changes.get("allocation_status") is not None:
        transition(
            db,
            rec,
            changes["allocation_status"],
            outbound_product_line_id=changes.get("outbound_product_line_id"),
            outbound_inventory_id=changes.get("outbound_inventory_id"),
            actor=actor,
        )

    new_line_id = None
    if changes.get("batch_number") is not None:
        new_line_id = _split_batch(db, rec, changes["batch_number"])
        edited = True

    if not edited and changes.get("allocation_status") is None:
        raise ValidationError("No valid fields to update")

    if edited:
        audit(db, actor=actor, action="STOCK_RECORD_EDIT", entity_type="put_away_stock", entity_id=rec.id,
              payload={"before": before, "changes": {k: v for k, v in changes.items() if v is not None},
                       "new_product_line_id": new_line_id})
    db.commit()
    return {"success": True, "record": record_dict(rec)}


def delete_record(db: Session, record_id: str, *, actor: str = "system") -> dict:
    rec = get_record(db, record_id)
    rec.soft_delete()
    publish(db, PUT_AWAY_RECORD_DELETED, {"tenant_id": rec.tenant_id, "record_id": rec.id, "lpn_number": rec.lpn_number})
    audit(db, actor=actor, action="STOCK_RECORD_DELETE", entity_type="put_away_stock", entity_id=rec.id,
          payload={"lpn_number": rec.lpn_number, "allocation_status": rec.allocation_status})
    db.commit()
    logger.info("LPN %s soft-deleted", rec.lpn_number)
    return {"success": True, "message": "Record deleted successfully"}
