"""
Pickups: allocated pallets leaving the warehouse against their demand line.

Every picked pallet goes through the status machine, so a pickup lands on the
same ledger entry a single-record status change would use. A buffer quantity
(loose extra units) is added to that entry. Cancelling an entry puts its
pallets back to allocated and keeps the entry as history.
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.tenant import get_tenant_id
from app.db.models.containers import (
    AllocationStage,
    BookingCollection,
    ContainerDetail,
    ContainerStockAllocation,
    ExportContainerBooking,
)
from app.db.models.freight import OutboundInventory, OutboundProductLine
from app.db.models.stock import AllocationStatus, PickupStatus, PickupStock, PutAwayStock
from app.events.bus import publish, PICKUP_CANCELLED, PICKUP_RECORDED
from services.errors import ForbiddenError, NotFoundError, StockError, ValidationError
from services.wms.inventory_ops.pickup_ledger import add_buffer, entry_holding
from services.wms.inventory_ops.status_service import transition

logger = logging.getLogger(__name__)

ALLOCATED = AllocationStatus.ALLOCATED.value
PICKED = AllocationStatus.PICKED.value

JOB_OPEN = "OPEN"
JOB_PARTIALLY_PICKED = "PARTIALLY_PICKED"
JOB_PICKED = "PICKED"


def pickup_dict(entry: PickupStock) -> dict:
    return {
        "id": entry.id,
        "outboundInventoryId": entry.outbound_inventory_id,
        "outboundProductLineId": entry.outbound_product_line_id,
        "containerStockAllocationId": entry.container_stock_allocation_id,
        "containerDetailId": entry.container_detail_id,
        "pickedUpLPNs": [
            {"lpnId": p.get("lpn_id"), "lpnNumber": p.get("lpn_number"), "huQty": p.get("hu_qty"),
             "location": p.get("location")}
            for p in entry.picked_up_lpns or []
        ],
        "pickedUpQty": float(entry.picked_up_qty or 0),
        "bufferQty": float(entry.buffer_qty or 0),
        "finalPickedUpQty": float(entry.final_picked_up_qty or 0),
        "pickupStatus": entry.pickup_status,
        "createdAt": entry.created_at.isoformat() if entry.created_at else None,
    }


def _pick_all(db: Session, records: list[PutAwayStock], *, buffer_qty, actor: str) -> PickupStock:
    for r in records:
        transition(db, r, PICKED, actor=actor)
        # The next pallet must see the entry this one joined or seeded
        db.flush()
    entry = entry_holding(db, records[0])
    if buffer_qty:
        add_buffer(entry, buffer_qty)
    return entry


# ---- Outbound jobs ----
def _refresh_job_status(db: Session, job: OutboundInventory) -> str:
    line_ids = [i for (i,) in db.query(OutboundProductLine.id)
                .filter(OutboundProductLine.outbound_inventory_id == job.id).all()]
    picked = {
        i for (i,) in db.query(PickupStock.outbound_product_line_id)
        .filter(PickupStock.tenant_id == job.tenant_id,
                PickupStock.pickup_status == PickupStatus.COMPLETED.value,
                PickupStock.outbound_product_line_id.in_(line_ids),
                PickupStock.picked_up_qty > 0)
        .all()
    } if line_ids else set()
    if line_ids and len(picked) == len(line_ids):
        job.status = JOB_PICKED
    elif picked:
        job.status = JOB_PARTIALLY_PICKED
    elif job.status in (JOB_PICKED, JOB_PARTIALLY_PICKED):
        job.status = JOB_OPEN
    return job.status


def pick_outbound_line(db: Session, *, product_line_id: str, lpn_numbers: list[str], buffer_qty: float = 0,
                       actor: str = "system") -> dict:
    """Pick named LPNs against an outbound product line.

    LPNs that cannot be picked are reported as warnings; the request fails only
    when none of them can.
    """
    if not lpn_numbers:
        raise ValidationError("At least one LPN number is required")
    line = db.query(OutboundProductLine).filter(OutboundProductLine.id == product_line_id).first()
    job = (
        db.query(OutboundInventory).filter(OutboundInventory.id == line.outbound_inventory_id).first()
        if line else None
    )
    if not line or not job or job.tenant_id != get_tenant_id():
        raise NotFoundError("Product line not found")

    wanted = list(dict.fromkeys(n.strip() for n in lpn_numbers if n and n.strip()))
    found = {
        r.lpn_number: r for r in db.query(PutAwayStock).filter(
            PutAwayStock.tenant_id == job.tenant_id,
            PutAwayStock.active(),
            PutAwayStock.lpn_number.in_(wanted),
        ).all()
    }

    warnings: list[str] = []
    valid: list[PutAwayStock] = []
    for n in wanted:
        r = found.get(n)
        if r is None:
            warnings.append(f"LPN {n} not found")
        elif r.outbound_inventory_id and r.outbound_inventory_id != job.id:
            warnings.append(f"LPN {n} is allocated to a different job")
        elif r.outbound_product_line_id != line.id:
            warnings.append(f"LPN {n} is not allocated to this product line")
        elif r.allocation_status != ALLOCATED:
            warnings.append(f"LPN {n} has status '{r.allocation_status}' and cannot be picked up")
        else:
            valid.append(r)

    if not valid:
        raise ValidationError("No valid LPNs to pick up", payload={"success": False, "warnings": warnings})

    entry = _pick_all(db, valid, buffer_qty=buffer_qty, actor=actor)
    db.flush()
    job_status = _refresh_job_status(db, job)

    publish(db, PICKUP_RECORDED, {
        "tenant_id": job.tenant_id,
        "pickup_id": entry.id,
        "outbound_product_line_id": line.id,
        "lpns": [r.lpn_number for r in valid],
    })
    audit(db, actor=actor, action="PICKUP_RECORDED", entity_type="pickup_stock", entity_id=entry.id,
          payload={"outbound_product_line_id": line.id, "lpns": [r.lpn_number for r in valid],
                   "buffer_qty": buffer_qty or 0})
    db.commit()
    logger.info("Picked %d LPN(s) for outbound line %s, job %s is %s", len(valid), line.id, job.id, job_status)

    out = {"success": True, "pickupRecord": pickup_dict(entry), "jobStatusUpdated": job_status}
    if warnings:
        out["warnings"] = warnings
    return out


# ---- Export containers ----
def _export_container(db: Session, booking_id: str, container_id: str) -> tuple[ExportContainerBooking, ContainerDetail]:
    booking = db.query(ExportContainerBooking).filter(ExportContainerBooking.id == booking_id).first()
    if not booking:
        raise NotFoundError("Export container booking not found")
    if booking.tenant_id != get_tenant_id():
        raise ForbiddenError("Export container booking does not belong to this tenant")
    container = db.query(ContainerDetail).filter(ContainerDetail.id == container_id).first()
    if not container or container.tenant_id != booking.tenant_id:
        raise NotFoundError("Container not found")
    if container.booking_id != booking.id or container.booking_collection != BookingCollection.EXPORT.value:
        raise ValidationError("Container does not belong to this booking")
    return booking, container


def _container_allocations(db: Session, booking: ExportContainerBooking,
                           container: ContainerDetail) -> list[ContainerStockAllocation]:
    return (
        db.query(ContainerStockAllocation)
        .filter(ContainerStockAllocation.tenant_id == booking.tenant_id,
                ContainerStockAllocation.container_detail_id == container.id,
                ContainerStockAllocation.booking_id == booking.id)
        .order_by(ContainerStockAllocation.created_at.asc(), ContainerStockAllocation.id.asc())
        .all()
    )


def _advance_stage_if_picked(db: Session, alloc: ContainerStockAllocation) -> None:
    if alloc.stage != AllocationStage.ALLOCATED.value:
        return
    left = (
        db.query(PutAwayStock.id)
        .filter(PutAwayStock.tenant_id == alloc.tenant_id, PutAwayStock.active(),
                PutAwayStock.container_stock_allocation_id == alloc.id,
                PutAwayStock.allocation_status == ALLOCATED)
        .first()
    )
    if left is None:
        alloc.stage = AllocationStage.PICKED.value
        logger.info("Stock allocation %s moved to stage picked", alloc.id)


def _pick_container_item(db: Session, allocs: list[ContainerStockAllocation], item: dict, actor: str) -> dict:
    index = item.get("product_line_index")
    if index is None:
        raise ValidationError("productLineIndex is required")
    lpn_ids = list(dict.fromkeys(item.get("lpn_ids") or []))
    if not lpn_ids:
        raise ValidationError("At least one LPN is required")

    if item.get("allocation_id"):
        alloc = next((a for a in allocs if a.id == item["allocation_id"]), None)
        if alloc is None:
            raise NotFoundError("Stock allocation not found")
    elif len(allocs) == 1:
        alloc = allocs[0]
    else:
        raise ValidationError("allocationId is required when the container has more than one stock allocation")
    lines = alloc.product_lines or []
    if index < 0 or index >= len(lines):
        raise ValidationError("Product line not found")

    records = db.query(PutAwayStock).filter(
        PutAwayStock.tenant_id == alloc.tenant_id,
        PutAwayStock.active(),
        PutAwayStock.id.in_(lpn_ids),
        PutAwayStock.container_stock_allocation_id == alloc.id,
        PutAwayStock.allocation_status == ALLOCATED,
        PutAwayStock.lpn_number.in_(lines[index].get("lpns") or []),
    ).all()
    if len(records) != len(lpn_ids):
        raise ValidationError("Some LPNs not found or not allocated to this allocation")

    entry = _pick_all(db, records, buffer_qty=item.get("buffer_qty"), actor=actor)
    db.flush()
    _advance_stage_if_picked(db, alloc)
    publish(db, PICKUP_RECORDED, {
        "tenant_id": alloc.tenant_id,
        "pickup_id": entry.id,
        "container_stock_allocation_id": alloc.id,
        "product_line_index": index,
        "lpns": [r.lpn_number for r in records],
    })
    audit(db, actor=actor, action="PICKUP_RECORDED", entity_type="pickup_stock", entity_id=entry.id,
          payload={"container_stock_allocation_id": alloc.id, "product_line_index": index,
                   "lpns": [r.lpn_number for r in records], "buffer_qty": item.get("buffer_qty") or 0})
    return {"allocationId": alloc.id, "productLineIndex": index, "pickupRecord": pickup_dict(entry)}


def pick_container(db: Session, *, booking_id: str, container_id: str, items: list[dict],
                   actor: str = "system") -> dict:
    """Pick allocated pallets into an export container, one committed item at a time."""
    if not items:
        raise ValidationError("Pickups array or single pickup data is required")
    booking, container = _export_container(db, booking_id, container_id)
    booking_pk, container_pk = booking.id, container.id
    if not _container_allocations(db, booking, container):
        raise ValidationError("No allocated stock found for this container")

    results: list[dict] = []
    errors: list[dict] = []
    for item in items:
        try:
            # Re-read after a per-item rollback expired the instances
            b = db.query(ExportContainerBooking).filter(ExportContainerBooking.id == booking_pk).first()
            c = db.query(ContainerDetail).filter(ContainerDetail.id == container_pk).first()
            result = _pick_container_item(db, _container_allocations(db, b, c), item, actor)
            db.commit()
            results.append(result)
        except StockError as e:
            db.rollback()
            errors.append({"productLineIndex": item.get("product_line_index"), "error": e.message})

    logger.info("Container %s pickup: %d item(s), %d error(s)", container_pk, len(results), len(errors))
    out = {"success": True, "pickups": results}
    if errors:
        out["errors"] = errors
    return out


def allocated_lpns(db: Session, *, booking_id: str, container_id: str) -> dict:
    """Pallets allocated to (or already picked into) a container, keyed by allocation and line."""
    booking, container = _export_container(db, booking_id, container_id)
    allocs = _container_allocations(db, booking, container)
    grouped: dict[str, list[dict]] = {}
    for alloc in allocs:
        line_of = {n: i for i, pl in enumerate(alloc.product_lines or []) for n in pl.get("lpns") or []}
        rows = (
            db.query(PutAwayStock)
            .filter(PutAwayStock.tenant_id == booking.tenant_id, PutAwayStock.active(),
                    PutAwayStock.container_stock_allocation_id == alloc.id,
                    PutAwayStock.allocation_status.in_((ALLOCATED, PICKED)))
            .order_by(PutAwayStock.created_at.asc(), PutAwayStock.id.asc())
            .all()
        )
        for r in rows:
            index = line_of.get(r.lpn_number)
            grouped.setdefault(f"{alloc.id}-{index}", []).append({
                "id": r.id,
                "lpnNumber": r.lpn_number,
                "location": r.location,
                "huQty": float(r.hu_qty),
                "allocationId": alloc.id,
                "productLineIndex": index,
                "isPickedUp": r.allocation_status == PICKED,
            })
    return {"success": True, "allocatedLPNs": grouped}


# ---- Cancellation ----
def cancel_pickup(db: Session, pickup_id: str, *, actor: str = "system") -> dict:
    entry = db.query(PickupStock).filter(PickupStock.id == pickup_id).first()
    if not entry or entry.tenant_id != get_tenant_id():
        raise NotFoundError("Pickup record not found")
    if entry.pickup_status == PickupStatus.CANCELLED.value:
        raise ValidationError("Pickup record is already cancelled")

    entry.pickup_status = PickupStatus.CANCELLED.value
    # Releasing a pallet only looks at completed entries
    db.flush()
    ids = [p.get("lpn_id") for p in entry.picked_up_lpns or []]
    records = db.query(PutAwayStock).filter(
        PutAwayStock.tenant_id == entry.tenant_id,
        PutAwayStock.active(),
        PutAwayStock.id.in_(ids),
        PutAwayStock.allocation_status == PICKED,
    ).all() if ids else []
    for r in records:
        transition(db, r, ALLOCATED, actor=actor)

    if entry.outbound_inventory_id:
        job = db.query(OutboundInventory).filter(OutboundInventory.id == entry.outbound_inventory_id).first()
        if job:
            db.flush()
            _refresh_job_status(db, job)
    if entry.container_stock_allocation_id:
        alloc = db.query(ContainerStockAllocation).filter(
            ContainerStockAllocation.id == entry.container_stock_allocation_id
        ).first()
        if alloc and alloc.stage == AllocationStage.PICKED.value and records:
            alloc.stage = AllocationStage.ALLOCATED.value

    publish(db, PICKUP_CANCELLED, {"tenant_id": entry.tenant_id, "pickup_id": entry.id,
                                   "lpns": [r.lpn_number for r in records]})
    audit(db, actor=actor, action="PICKUP_CANCELLED", entity_type="pickup_stock", entity_id=entry.id,
          payload={"lpns": [r.lpn_number for r in records]})
    db.commit()
    logger.info("Pickup %s cancelled, %d LPN(s) back to allocated", entry.id, len(records))
    return {"success": True, "pickupRecord": pickup_dict(entry)}
