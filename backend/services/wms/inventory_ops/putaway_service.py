from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.audit import audit
from app.core.config import PUT_AWAY_TOLERANCE
from app.core.tenant import get_tenant_id
from app.db.models.containers import (
    AllocationStage,
    BookingCollection,
    ContainerDetail,
    ContainerStockAllocation,
    ImportContainerBooking,
)
from app.db.models.freight import InboundInventory, InboundProductLine
from app.db.models.stock import AllocationStatus, PutAwayStock
from app.db.models.warehouse import Sku, Warehouse
from app.events.bus import publish, STOCK_PUT_AWAY
from services.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from services.wms.inventory_ops.unit_loads import dec, generate_lpns, parse_capacity, unit_count, unit_qty

logger = logging.getLogger(__name__)


@dataclass
class PutAwayLine:
    """One source product line as the planner sees it."""

    key: str
    sku_id: str | None
    received_qty: float
    unit_capacity: float
    existing: int
    source: dict
    requests: list[dict] = field(default_factory=list)
    bulk_location: str | None = None


def record_dict(r: PutAwayStock) -> dict:
    return {
        "id": r.id,
        "lpnNumber": r.lpn_number,
        "skuId": r.sku_id,
        "warehouseId": r.warehouse_id,
        "location": r.location,
        "huQty": float(r.hu_qty),
        "allocationStatus": r.allocation_status,
        "inboundInventoryId": r.inbound_inventory_id,
        "inboundProductLineId": r.inbound_product_line_id,
        "sourceAllocationId": r.source_allocation_id,
        "sourceLineIndex": r.source_line_index,
        "outboundInventoryId": r.outbound_inventory_id,
        "outboundProductLineId": r.outbound_product_line_id,
        "containerStockAllocationId": r.container_stock_allocation_id,
        "containerDetailId": r.container_detail_id,
        "allocatedAt": r.allocated_at.isoformat() if r.allocated_at else None,
        "allocatedBy": r.allocated_by,
        "createdAt": r.created_at.isoformat() if r.created_at else None,
    }


def _warehouse_for_tenant(db: Session, warehouse_id: str) -> Warehouse:
    wh = db.query(Warehouse).filter(Warehouse.id == warehouse_id).first()
    if not wh or wh.tenant_id != get_tenant_id():
        raise NotFoundError("Warehouse not found")
    return wh


def _line_capacity(line_lpn_qty, sku: Sku | None) -> float:
    cap = parse_capacity(line_lpn_qty)
    if cap <= 0 and sku is not None:
        cap = parse_capacity(sku.lpn_qty)
    return cap


def _requests_by_unit(line: PutAwayLine, count: int) -> dict[int, dict]:
    """Map each still-missing pallet (0-based unit index) to the record describing it.

    A record carrying ``pallet_index`` (1-based) describes that pallet; records
    for pallets already on the floor are ignored, so a client may resend the
    full list. Records without an index fill the remaining pallets in order.
    """
    by_unit: dict[int, dict] = {}
    positional: list[dict] = []
    for req in line.requests:
        idx = req.get("pallet_index")
        if idx is None:
            positional.append(req)
            continue
        if idx < 1 or idx > count:
            raise ValidationError(f"Pallet {idx} is out of range for product line {line.key} (1-{count})")
        if idx - 1 in by_unit:
            raise ValidationError(f"Pallet {idx} of product line {line.key} is listed more than once")
        by_unit[idx - 1] = req

    free = iter(positional)
    for unit_index in range(line.existing, count):
        if unit_index not in by_unit:
            by_unit[unit_index] = next(free, {})
    return by_unit


def _plan(lines: list[PutAwayLine]) -> tuple[list[dict], list[dict]]:
    """Work out every pallet still to create. Raises before anything is written."""
    planned: list[dict] = []
    skipped: list[dict] = []
    for line in lines:
        count = unit_count(line.received_qty, line.unit_capacity)
        remaining = count - line.existing
        if remaining <= 0:
            skipped.append({
                "productLine": line.key,
                "reason": "fully put away" if count > 0 else "nothing to put away",
                "unitCount": count,
                "existing": line.existing,
            })
            continue
        if not line.sku_id:
            raise ValidationError(f"SKU ID not found for product line {line.key}")

        requests = _requests_by_unit(line, count)
        for unit_index in range(line.existing, count):
            req = requests[unit_index]
            location = line.bulk_location or (req.get("location") or "").strip() or None
            if not location:
                raise ValidationError(
                    f"Location is required for product line {line.key}, pallet {unit_index + 1} of {count}",
                    payload={"productLine": line.key, "pallet": unit_index + 1},
                )
            override = req.get("hu_qty")
            hu = float(override) if override is not None and float(override) > 0 else unit_qty(
                line.received_qty, line.unit_capacity, unit_index, count
            )
            planned.append({
                "line": line,
                "location": location,
                "hu_qty": hu,
                "lpn_number": (req.get("lpn_number") or "").strip() or None,
            })
    return planned, skipped


def _check_supplied_lpns(db: Session, planned: list[dict]) -> None:
    supplied = [p["lpn_number"] for p in planned if p["lpn_number"]]
    dupes = sorted({n for n in supplied if supplied.count(n) > 1})
    if dupes:
        raise ValidationError(f"Duplicate LPN numbers in request: {', '.join(dupes)}")
    if not supplied:
        return
    taken = [
        n for (n,) in db.query(PutAwayStock.lpn_number)
        .filter(PutAwayStock.tenant_id == get_tenant_id(), PutAwayStock.lpn_number.in_(supplied))
        .all()
    ]
    if taken:
        raise ConflictError(f"LPN numbers already in use: {', '.join(sorted(taken))}", payload={"lpns": sorted(taken)})


def _create_records(db: Session, planned: list[dict], warehouse_id: str) -> list[PutAwayStock]:
    _check_supplied_lpns(db, planned)
    missing = sum(1 for p in planned if not p["lpn_number"])
    fresh = iter(generate_lpns(db, missing) if missing else [])

    created: list[PutAwayStock] = []
    for p in planned:
        line: PutAwayLine = p["line"]
        rec = PutAwayStock(
            lpn_number=p["lpn_number"] or next(fresh),
            sku_id=line.sku_id,
            warehouse_id=warehouse_id,
            location=p["location"],
            hu_qty=dec(p["hu_qty"]),
            allocation_status=AllocationStatus.AVAILABLE.value,
            **line.source,
        )
        db.add(rec)
        created.append(rec)
    return created


def _finish(db: Session, created: list[PutAwayStock], skipped: list[dict], *, actor: str, context: dict) -> dict:
    if created:
        db.flush()
        publish(db, STOCK_PUT_AWAY, {
            **context,
            "tenant_id": get_tenant_id(),
            "lpns": [r.lpn_number for r in created],
        })
        audit(db, actor=actor, action="STOCK_PUT_AWAY", entity_type=context.get("entity_type", "put_away"),
              entity_id=context.get("entity_id"), payload={"count": len(created), "skipped": skipped})
    db.commit()
    logger.info("Put away %d pallet(s), skipped %d line(s) for %s", len(created), len(skipped), context)
    return {
        "success": True,
        "records": [record_dict(r) for r in created],
        "count": len(created),
        "skipped": skipped,
    }


def _active_count(db: Session, *criteria) -> int:
    return (
        db.query(func.count(PutAwayStock.id))
        .filter(PutAwayStock.tenant_id == get_tenant_id(), PutAwayStock.active(), *criteria)
        .scalar()
        or 0
    )


def _line_family(db: Session, line_id: str) -> list[str]:
    # Pallets re-batched onto a split copy still count against the line they came from.
    split = [i for (i,) in db.query(InboundProductLine.id).filter(InboundProductLine.split_from_id == line_id).all()]
    return [line_id, *split]


def put_away_inbound(
    db: Session,
    *,
    job_id: str,
    warehouse_id: str,
    records: list[dict],
    bulk_locations: list[dict] | None = None,
    actor: str = "system",
) -> dict:
    if not job_id or not warehouse_id or not (records or bulk_locations):
        raise ValidationError("Job ID, warehouse ID, and put-away records are required")

    job = db.query(InboundInventory).filter(InboundInventory.id == job_id).first()
    if not job or job.tenant_id != get_tenant_id():
        raise NotFoundError("Job not found")
    _warehouse_for_tenant(db, warehouse_id)

    by_line: dict[str, PutAwayLine] = {}
    bulk = {b["product_line_id"]: (b.get("location") or "").strip() or None for b in (bulk_locations or [])}
    order = [r["product_line_id"] for r in records or []] + list(bulk)

    for line_id in order:
        if line_id in by_line:
            continue
        pl = db.query(InboundProductLine).filter(InboundProductLine.id == line_id).first()
        if not pl or pl.inbound_inventory_id != job.id:
            raise ValidationError("Product line does not belong to this job", payload={"productLineId": line_id})
        sku = db.query(Sku).filter(Sku.id == pl.sku_id).first() if pl.sku_id else None
        fallback_sku = next((r.get("sku_id") for r in records or [] if r["product_line_id"] == line_id and r.get("sku_id")), None)
        by_line[line_id] = PutAwayLine(
            key=line_id,
            sku_id=pl.sku_id or fallback_sku,
            received_qty=float(pl.received_qty or 0),
            unit_capacity=_line_capacity(pl.lpn_qty, sku),
            existing=_active_count(db, PutAwayStock.inbound_product_line_id.in_(_line_family(db, pl.id))),
            source={"inbound_inventory_id": job.id, "inbound_product_line_id": pl.id},
            bulk_location=bulk.get(line_id),
        )

    for r in records or []:
        by_line[r["product_line_id"]].requests.append(r)

    planned, skipped = _plan(list(by_line.values()))
    created = _create_records(db, planned, warehouse_id)
    return _finish(db, created, skipped, actor=actor, context={
        "entity_type": "inbound_inventory", "entity_id": job.id, "warehouse_id": warehouse_id,
    })


def _find_allocation(allocations: list[ContainerStockAllocation], *, allocation_id: str | None,
                     sku_id: str | None, index: int) -> ContainerStockAllocation:
    if allocation_id:
        for a in allocations:
            if a.id == allocation_id:
                if index < 0 or index >= len(a.product_lines or []):
                    raise ValidationError(f"Product line {index} not found in allocation {a.id}")
                return a
        raise ValidationError(f"Stock allocation {allocation_id} does not belong to this container")

    for a in allocations:
        lines = a.product_lines or []
        if 0 <= index < len(lines) and (sku_id is None or lines[index].get("sku_id") == sku_id):
            return a
    raise ValidationError(f"Could not find allocation for SKU {sku_id} at product line index {index}")


def put_away_container(
    db: Session,
    *,
    booking_id: str,
    container_id: str,
    warehouse_id: str,
    records: list[dict],
    bulk_locations: list[dict] | None = None,
    actor: str = "system",
) -> dict:
    booking = db.query(ImportContainerBooking).filter(ImportContainerBooking.id == booking_id).first()
    if not booking:
        raise NotFoundError("Import container booking not found")
    if booking.tenant_id != get_tenant_id():
        raise ForbiddenError("Import container booking does not belong to this tenant")

    container = db.query(ContainerDetail).filter(ContainerDetail.id == container_id).first()
    if not container:
        raise NotFoundError("Container not found")
    if container.booking_id != booking.id or container.booking_collection != BookingCollection.IMPORT.value:
        raise ValidationError("Container does not belong to this booking")

    if not warehouse_id or not (records or bulk_locations):
        raise ValidationError("Warehouse ID and put-away records are required")
    _warehouse_for_tenant(db, warehouse_id)

    allocations = (
        db.query(ContainerStockAllocation)
        .filter(ContainerStockAllocation.container_detail_id == container.id,
                ContainerStockAllocation.tenant_id == get_tenant_id())
        .order_by(ContainerStockAllocation.created_at.asc(), ContainerStockAllocation.id.asc())
        .all()
    )

    by_line: dict[tuple[str, int], PutAwayLine] = {}

    def line_for(entry: dict) -> PutAwayLine:
        index = int(entry.get("product_line_index") or 0)
        alloc = _find_allocation(allocations, allocation_id=entry.get("allocation_id"),
                                 sku_id=entry.get("sku_id"), index=index)
        key = (alloc.id, index)
        if key not in by_line:
            pl = alloc.product_lines[index]
            sku = db.query(Sku).filter(Sku.id == pl.get("sku_id")).first() if pl.get("sku_id") else None
            by_line[key] = PutAwayLine(
                key=f"{alloc.id}[{index}]",
                sku_id=pl.get("sku_id") or entry.get("sku_id"),
                received_qty=float(pl.get("received_qty") or 0),
                unit_capacity=_line_capacity(pl.get("lpn_qty"), sku),
                existing=_active_count(db, PutAwayStock.source_allocation_id == alloc.id,
                                       PutAwayStock.source_line_index == index),
                source={"source_allocation_id": alloc.id, "source_line_index": index},
            )
        return by_line[key]

    for b in bulk_locations or []:
        line_for(b).bulk_location = (b.get("location") or "").strip() or None
    for r in records or []:
        line_for(r).requests.append(r)

    planned, skipped = _plan(list(by_line.values()))
    created = _create_records(db, planned, warehouse_id)
    if created:
        db.flush()
        touched = {aid for (aid, _idx) in by_line}
        for alloc in allocations:
            if alloc.id in touched:
                _advance_stage_if_put_away(db, alloc)

    return _finish(db, created, skipped, actor=actor, context={
        "entity_type": "container_detail", "entity_id": container.id, "warehouse_id": warehouse_id,
        "booking_id": booking.id,
    })


def _advance_stage_if_put_away(db: Session, alloc: ContainerStockAllocation) -> None:
    """Move the allocation to put_away once every received line is fully on pallets."""
    if alloc.stage not in (AllocationStage.EXPECTED.value, AllocationStage.RECEIVED.value):
        return
    received_lines = [(i, float(pl.get("received_qty") or 0)) for i, pl in enumerate(alloc.product_lines or [])]
    received_lines = [(i, q) for i, q in received_lines if q > 0]
    if not received_lines:
        return
    for index, received in received_lines:
        put = (
            db.query(func.coalesce(func.sum(PutAwayStock.hu_qty), 0))
            .filter(PutAwayStock.tenant_id == alloc.tenant_id, PutAwayStock.active(),
                    PutAwayStock.source_allocation_id == alloc.id, PutAwayStock.source_line_index == index)
            .scalar()
        )
        if float(put or 0) < received - PUT_AWAY_TOLERANCE:
            return
    alloc.stage = AllocationStage.PUT_AWAY.value
    logger.info("Stock allocation %s moved to stage put_away", alloc.id)


def receive_inbound(db: Session, *, job_id: str, lines: list[dict], actor: str = "system") -> dict:
    """Record received quantities on an inbound job's lines."""
    job = db.query(InboundInventory).filter(InboundInventory.id == job_id).first()
    if not job or job.tenant_id != get_tenant_id():
        raise NotFoundError("Job not found")
    if not lines:
        raise ValidationError("At least one received line is required")

    updated = []
    for entry in lines:
        pl = db.query(InboundProductLine).filter(InboundProductLine.id == entry["product_line_id"]).first()
        if not pl or pl.inbound_inventory_id != job.id:
            raise ValidationError("Product line does not belong to this job",
                                  payload={"productLineId": entry["product_line_id"]})
        qty = entry.get("received_qty")
        if qty is None or qty < 0:
            raise ValidationError(f"Received quantity for product line {pl.id} must be zero or more")
        pl.received_qty = qty
        if entry.get("received_weight") is not None:
            pl.received_weight = entry["received_weight"]
        if entry.get("lpn_qty"):
            pl.lpn_qty = str(entry["lpn_qty"])
        updated.append({"productLineId": pl.id, "receivedQty": pl.received_qty, "lpnQty": pl.lpn_qty})

    job.status = "RECEIVED"
    audit(db, actor=actor, action="INBOUND_RECEIVED", entity_type="inbound_inventory", entity_id=job.id,
          payload={"lines": updated})
    db.commit()
    return {"success": True, "jobId": job.id, "lines": updated}


def list_put_away(db: Session, *, job_id: str | None = None, product_line_id: str | None = None,
                  allocation_id: str | None = None) -> list[dict]:
    q = db.query(PutAwayStock).filter(PutAwayStock.tenant_id == get_tenant_id(), PutAwayStock.active())
    if job_id:
        q = q.filter(PutAwayStock.inbound_inventory_id == job_id)
    if product_line_id:
        q = q.filter(PutAwayStock.inbound_product_line_id == product_line_id)
    if allocation_id:
        q = q.filter(PutAwayStock.source_allocation_id == allocation_id)
    rows = q.order_by(PutAwayStock.created_at.asc(), PutAwayStock.lpn_number.asc()).all()
    return [record_dict(r) for r in rows]
