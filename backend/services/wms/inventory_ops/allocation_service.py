"""
Demand resolver: satisfies product-line demand from the pool of available pallets.

Two kinds of demand share the same resolver:

* a product line embedded in an export container's stock allocation, addressed
  by index (``ContainerAllocationTarget``);
* a product line of an outbound job (``OutboundLineTarget``).

Each requested item is resolved and committed on its own; failures are
collected per item and never abort the batch. Allocation adds to a line's
cumulative quantity, weight, pallet equivalents and LPN list; a pallet released
back to available is taken off them again (``release_from_demand``). The
demand rows carry a version column, so a concurrent update of the same line
surfaces as a per-item conflict instead of a lost update.
"""

from __future__ import annotations

import abc
import copy
import logging
from dataclasses import dataclass

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from app.core.audit import audit
from app.core.config import FIFO_PAGE_SIZE
from app.core.tenant import get_tenant_id
from app.db.models.common import utcnow
from app.db.models.containers import (
    AllocationStage,
    BookingCollection,
    ContainerDetail,
    ContainerStockAllocation,
    ExportContainerBooking,
)
from app.db.models.freight import InboundInventory, InboundProductLine, OutboundInventory, OutboundProductLine
from app.db.models.stock import AllocationStatus, PutAwayStock
from app.db.models.warehouse import Sku
from app.events.bus import publish, STOCK_ALLOCATED
from services.errors import ForbiddenError, NotFoundError, StockError, ValidationError

logger = logging.getLogger(__name__)

CUBIC_MM_PER_M3 = 1e9


def _num(v) -> float:
    try:
        return float(v or 0)
    except (TypeError, ValueError):
        return 0.0


# ---- Demand targets ----
class DemandLine(abc.ABC):
    """What the resolver needs to know about one line of demand."""

    ident: dict
    sku_id: str | None
    expected_qty: float
    allocated_qty: float

    @abc.abstractmethod
    def linkage(self) -> dict:
        ...

    @abc.abstractmethod
    def is_linked(self, rec: PutAwayStock) -> bool:
        ...

    @abc.abstractmethod
    def metrics(self) -> dict:
        ...

    @abc.abstractmethod
    def store(self, metrics: dict) -> None:
        ...


class ContainerAllocationTarget(DemandLine):
    def __init__(self, alloc: ContainerStockAllocation, index: int, container: ContainerDetail):
        self.alloc = alloc
        self.index = index
        self.container = container
        self.ident = {"productLineIndex": index}
        line = alloc.product_lines[index]
        self.sku_id = line.get("sku_id")
        self.expected_qty = _num(line.get("expected_qty"))
        self.allocated_qty = _num(line.get("allocated_qty"))

    def linkage(self) -> dict:
        return {"container_stock_allocation_id": self.alloc.id, "container_detail_id": self.container.id}

    def is_linked(self, rec: PutAwayStock) -> bool:
        return rec.container_stock_allocation_id == self.alloc.id

    def metrics(self) -> dict:
        line = self.alloc.product_lines[self.index]
        return {
            "allocated_qty": _num(line.get("allocated_qty")),
            "allocated_weight": _num(line.get("allocated_weight")),
            "allocated_cubic_per_hu": line.get("allocated_cubic_per_hu"),
            "plt_qty": _num(line.get("plt_qty")),
            "lpns": list(line.get("lpns") or []),
            "location": line.get("location"),
        }

    def store(self, metrics: dict) -> None:
        lines = copy.deepcopy(self.alloc.product_lines)
        lines[self.index] = {**lines[self.index], **metrics}
        self.alloc.product_lines = lines
        flag_modified(self.alloc, "product_lines")
        _advance_stage_if_allocated(self.alloc)


class OutboundLineTarget(DemandLine):
    def __init__(self, line: OutboundProductLine, job: OutboundInventory):
        self.line = line
        self.job = job
        self.ident = {"productLineId": line.id}
        self.sku_id = line.sku_id
        self.expected_qty = _num(line.expected_qty)
        self.allocated_qty = _num(line.allocated_qty)

    def linkage(self) -> dict:
        return {"outbound_inventory_id": self.job.id, "outbound_product_line_id": self.line.id}

    def is_linked(self, rec: PutAwayStock) -> bool:
        return rec.outbound_product_line_id == self.line.id

    def metrics(self) -> dict:
        return {
            "allocated_qty": _num(self.line.allocated_qty),
            "allocated_weight": _num(self.line.allocated_weight),
            "allocated_cubic_per_hu": self.line.allocated_cubic_per_hu,
            "plt_qty": _num(self.line.plt_qty),
            "lpns": list(self.line.lpns or []),
            "location": self.line.location,
        }

    def store(self, metrics: dict) -> None:
        for k, v in metrics.items():
            setattr(self.line, k, v)
        flag_modified(self.line, "lpns")


def _advance_stage_if_allocated(alloc: ContainerStockAllocation) -> None:
    demand = [pl for pl in alloc.product_lines if _num(pl.get("expected_qty")) > 0]
    if not demand or alloc.stage not in (
        AllocationStage.EXPECTED.value, AllocationStage.RECEIVED.value, AllocationStage.PUT_AWAY.value
    ):
        return
    if all(_num(pl.get("allocated_qty")) >= _num(pl.get("expected_qty")) for pl in demand):
        alloc.stage = AllocationStage.ALLOCATED.value


# ---- Candidate pool ----
@dataclass
class PoolScope:
    warehouse_id: str | None
    container_id: str | None


def candidate_query(db: Session, *, sku_id: str, batch_number: str, scope: PoolScope):
    """Active pallets of the SKU whose source line carries the batch. None if no source matches."""
    tenant_id = get_tenant_id()
    sources = []

    inbound_ids = [
        i for (i,) in db.query(InboundProductLine.id)
        .join(InboundInventory, InboundInventory.id == InboundProductLine.inbound_inventory_id)
        .filter(InboundInventory.tenant_id == tenant_id,
                InboundProductLine.batch_number == batch_number,
                InboundProductLine.sku_id == sku_id)
        .all()
    ]
    if inbound_ids:
        sources.append(PutAwayStock.inbound_product_line_id.in_(inbound_ids))

    containers = db.query(ContainerDetail.id).filter(ContainerDetail.tenant_id == tenant_id)
    if scope.warehouse_id:
        containers = containers.filter(ContainerDetail.warehouse_id == scope.warehouse_id)
    elif scope.container_id:
        containers = containers.filter(ContainerDetail.id == scope.container_id)
    else:
        containers = None

    if containers is not None:
        container_ids = [c for (c,) in containers.all()]
        allocs = (
            db.query(ContainerStockAllocation)
            .filter(ContainerStockAllocation.tenant_id == tenant_id,
                    ContainerStockAllocation.container_detail_id.in_(container_ids))
            .all()
            if container_ids else []
        )
        for a in allocs:
            for idx, pl in enumerate(a.product_lines or []):
                if pl.get("batch_number") == batch_number and pl.get("sku_id") == sku_id:
                    sources.append(and_(PutAwayStock.source_allocation_id == a.id,
                                        PutAwayStock.source_line_index == idx))

    if not sources:
        return None

    q = db.query(PutAwayStock).filter(
        PutAwayStock.tenant_id == tenant_id,
        PutAwayStock.sku_id == sku_id,
        PutAwayStock.active(),
        or_(*sources),
    )
    if scope.warehouse_id:
        q = q.filter(PutAwayStock.warehouse_id == scope.warehouse_id)
    return q


def iter_fifo(q, page_size: int = FIFO_PAGE_SIZE):
    """Yield pallets oldest first, one page at a time."""
    q = q.order_by(PutAwayStock.created_at.asc(), PutAwayStock.id.asc())
    offset = 0
    while True:
        page = q.offset(offset).limit(page_size).all()
        yield from page
        if len(page) < page_size:
            return
        offset += page_size


# ---- Resolver ----
def _select_explicit(q, target: DemandLine, lpn_ids: list[str]) -> list[PutAwayStock]:
    found = q.filter(PutAwayStock.lpn_number.in_(lpn_ids)).all()
    by_number = {r.lpn_number: r for r in found}
    missing = [n for n in lpn_ids if n not in by_number]
    if missing:
        raise ValidationError(f"LPNs not found: {', '.join(missing)}")

    conflicts = [
        r.lpn_number for r in found
        if r.allocation_status != AllocationStatus.AVAILABLE.value and not target.is_linked(r)
    ]
    if conflicts:
        raise ValidationError(f"Some LPNs are already allocated elsewhere: {', '.join(conflicts)}")

    # Pallets already linked to this line are a no-op
    chosen, seen = [], set()
    for n in lpn_ids:
        r = by_number[n]
        if r.id in seen or r.allocation_status != AllocationStatus.AVAILABLE.value:
            continue
        seen.add(r.id)
        chosen.append(r)
    return chosen


def _select_quantity(q, target: DemandLine, quantity: float) -> list[PutAwayStock]:
    remaining = max(0.0, target.expected_qty - target.allocated_qty)
    if remaining <= 0:
        raise ValidationError(
            f"Product line is already fully allocated ({target.allocated_qty:g}/{target.expected_qty:g})"
        )
    wanted = min(quantity, remaining)

    chosen: list[PutAwayStock] = []
    total = 0.0
    for r in iter_fifo(q.filter(PutAwayStock.allocation_status == AllocationStatus.AVAILABLE.value)):
        if total >= wanted:
            break
        chosen.append(r)
        total += _num(r.hu_qty)

    if total < wanted:
        raise ValidationError(
            f"Insufficient stock. Available: {total:g}, Still needed: {wanted:g} "
            f"(already allocated: {target.allocated_qty:g}/{target.expected_qty:g})"
        )
    return chosen


def _merge_metrics(current: dict, chosen: list[PutAwayStock], sku: Sku | None) -> dict:
    total = sum(_num(r.hu_qty) for r in chosen)
    merged = dict(current)
    merged["allocated_qty"] = current["allocated_qty"] + total
    if sku is not None and _num(sku.weight_per_hu_kg) > 0:
        merged["allocated_weight"] = current["allocated_weight"] + _num(sku.weight_per_hu_kg) * total
    if sku is not None and _num(sku.hu_per_su) > 0:
        merged["plt_qty"] = current["plt_qty"] + total / _num(sku.hu_per_su)
    if sku is not None and all(_num(d) > 0 for d in (sku.length_per_hu_mm, sku.width_per_hu_mm, sku.height_per_hu_mm)):
        merged["allocated_cubic_per_hu"] = (
            _num(sku.length_per_hu_mm) * _num(sku.width_per_hu_mm) * _num(sku.height_per_hu_mm) / CUBIC_MM_PER_M3
        )
    lpns = list(current["lpns"])
    for r in chosen:
        if r.lpn_number not in lpns:
            lpns.append(r.lpn_number)
    merged["lpns"] = lpns
    if not current.get("location") and chosen:
        merged["location"] = chosen[0].location
    return merged


def _subtract_metrics(current: dict, rec: PutAwayStock, sku: Sku | None) -> dict:
    qty = _num(rec.hu_qty)
    merged = dict(current)
    merged["allocated_qty"] = max(0.0, current["allocated_qty"] - qty)
    if sku is not None and _num(sku.weight_per_hu_kg) > 0:
        merged["allocated_weight"] = max(0.0, current["allocated_weight"] - _num(sku.weight_per_hu_kg) * qty)
    if sku is not None and _num(sku.hu_per_su) > 0:
        merged["plt_qty"] = max(0.0, current["plt_qty"] - qty / _num(sku.hu_per_su))
    merged["lpns"] = [n for n in current["lpns"] if n != rec.lpn_number]
    if not merged["lpns"]:
        merged["location"] = None
    return merged


def assign_to_demand(db: Session, target: DemandLine, chosen: list[PutAwayStock], *, actor: str) -> float:
    """Link pallets to a demand line and add them to its cumulative metrics.

    Rejects a selection that would take the line past a positive expected
    quantity. Returns the quantity added. Does not commit.
    """
    total = sum(_num(r.hu_qty) for r in chosen)
    if target.expected_qty > 0 and target.allocated_qty + total > target.expected_qty:
        raise ValidationError(
            f"Allocation would exceed expected quantity: selected {total:g}, "
            f"still needed {target.expected_qty - target.allocated_qty:g} "
            f"(already allocated: {target.allocated_qty:g}/{target.expected_qty:g})"
        )
    if not chosen:
        return total

    now = utcnow()
    for r in chosen:
        r.clear_linkage()
        for k, v in target.linkage().items():
            setattr(r, k, v)
        r.allocation_status = AllocationStatus.ALLOCATED.value
        r.allocated_at = now
        r.allocated_by = actor

    sku = db.query(Sku).filter(Sku.id == target.sku_id).first() if target.sku_id else None
    target.store(_merge_metrics(target.metrics(), chosen, sku))
    return total


def demand_target_for(db: Session, rec: PutAwayStock) -> DemandLine | None:
    """The demand line a linked pallet counts towards, or None if the line is gone."""
    if rec.outbound_product_line_id:
        line = db.query(OutboundProductLine).filter(OutboundProductLine.id == rec.outbound_product_line_id).first()
        job = db.query(OutboundInventory).filter(OutboundInventory.id == rec.outbound_inventory_id).first()
        if line and job:
            return OutboundLineTarget(line, job)
        return None
    if rec.container_stock_allocation_id:
        alloc = db.query(ContainerStockAllocation).filter(
            ContainerStockAllocation.id == rec.container_stock_allocation_id
        ).first()
        container = db.query(ContainerDetail).filter(ContainerDetail.id == rec.container_detail_id).first()
        if not alloc or not container:
            return None
        for idx, pl in enumerate(alloc.product_lines or []):
            if rec.lpn_number in (pl.get("lpns") or []):
                return ContainerAllocationTarget(alloc, idx, container)
    return None


def release_from_demand(db: Session, rec: PutAwayStock) -> DemandLine | None:
    """Take a pallet's quantity, weight and LPN back off the demand line it was allocated to.

    Leaves the pallet's own linkage alone; the caller clears it. Does not commit.
    """
    target = demand_target_for(db, rec)
    if target is None:
        return None
    sku = db.query(Sku).filter(Sku.id == target.sku_id).first() if target.sku_id else None
    target.store(_subtract_metrics(target.metrics(), rec, sku))
    logger.info("LPN %s released from %s", rec.lpn_number, target.ident)
    return target


def allocate_line(
    db: Session,
    target: DemandLine,
    *,
    batch_number: str,
    scope: PoolScope,
    lpn_ids: list[str] | None = None,
    quantity: float | None = None,
    actor: str = "system",
) -> dict:
    """Allocate pallets to one demand line. Raises StockError; does not commit."""
    if target.expected_qty > 0 and target.allocated_qty >= target.expected_qty:
        raise ValidationError(
            f"Product line is already fully allocated ({target.allocated_qty:g}/{target.expected_qty:g})"
        )
    if not target.sku_id:
        raise ValidationError("Product line does not have a SKU")

    q = candidate_query(db, sku_id=target.sku_id, batch_number=batch_number, scope=scope)
    if q is None:
        raise ValidationError(f"No stock found for batch {batch_number} and SKU {target.sku_id}")

    if lpn_ids:
        chosen = _select_explicit(q, target, lpn_ids)
    elif quantity is not None and quantity > 0:
        chosen = _select_quantity(q, target, quantity)
    else:
        raise ValidationError("Either lpnIds or quantity must be provided")

    total = assign_to_demand(db, target, chosen, actor=actor)

    location = chosen[0].location if chosen else None
    if chosen:
        publish(db, STOCK_ALLOCATED, {
            "tenant_id": get_tenant_id(),
            **target.ident,
            **target.linkage(),
            "batch_number": batch_number,
            "qty": total,
            "lpns": [r.lpn_number for r in chosen],
        })
        audit(db, actor=actor, action="STOCK_ALLOCATED", entity_type="put_away_stock", entity_id=None,
              payload={**target.ident, **target.linkage(), "lpns": [r.lpn_number for r in chosen], "qty": total})

    return {
        **target.ident,
        "batchNumber": batch_number,
        "allocatedQty": total,
        "allocatedLPNs": [r.lpn_number for r in chosen],
        "location": location,
    }


def _run_items(db: Session, items: list[dict], resolve_target, *, scope: PoolScope, actor: str) -> dict:
    results: list[dict] = []
    errors: list[dict] = []
    for item in items:
        ident = {k: item[k] for k in ("productLineIndex", "productLineId") if k in item}
        try:
            if not item.get("batch_number") or not ident or any(v is None for v in ident.values()):
                raise ValidationError(f"{next(iter(ident), 'productLineIndex')} and batchNumber are required")
            target = resolve_target(item)
            result = allocate_line(
                db,
                target,
                batch_number=item["batch_number"],
                scope=scope,
                lpn_ids=item.get("lpn_ids"),
                quantity=item.get("quantity"),
                actor=actor,
            )
            db.commit()
            # Only a committed item is reported as allocated
            results.append(result)
        except StaleDataError:
            db.rollback()
            logger.warning("Concurrent update on %s, allocation not applied", ident)
            errors.append({**ident, "error": "Product line was changed by another request, retry the allocation"})
        except StockError as e:
            db.rollback()
            errors.append({**ident, "error": e.message})

    logger.info("Allocated %d item(s), %d error(s)", len(results), len(errors))
    out = {"success": True, "allocations": results}
    if errors:
        out["errors"] = errors
    return out


# ---- Entry points ----
def _export_allocation(db: Session, booking_id: str, allocation_id: str):
    booking = db.query(ExportContainerBooking).filter(ExportContainerBooking.id == booking_id).first()
    if not booking:
        raise NotFoundError("Export container booking not found")
    if booking.tenant_id != get_tenant_id():
        raise ForbiddenError("Export container booking does not belong to this tenant")
    alloc = db.query(ContainerStockAllocation).filter(ContainerStockAllocation.id == allocation_id).first()
    if not alloc or alloc.tenant_id != get_tenant_id():
        raise NotFoundError("Stock allocation not found")
    if alloc.booking_id != booking.id or alloc.booking_collection != BookingCollection.EXPORT.value:
        raise ValidationError("Stock allocation does not belong to this booking")
    container = db.query(ContainerDetail).filter(ContainerDetail.id == alloc.container_detail_id).first()
    if not container:
        raise NotFoundError("Container not found")
    return alloc, container


def allocate_container_stock(db: Session, *, booking_id: str, allocation_id: str, items: list[dict],
                             actor: str = "system") -> dict:
    if not items:
        raise ValidationError("Allocations array is required")
    alloc, container = _export_allocation(db, booking_id, allocation_id)
    alloc_id, container_id = alloc.id, container.id
    scope = PoolScope(warehouse_id=container.warehouse_id, container_id=container.id)

    def resolve(item: dict) -> DemandLine:
        # Re-read after a per-item rollback expired the instances
        a = db.query(ContainerStockAllocation).filter(ContainerStockAllocation.id == alloc_id).first()
        c = db.query(ContainerDetail).filter(ContainerDetail.id == container_id).first()
        index = item["productLineIndex"]
        if index < 0 or index >= len(a.product_lines or []):
            raise ValidationError("Invalid product line index")
        return ContainerAllocationTarget(a, index, c)

    return _run_items(db, [{**i, "productLineIndex": i.get("product_line_index")} for i in items], resolve,
                      scope=scope, actor=actor)


def allocate_outbound(db: Session, *, job_id: str, items: list[dict], actor: str = "system") -> dict:
    if not items:
        raise ValidationError("Allocations array is required")
    job = db.query(OutboundInventory).filter(OutboundInventory.id == job_id).first()
    if not job or job.tenant_id != get_tenant_id():
        raise NotFoundError("Outbound job not found")
    job_pk = job.id
    scope = PoolScope(warehouse_id=job.warehouse_id, container_id=None)

    def resolve(item: dict) -> DemandLine:
        j = db.query(OutboundInventory).filter(OutboundInventory.id == job_pk).first()
        line = db.query(OutboundProductLine).filter(OutboundProductLine.id == item["productLineId"]).first()
        if not line or line.outbound_inventory_id != j.id:
            raise ValidationError("Product line does not belong to this job")
        return OutboundLineTarget(line, j)

    return _run_items(db, [{**i, "productLineId": i.get("product_line_id")} for i in items], resolve,
                      scope=scope, actor=actor)


def available_stock(db: Session, *, booking_id: str, allocation_id: str, product_line_index: int,
                    batch_number: str | None = None) -> dict:
    """FIFO-ordered pool a container allocation line can draw from."""
    alloc, container = _export_allocation(db, booking_id, allocation_id)
    lines = alloc.product_lines or []
    if product_line_index < 0 or product_line_index >= len(lines):
        raise ValidationError("Invalid product line index")
    line = lines[product_line_index]
    sku_id = line.get("sku_id")
    batch = batch_number or line.get("batch_number")
    if not sku_id or not batch:
        raise ValidationError("Product line needs a SKU and batch number to look up stock")

    q = candidate_query(db, sku_id=sku_id, batch_number=batch,
                        scope=PoolScope(warehouse_id=container.warehouse_id, container_id=container.id))
    rows = [] if q is None else list(iter_fifo(
        q.filter(PutAwayStock.allocation_status == AllocationStatus.AVAILABLE.value)
    ))
    return {
        "success": True,
        "productLineIndex": product_line_index,
        "batchNumber": batch,
        "skuId": sku_id,
        "totalAvailableQty": sum(_num(r.hu_qty) for r in rows),
        "lpns": [
            {"id": r.id, "lpnNumber": r.lpn_number, "huQty": float(r.hu_qty), "location": r.location,
             "createdAt": r.created_at.isoformat() if r.created_at else None}
            for r in rows
        ],
    }


def outbound_available_stock(db: Session, *, job_id: str) -> dict:
    """Per line of an outbound job: what it still needs and the pallets it could draw."""
    job = db.query(OutboundInventory).filter(OutboundInventory.id == job_id).first()
    if not job or job.tenant_id != get_tenant_id():
        raise NotFoundError("Outbound job not found")
    lines = (
        db.query(OutboundProductLine)
        .filter(OutboundProductLine.outbound_inventory_id == job.id)
        .order_by(OutboundProductLine.created_at.asc(), OutboundProductLine.id.asc())
        .all()
    )
    scope = PoolScope(warehouse_id=job.warehouse_id, container_id=None)

    availability = []
    for line in lines:
        q = None
        if line.sku_id and line.batch_number:
            q = candidate_query(db, sku_id=line.sku_id, batch_number=line.batch_number, scope=scope)
        rows = [] if q is None else list(iter_fifo(
            q.filter(PutAwayStock.allocation_status == AllocationStatus.AVAILABLE.value)
        ))
        availability.append({
            "productLineId": line.id,
            "batchNumber": line.batch_number,
            "skuId": line.sku_id,
            "requiredQty": line.expected_qty,
            "allocatedQty": _num(line.allocated_qty),
            "availableQty": sum(_num(r.hu_qty) for r in rows),
            "availableLPNs": [
                {"id": r.id, "lpnNumber": r.lpn_number, "huQty": float(r.hu_qty), "location": r.location}
                for r in rows
            ],
        })
    return {"success": True, "availability": availability}
