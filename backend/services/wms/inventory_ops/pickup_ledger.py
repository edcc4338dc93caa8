from __future__ import annotations

import logging

from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from app.db.models.stock import PickupStatus, PickupStock, PutAwayStock
from services.wms.inventory_ops.unit_loads import dec

logger = logging.getLogger(__name__)


def _pallet(record: PutAwayStock) -> dict:
    return {
        "lpn_id": record.id,
        "lpn_number": record.lpn_number,
        "hu_qty": float(record.hu_qty or 0),
        "location": record.location,
    }


def _set_pallets(entry: PickupStock, pallets: list[dict]) -> None:
    entry.picked_up_lpns = pallets
    flag_modified(entry, "picked_up_lpns")
    # JSON holds floats; the ledger sums are exact
    entry.picked_up_qty = sum((dec(p.get("hu_qty") or 0) for p in pallets), dec(0))
    entry.final_picked_up_qty = entry.picked_up_qty + dec(entry.buffer_qty or 0)


def _active_entries_for_demand(db: Session, record: PutAwayStock) -> list[PickupStock]:
    q = db.query(PickupStock).filter(
        PickupStock.tenant_id == record.tenant_id,
        PickupStock.pickup_status == PickupStatus.COMPLETED.value,
    )
    if record.outbound_product_line_id:
        q = q.filter(PickupStock.outbound_product_line_id == record.outbound_product_line_id)
    else:
        q = q.filter(
            PickupStock.container_stock_allocation_id == record.container_stock_allocation_id,
            PickupStock.container_detail_id == record.container_detail_id,
        )
    return q.order_by(PickupStock.created_at.asc(), PickupStock.id.asc()).all()


def record_pick(db: Session, record: PutAwayStock) -> PickupStock:
    """Put a picked pallet on the pickup ledger of the demand line it is linked to.

    A pallet already on an active entry for that line is left alone. Otherwise it
    joins the oldest active entry, or seeds a new one.
    """
    entries = _active_entries_for_demand(db, record)
    for entry in entries:
        if any(p.get("lpn_id") == record.id for p in entry.picked_up_lpns or []):
            return entry

    if entries:
        entry = entries[0]
        _set_pallets(entry, [*(entry.picked_up_lpns or []), _pallet(record)])
        logger.info("LPN %s added to pickup %s", record.lpn_number, entry.id)
        return entry

    entry = PickupStock(
        tenant_id=record.tenant_id,
        outbound_inventory_id=record.outbound_inventory_id,
        outbound_product_line_id=record.outbound_product_line_id,
        container_stock_allocation_id=record.container_stock_allocation_id,
        container_detail_id=record.container_detail_id,
        buffer_qty=dec(0),
        pickup_status=PickupStatus.COMPLETED.value,
    )
    _set_pallets(entry, [_pallet(record)])
    db.add(entry)
    logger.info("LPN %s seeded a new pickup entry", record.lpn_number)
    return entry


def release_pick(db: Session, record: PutAwayStock) -> list[PickupStock]:
    """Take a pallet off every active pickup entry that holds it and recompute the sums."""
    touched = []
    entries = db.query(PickupStock).filter(
        PickupStock.tenant_id == record.tenant_id,
        PickupStock.pickup_status == PickupStatus.COMPLETED.value,
    ).all()
    for entry in entries:
        pallets = entry.picked_up_lpns or []
        kept = [p for p in pallets if p.get("lpn_id") != record.id]
        if len(kept) != len(pallets):
            _set_pallets(entry, kept)
            touched.append(entry)
    if touched:
        logger.info("LPN %s released from %d pickup entr(ies)", record.lpn_number, len(touched))
    return touched


def entry_holding(db: Session, record: PutAwayStock) -> PickupStock | None:
    for entry in _active_entries_for_demand(db, record):
        if any(p.get("lpn_id") == record.id for p in entry.picked_up_lpns or []):
            return entry
    return None


def add_buffer(entry: PickupStock, buffer_qty) -> None:
    """Add extra picked quantity (not on any pallet) to an entry."""
    entry.buffer_qty = dec(entry.buffer_qty or 0) + dec(buffer_qty or 0)
    _set_pallets(entry, list(entry.picked_up_lpns or []))
