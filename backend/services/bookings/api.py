from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.tenant import get_tenant_id
from app.db.session import get_db
from app.db.models.containers import (
    BookingCollection,
    ContainerStockAllocation,
    ExportContainerBooking,
    ImportContainerBooking,
)
from services.bookings.party_resolver import resolve_booking_parties
from services.errors import ForbiddenError, NotFoundError

router = APIRouter(tags=["bookings"])


def _booking_view(db: Session, model, booking_id: str, label: str, collection: str) -> dict:
    booking = db.query(model).filter(model.id == booking_id).first()
    if not booking:
        raise NotFoundError(f"{label} not found")
    if booking.tenant_id != get_tenant_id():
        raise ForbiddenError(f"{label} does not belong to this tenant")

    parties, warnings = resolve_booking_parties(db, booking)
    allocations = (
        db.query(ContainerStockAllocation)
        .filter(ContainerStockAllocation.booking_collection == collection,
                ContainerStockAllocation.booking_id == booking.id)
        .order_by(ContainerStockAllocation.created_at.asc())
        .all()
    )
    out = {
        "success": True,
        "booking": {
            "id": booking.id,
            "bookingCode": booking.booking_code,
            "customerReference": booking.customer_reference,
            "status": booking.status,
            **parties,
            "stockAllocations": [
                {"id": a.id, "containerDetailId": a.container_detail_id, "stage": a.stage,
                 "productLines": a.product_lines}
                for a in allocations
            ],
        },
    }
    if warnings:
        out["warnings"] = warnings
    return out


@router.get("/import-container-bookings/{booking_id}")
def get_import_booking(booking_id: str, db: Session = Depends(get_db)):
    return _booking_view(db, ImportContainerBooking, booking_id, "Import container booking",
                         BookingCollection.IMPORT.value)


@router.get("/export-container-bookings/{booking_id}")
def get_export_booking(booking_id: str, db: Session = Depends(get_db)):
    return _booking_view(db, ExportContainerBooking, booking_id, "Export container booking",
                         BookingCollection.EXPORT.value)
