from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from app.core.security import get_principal
from app.db.session import get_db
from services.wms.inventory_ops.pickup_service import (
    allocated_lpns,
    cancel_pickup,
    pick_container,
    pick_outbound_line,
)

router = APIRouter(tags=["pickups"])


class _In(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class OutboundPickupIn(_In):
    lpn_numbers: list[str] = Field(default_factory=list, alias="lpnNumbers")
    buffer_qty: float = Field(0, alias="bufferQty", ge=0)


class ContainerPickupItemIn(_In):
    allocation_id: str | None = Field(default=None, alias="allocationId")
    product_line_index: int | None = Field(default=None, alias="productLineIndex")
    lpn_ids: list[str] = Field(default_factory=list, alias="lpnIds")
    buffer_qty: float = Field(0, alias="bufferQty", ge=0)


class ContainerPickupIn(ContainerPickupItemIn):
    """Either a ``pickups`` array or the fields of a single pickup."""

    pickups: list[ContainerPickupItemIn] | None = None

    def to_items(self) -> list[dict]:
        if self.pickups:
            return [p.model_dump() for p in self.pickups]
        if self.product_line_index is not None or self.lpn_ids:
            return [self.model_dump(exclude={"pickups"})]
        return []


@router.post("/outbound-product-lines/{product_line_id}/pickup")
def pickup_outbound_line(product_line_id: str, body: OutboundPickupIn, db: Session = Depends(get_db),
                         p=Depends(get_principal)):
    return pick_outbound_line(db, product_line_id=product_line_id, lpn_numbers=body.lpn_numbers,
                              buffer_qty=body.buffer_qty, actor=p.actor)


@router.post("/export-container-bookings/{booking_id}/containers/{container_id}/pickup")
def pickup_container(booking_id: str, container_id: str, body: ContainerPickupIn, db: Session = Depends(get_db),
                     p=Depends(get_principal)):
    return pick_container(db, booking_id=booking_id, container_id=container_id, items=body.to_items(), actor=p.actor)


@router.get("/export-container-bookings/{booking_id}/containers/{container_id}/allocated-lpns")
def get_allocated_lpns(booking_id: str, container_id: str, db: Session = Depends(get_db)):
    return allocated_lpns(db, booking_id=booking_id, container_id=container_id)


@router.post("/pickup-stock/{pickup_id}/cancel")
def post_cancel_pickup(pickup_id: str, db: Session = Depends(get_db), p=Depends(get_principal)):
    return cancel_pickup(db, pickup_id, actor=p.actor)
