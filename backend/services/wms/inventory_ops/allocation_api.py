from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from app.core.security import get_principal
from app.db.session import get_db
from services.wms.inventory_ops.allocation_service import (
    allocate_container_stock,
    allocate_outbound,
    available_stock,
    outbound_available_stock,
)

router = APIRouter(tags=["allocations"])


class _AllocationItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    batch_number: str | None = Field(default=None, alias="batchNumber")
    lpn_ids: list[str] | None = Field(default=None, alias="lpnIds")
    quantity: float | None = None


class ContainerAllocationItemIn(_AllocationItem):
    product_line_index: int | None = Field(default=None, alias="productLineIndex")


class OutboundAllocationItemIn(_AllocationItem):
    product_line_id: str | None = Field(default=None, alias="productLineId")


class ContainerAllocateIn(BaseModel):
    allocations: list[ContainerAllocationItemIn] = Field(default_factory=list)


class OutboundAllocateIn(BaseModel):
    allocations: list[OutboundAllocationItemIn] = Field(default_factory=list)


@router.post("/export-container-bookings/{booking_id}/stock-allocations/{allocation_id}/allocate")
def allocate_container(
    booking_id: str,
    allocation_id: str,
    body: ContainerAllocateIn,
    db: Session = Depends(get_db),
    p=Depends(get_principal),
):
    return allocate_container_stock(
        db,
        booking_id=booking_id,
        allocation_id=allocation_id,
        items=[a.model_dump() for a in body.allocations],
        actor=p.actor,
    )


@router.get("/export-container-bookings/{booking_id}/stock-allocations/{allocation_id}/available-stock")
def get_available_stock(
    booking_id: str,
    allocation_id: str,
    product_line_index: int = Query(..., alias="productLineIndex"),
    batch_number: str | None = Query(default=None, alias="batchNumber"),
    db: Session = Depends(get_db),
):
    return available_stock(
        db,
        booking_id=booking_id,
        allocation_id=allocation_id,
        product_line_index=product_line_index,
        batch_number=batch_number,
    )


@router.post("/outbound-inventory/{job_id}/allocate")
def allocate_outbound_job(job_id: str, body: OutboundAllocateIn, db: Session = Depends(get_db), p=Depends(get_principal)):
    return allocate_outbound(db, job_id=job_id, items=[a.model_dump() for a in body.allocations], actor=p.actor)


@router.get("/outbound-inventory/{job_id}/available-stock")
def get_outbound_available_stock(job_id: str, db: Session = Depends(get_db)):
    return outbound_available_stock(db, job_id=job_id)
