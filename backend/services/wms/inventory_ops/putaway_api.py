from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from app.core.security import get_principal
from app.db.session import get_db
from services.wms.inventory_ops.putaway_service import (
    list_put_away,
    put_away_container,
    put_away_inbound,
    receive_inbound,
)
from services.wms.inventory_ops.unit_loads import generate_lpns

router = APIRouter(tags=["put-away"])


# ---- Schemas ----
class _In(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class InboundPutAwayRecordIn(_In):
    product_line_id: str = Field(..., alias="productLineId")
    sku_id: str | None = Field(default=None, alias="skuId")
    location: str | None = None
    hu_qty: float | None = Field(default=None, alias="huQty")
    lpn_number: str | None = Field(default=None, alias="lpnNumber", max_length=64)
    pallet_index: int | None = Field(default=None, alias="palletIndex", ge=1)


class InboundBulkLocationIn(_In):
    product_line_id: str = Field(..., alias="productLineId")
    location: str


class InboundPutAwayIn(_In):
    job_id: str = Field(..., alias="jobId")
    warehouse_id: str = Field(..., alias="warehouseId")
    put_away_records: list[InboundPutAwayRecordIn] = Field(default_factory=list, alias="putAwayRecords")
    bulk_locations: list[InboundBulkLocationIn] = Field(default_factory=list, alias="bulkLocations")


class ContainerPutAwayRecordIn(_In):
    product_line_index: int = Field(0, alias="productLineIndex", ge=0)
    allocation_id: str | None = Field(default=None, alias="allocationId")
    sku_id: str | None = Field(default=None, alias="skuId")
    location: str | None = None
    hu_qty: float | None = Field(default=None, alias="huQty")
    lpn_number: str | None = Field(default=None, alias="lpnNumber", max_length=64)
    pallet_index: int | None = Field(default=None, alias="palletIndex", ge=1)


class ContainerBulkLocationIn(_In):
    product_line_index: int = Field(0, alias="productLineIndex", ge=0)
    allocation_id: str | None = Field(default=None, alias="allocationId")
    sku_id: str | None = Field(default=None, alias="skuId")
    location: str


class ContainerPutAwayIn(_In):
    warehouse_id: str = Field(..., alias="warehouseId")
    put_away_records: list[ContainerPutAwayRecordIn] = Field(default_factory=list, alias="putAwayRecords")
    bulk_locations: list[ContainerBulkLocationIn] = Field(default_factory=list, alias="bulkLocations")


class GenerateLpnsIn(BaseModel):
    count: int


class ReceivedLineIn(_In):
    product_line_id: str = Field(..., alias="productLineId")
    received_qty: int = Field(..., alias="receivedQty")
    received_weight: float | None = Field(default=None, alias="receivedWeight")
    lpn_qty: str | None = Field(default=None, alias="lpnQty")


class ReceiveIn(_In):
    product_lines: list[ReceivedLineIn] = Field(default_factory=list, alias="productLines")


# ---- Routes ----
@router.post("/put-away-stock")
def create_put_away(body: InboundPutAwayIn, db: Session = Depends(get_db), p=Depends(get_principal)):
    return put_away_inbound(
        db,
        job_id=body.job_id,
        warehouse_id=body.warehouse_id,
        records=[r.model_dump() for r in body.put_away_records],
        bulk_locations=[b.model_dump() for b in body.bulk_locations],
        actor=p.actor,
    )


@router.get("/put-away-stock")
def get_put_away(
    job_id: str | None = Query(default=None, alias="jobId"),
    product_line_id: str | None = Query(default=None, alias="productLineId"),
    allocation_id: str | None = Query(default=None, alias="allocationId"),
    db: Session = Depends(get_db),
):
    records = list_put_away(db, job_id=job_id, product_line_id=product_line_id, allocation_id=allocation_id)
    return {"success": True, "records": records, "count": len(records)}


@router.post("/put-away-stock/generate-lpns")
def post_generate_lpns(body: GenerateLpnsIn, db: Session = Depends(get_db)):
    return {"success": True, "lpns": generate_lpns(db, body.count)}


@router.post("/inbound-inventory/{job_id}/receive")
def receive(job_id: str, body: ReceiveIn, db: Session = Depends(get_db), p=Depends(get_principal)):
    return receive_inbound(db, job_id=job_id, lines=[ln.model_dump() for ln in body.product_lines], actor=p.actor)


@router.post("/import-container-bookings/{booking_id}/containers/{container_id}/put-away")
def create_container_put_away(
    booking_id: str,
    container_id: str,
    body: ContainerPutAwayIn,
    db: Session = Depends(get_db),
    p=Depends(get_principal),
):
    return put_away_container(
        db,
        booking_id=booking_id,
        container_id=container_id,
        warehouse_id=body.warehouse_id,
        records=[r.model_dump() for r in body.put_away_records],
        bulk_locations=[b.model_dump() for b in body.bulk_locations],
        actor=p.actor,
    )
