from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from app.core.security import get_principal
from app.db.session import get_db
from app.db.models.freight import InboundProductLine
from services.wms.inventory_ops.putaway_service import record_dict
from services.wms.inventory_ops.status_service import delete_record, get_record, update_record

router = APIRouter(prefix="/inventory/records", tags=["inventory"])


class RecordUpdateIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    location: str | None = Field(default=None, max_length=128)
    hu_qty: float | None = Field(default=None, alias="huQty")
    allocation_status: str | None = Field(default=None, alias="allocationStatus")
    outbound_product_line_id: str | None = Field(default=None, alias="outboundProductLineId")
    outbound_inventory_id: str | None = Field(default=None, alias="outboundInventoryId")
    batch_number: str | None = Field(default=None, alias="batchNumber", max_length=64)


@router.get("/{record_id}")
def read_record(record_id: str, db: Session = Depends(get_db)):
    rec = get_record(db, record_id)
    out = record_dict(rec)
    if rec.inbound_product_line_id:
        line = db.query(InboundProductLine).filter(InboundProductLine.id == rec.inbound_product_line_id).first()
        out["batchNumber"] = line.batch_number if line else None
    return {"success": True, "record": out}


@router.put("/{record_id}")
def edit_record(record_id: str, body: RecordUpdateIn, db: Session = Depends(get_db), p=Depends(get_principal)):
    return update_record(db, record_id, body.model_dump(), actor=p.actor)


@router.delete("/{record_id}")
def remove_record(record_id: str, db: Session = Depends(get_db), p=Depends(get_principal)):
    return delete_record(db, record_id, actor=p.actor)
