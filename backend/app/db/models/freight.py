from __future__ import annotations

from datetime import datetime

from sqlalchemy import String, DateTime, Integer, Numeric, JSON, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, HasTenant


class InboundInventory(Base, HasId, HasCreatedAt, HasTenant):
    __tablename__ = "freight_inbound_inventory"

    job_code: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    warehouse_id: Mapped[str | None] = mapped_column(ForeignKey("wms_warehouse.id"), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(24), default="OPEN", nullable=False)  # OPEN|RECEIVED|PUT_AWAY
    completed_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class InboundProductLine(Base, HasId, HasCreatedAt):
    __tablename__ = "freight_inbound_product_line"

    inbound_inventory_id: Mapped[str] = mapped_column(ForeignKey("freight_inbound_inventory.id"), nullable=False, index=True)
    sku_id: Mapped[str | None] = mapped_column(ForeignKey("wms_sku.id"), nullable=True, index=True)
    batch_number: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    expected_qty: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    received_qty: Mapped[int | None] = mapped_column(Integer, nullable=True)
    lpn_qty: Mapped[str | None] = mapped_column(String(32), nullable=True)  # HUs per pallet, as captured on the job
    expected_weight: Mapped[float | None] = mapped_column(Numeric(18, 6, asdecimal=False), nullable=True)
    received_weight: Mapped[float | None] = mapped_column(Numeric(18, 6, asdecimal=False), nullable=True)
    received_cubic_per_hu: Mapped[float | None] = mapped_column(Numeric(18, 6, asdecimal=False), nullable=True)
    expiry_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set when a single pallet was re-batched onto its own copy of this line
    split_from_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)


Index("ix_inbound_line_batch_sku", InboundProductLine.batch_number, InboundProductLine.sku_id)


class OutboundInventory(Base, HasId, HasCreatedAt, HasTenant):
    __tablename__ = "freight_outbound_inventory"

    job_code: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    warehouse_id: Mapped[str | None] = mapped_column(ForeignKey("wms_warehouse.id"), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(24), default="OPEN", nullable=False)


class OutboundProductLine(Base, HasId, HasCreatedAt):
    __tablename__ = "freight_outbound_product_line"

    outbound_inventory_id: Mapped[str] = mapped_column(ForeignKey("freight_outbound_inventory.id"), nullable=False, index=True)
    sku_id: Mapped[str | None] = mapped_column(ForeignKey("wms_sku.id"), nullable=True, index=True)
    batch_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    expected_qty: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Cumulative allocation state, only ever added to by allocation calls
    allocated_qty: Mapped[float] = mapped_column(Numeric(18, 6, asdecimal=False), default=0, nullable=False)
    allocated_weight: Mapped[float | None] = mapped_column(Numeric(18, 6, asdecimal=False), nullable=True)
    allocated_cubic_per_hu: Mapped[float | None] = mapped_column(Numeric(18, 6, asdecimal=False), nullable=True)
    plt_qty: Mapped[float | None] = mapped_column(Numeric(18, 6, asdecimal=False), nullable=True)
    lpns: Mapped[list] = mapped_column(JSON, default=list, nullable=False)  # LPN numbers, no duplicates
    location: Mapped[str | None] = mapped_column(String(128), nullable=True)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version_id}

