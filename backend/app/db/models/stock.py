"""
Unit-load (pallet) records and the pickup ledger built from them.

One PutAwayStock row is one physical pallet identified by its LPN. It points
back at its source product line (an inbound job line, or an indexed line
embedded in a container stock allocation) and, while allocated or picked,
forward at the demand it is committed to.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DateTime, Integer, Numeric, JSON, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, HasTenant, HasLifecycle


class AllocationStatus(str, enum.Enum):
    AVAILABLE = "available"
    ALLOCATED = "allocated"
    PICKED = "picked"


class PickupStatus(str, enum.Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PutAwayStock(Base, HasId, HasCreatedAt, HasTenant, HasLifecycle):
    __tablename__ = "wms_put_away_stock"
    __table_args__ = (UniqueConstraint("tenant_id", "lpn_number", name="uq_put_away_lpn"),)

    lpn_number: Mapped[str] = mapped_column(String(64), nullable=False)
    sku_id: Mapped[str | None] = mapped_column(ForeignKey("wms_sku.id"), nullable=True, index=True)
    warehouse_id: Mapped[str | None] = mapped_column(ForeignKey("wms_warehouse.id"), nullable=True, index=True)
    location: Mapped[str] = mapped_column(String(128), nullable=False)
    hu_qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)

    # Source: inbound job line, or (allocation, line index) for container receipts
    inbound_inventory_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    inbound_product_line_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    source_allocation_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    source_line_index: Mapped[int | None] = mapped_column(Integer, nullable=True)

    allocation_status: Mapped[str] = mapped_column(String(24), default=AllocationStatus.AVAILABLE.value, nullable=False, index=True)

    # Demand linkage: outbound job line, or container allocation + container
    outbound_inventory_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    outbound_product_line_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    container_stock_allocation_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    container_detail_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    allocated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    allocated_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    @property
    def has_outbound_linkage(self) -> bool:
        return bool(self.outbound_product_line_id or self.container_stock_allocation_id)

    def clear_linkage(self) -> None:
        self.outbound_inventory_id = None
        self.outbound_product_line_id = None
        self.container_stock_allocation_id = None
        self.container_detail_id = None
        self.allocated_at = None
        self.allocated_by = None


Index("ix_put_away_pool", PutAwayStock.tenant_id, PutAwayStock.sku_id, PutAwayStock.allocation_status, PutAwayStock.created_at)


class PickupStock(Base, HasId, HasCreatedAt, HasTenant):
    __tablename__ = "wms_pickup_stock"

    outbound_inventory_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    outbound_product_line_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    container_stock_allocation_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    container_detail_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    picked_up_lpns: Mapped[list] = mapped_column(JSON, default=list, nullable=False)  # [{lpn_id, lpn_number, hu_qty, location}]
    picked_up_qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    buffer_qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    final_picked_up_qty: Mapped[Decimal] = mapped_column(Numeric(18, 6), default=0, nullable=False)
    pickup_status: Mapped[str] = mapped_column(String(24), default=PickupStatus.COMPLETED.value, nullable=False, index=True)
