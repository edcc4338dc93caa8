"""
Container bookings and the stock allocations grouped under each container.

A ContainerStockAllocation keeps its product lines embedded as a JSON array
(one dict per line, addressed by index). Mutate a copy and reassign the list,
the column is not a mutable-tracking type.
"""

from __future__ import annotations

import enum

from sqlalchemy import String, Integer, JSON, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, HasTenant


class BookingCollection(str, enum.Enum):
    IMPORT = "import-container-bookings"
    EXPORT = "export-container-bookings"


class AllocationStage(str, enum.Enum):
    EXPECTED = "expected"
    RECEIVED = "received"
    PUT_AWAY = "put_away"
    ALLOCATED = "allocated"
    PICKED = "picked"
    DISPATCHED = "dispatched"


class _BookingPartyRefs:
    # Polymorphic references: id + collection tag, with address/contact hints
    # used when the id is missing.
    charge_to_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    charge_to_collection: Mapped[str | None] = mapped_column(String(32), nullable=True)
    charge_to_contact_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    charge_to_contact_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)

    from_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    from_collection: Mapped[str | None] = mapped_column(String(32), nullable=True)
    from_street: Mapped[str | None] = mapped_column(String(256), nullable=True)
    from_city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    from_state: Mapped[str | None] = mapped_column(String(64), nullable=True)
    from_postcode: Mapped[str | None] = mapped_column(String(16), nullable=True)

    to_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    to_collection: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_street: Mapped[str | None] = mapped_column(String(256), nullable=True)
    to_city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    to_state: Mapped[str | None] = mapped_column(String(64), nullable=True)
    to_postcode: Mapped[str | None] = mapped_column(String(16), nullable=True)


class ImportContainerBooking(Base, HasId, HasCreatedAt, HasTenant, _BookingPartyRefs):
    __tablename__ = "freight_import_container_booking"

    booking_code: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    customer_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(24), default="OPEN", nullable=False)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)


class ExportContainerBooking(Base, HasId, HasCreatedAt, HasTenant, _BookingPartyRefs):
    __tablename__ = "freight_export_container_booking"

    booking_code: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    customer_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(24), default="OPEN", nullable=False)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)


class ContainerDetail(Base, HasId, HasCreatedAt, HasTenant):
    __tablename__ = "freight_container_detail"

    booking_collection: Mapped[str] = mapped_column(String(32), nullable=False)  # BookingCollection
    booking_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    container_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    warehouse_id: Mapped[str | None] = mapped_column(ForeignKey("wms_warehouse.id"), nullable=True, index=True)


class ContainerStockAllocation(Base, HasId, HasCreatedAt, HasTenant):
    __tablename__ = "freight_container_stock_allocation"

    container_detail_id: Mapped[str] = mapped_column(ForeignKey("freight_container_detail.id"), nullable=False, index=True)
    booking_collection: Mapped[str] = mapped_column(String(32), nullable=False)
    booking_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    stage: Mapped[str] = mapped_column(String(24), default=AllocationStage.EXPECTED.value, nullable=False)

    # [{sku_id, batch_number, expected_qty, received_qty, lpn_qty, allocated_qty,
    #   allocated_weight, allocated_cubic_per_hu, plt_qty, lpns, location}]
    product_lines: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    version_id: Mapped[int] = mapped_column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version_id}


Index("ix_csa_booking", ContainerStockAllocation.booking_collection, ContainerStockAllocation.booking_id)
