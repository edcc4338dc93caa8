from __future__ import annotations

from sqlalchemy import String, Numeric, JSON, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, HasTenant


class Warehouse(Base, HasId, HasCreatedAt, HasTenant):
    __tablename__ = "wms_warehouse"

    name: Mapped[str] = mapped_column(String(128), nullable=False)
    code: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)


class Sku(Base, HasId, HasCreatedAt, HasTenant):
    __tablename__ = "wms_sku"

    sku_code: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(String(512), nullable=True)

    # Handling unit (HU) metrics used for allocation weight / cubic / pallet equivalents
    weight_per_hu_kg: Mapped[float | None] = mapped_column(Numeric(18, 6, asdecimal=False), nullable=True)
    length_per_hu_mm: Mapped[float | None] = mapped_column(Numeric(18, 6, asdecimal=False), nullable=True)
    width_per_hu_mm: Mapped[float | None] = mapped_column(Numeric(18, 6, asdecimal=False), nullable=True)
    height_per_hu_mm: Mapped[float | None] = mapped_column(Numeric(18, 6, asdecimal=False), nullable=True)
    hu_per_su: Mapped[float | None] = mapped_column(Numeric(18, 6, asdecimal=False), nullable=True)  # HUs per storage unit (pallet)
    lpn_qty: Mapped[str | None] = mapped_column(String(32), nullable=True)  # default HUs per LPN


Index("ix_sku_tenant_code", Sku.tenant_id, Sku.sku_code)
