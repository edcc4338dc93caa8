"""
Test configuration and fixtures.

Runs the app against an in-memory SQLite database shared by the test session
and the request handlers.
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTO_CREATE_SCHEMA"] = "false"

from datetime import datetime, timedelta, timezone
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from main import app
from app.core.tenant import reset_tenant_id, set_tenant_id
from app.db.base import Base
from app.db.session import get_db
from app.db.models.containers import (
    BookingCollection,
    ContainerDetail,
    ContainerStockAllocation,
    ExportContainerBooking,
    ImportContainerBooking,
)
from app.db.models.freight import InboundInventory, InboundProductLine, OutboundInventory, OutboundProductLine
from app.db.models.stock import PutAwayStock
from app.db.models.warehouse import Sku, Warehouse

TENANT = "acme"
HEADERS = {"X-Tenant-Id": TENANT}

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

T0 = datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def tenant() -> Generator[str, None, None]:
    token = set_tenant_id(TENANT)
    yield TENANT
    reset_tenant_id(token)


@pytest.fixture(scope="function")
def db_session(tenant) -> Generator[Session, None, None]:
    """Fresh schema and session for each test"""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app, headers=HEADERS)
    app.dependency_overrides.clear()


class Builder:
    """Creates warehouses, SKUs, jobs, bookings and pallets for a test."""

    def __init__(self, db: Session):
        self.db = db
        self._tick = 0

    def _at(self, minutes: int | None = None) -> datetime:
        if minutes is None:
            self._tick += 1
            minutes = self._tick
        return T0 + timedelta(minutes=minutes)

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        return obj

    def warehouse(self, name: str = "Main", tenant_id: str = TENANT) -> Warehouse:
        return self._save(Warehouse(name=name, tenant_id=tenant_id, meta={}))

    def sku(self, code: str = "SKU-1", *, lpn_qty: str | None = "40", weight: float | None = 10.0,
            hu_per_su: float | None = 40.0, dims: tuple | None = (1000, 1000, 1000), tenant_id: str = TENANT) -> Sku:
        length, width, height = dims or (None, None, None)
        return self._save(Sku(
            sku_code=code, tenant_id=tenant_id, lpn_qty=lpn_qty, weight_per_hu_kg=weight, hu_per_su=hu_per_su,
            length_per_hu_mm=length, width_per_hu_mm=width, height_per_hu_mm=height,
        ))

    def inbound_job(self, warehouse: Warehouse | None, tenant_id: str = TENANT) -> InboundInventory:
        return self._save(InboundInventory(
            job_code=f"IN-{self._tick}", tenant_id=tenant_id, warehouse_id=warehouse.id if warehouse else None,
        ))

    def inbound_line(self, job: InboundInventory, sku: Sku, *, batch: str = "B1", expected: int = 100,
                     received: int | None = 100, lpn_qty: str | None = "40") -> InboundProductLine:
        return self._save(InboundProductLine(
            inbound_inventory_id=job.id, sku_id=sku.id, batch_number=batch, expected_qty=expected,
            received_qty=received, lpn_qty=lpn_qty, meta={},
        ))

    def outbound_job(self, warehouse: Warehouse | None, tenant_id: str = TENANT) -> OutboundInventory:
        return self._save(OutboundInventory(
            job_code=f"OUT-{self._tick}", tenant_id=tenant_id, warehouse_id=warehouse.id if warehouse else None,
        ))

    def outbound_line(self, job: OutboundInventory, sku: Sku, *, batch: str = "B1",
                      expected: int = 100) -> OutboundProductLine:
        return self._save(OutboundProductLine(
            outbound_inventory_id=job.id, sku_id=sku.id, batch_number=batch, expected_qty=expected,
            allocated_qty=0, lpns=[],
        ))

    def pallet(self, sku: Sku, warehouse: Warehouse, *, hu_qty: float, lpn: str, line: InboundProductLine | None = None,
               location: str = "A-01", minutes: int | None = None, status: str = "available",
               tenant_id: str = TENANT, **extra) -> PutAwayStock:
        return self._save(PutAwayStock(
            lpn_number=lpn, sku_id=sku.id, warehouse_id=warehouse.id, location=location, hu_qty=hu_qty,
            inbound_inventory_id=line.inbound_inventory_id if line else None,
            inbound_product_line_id=line.id if line else None,
            allocation_status=status, tenant_id=tenant_id, created_at=self._at(minutes), **extra,
        ))

    def import_container(self, warehouse: Warehouse | None, tenant_id: str = TENANT, **booking_fields):
        booking = self._save(ImportContainerBooking(booking_code="IMP-1", tenant_id=tenant_id, meta={},
                                                    **booking_fields))
        container = self._save(ContainerDetail(
            booking_collection=BookingCollection.IMPORT.value, booking_id=booking.id, tenant_id=tenant_id,
            container_number="MSCU1234567", warehouse_id=warehouse.id if warehouse else None,
        ))
        return booking, container

    def export_container(self, warehouse: Warehouse | None, tenant_id: str = TENANT, **booking_fields):
        booking = self._save(ExportContainerBooking(booking_code="EXP-1", tenant_id=tenant_id, meta={},
                                                    **booking_fields))
        container = self._save(ContainerDetail(
            booking_collection=BookingCollection.EXPORT.value, booking_id=booking.id, tenant_id=tenant_id,
            container_number="TGHU7654321", warehouse_id=warehouse.id if warehouse else None,
        ))
        return booking, container

    def stock_allocation(self, booking, container: ContainerDetail, product_lines: list[dict],
                         stage: str = "expected") -> ContainerStockAllocation:
        return self._save(ContainerStockAllocation(
            container_detail_id=container.id, booking_collection=container.booking_collection,
            booking_id=booking.id, tenant_id=container.tenant_id, stage=stage, product_lines=product_lines,
        ))


@pytest.fixture(scope="function")
def build(db_session: Session) -> Builder:
    return Builder(db_session)
