"""
Party collections a booking can point at through a polymorphic reference.
Customers and paying customers keep a flat address; empty parks and wharves
keep a nested address document.
"""

from __future__ import annotations

from sqlalchemy import String, JSON
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt, HasTenant


class _CustomerFields:
    customer_name: Mapped[str] = mapped_column(String(256), nullable=False)
    contact_name: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    contact_phone: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    street: Mapped[str | None] = mapped_column(String(256), nullable=True, index=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    state: Mapped[str | None] = mapped_column(String(64), nullable=True)
    postcode: Mapped[str | None] = mapped_column(String(16), nullable=True)


class Customer(Base, HasId, HasCreatedAt, HasTenant, _CustomerFields):
    __tablename__ = "party_customer"


class PayingCustomer(Base, HasId, HasCreatedAt, HasTenant, _CustomerFields):
    __tablename__ = "party_paying_customer"


class EmptyPark(Base, HasId, HasCreatedAt, HasTenant):
    __tablename__ = "party_empty_park"

    name: Mapped[str] = mapped_column(String(256), nullable=False)
    address: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)  # {street, city, state, postcode}


class Wharf(Base, HasId, HasCreatedAt, HasTenant):
    __tablename__ = "party_wharf"

    name: Mapped[str] = mapped_column(String(256), nullable=False)
    address: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
