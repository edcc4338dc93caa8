from __future__ import annotations

from sqlalchemy import Boolean, Index, String, JSON
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.models.common import HasCreatedAt, HasId, HasTenant


class OutboxEvent(Base, HasId, HasCreatedAt, HasTenant):
    """Transactional outbox.

    Rows are added in the same transaction as the stock change they describe,
    so an event exists if and only if the change was committed. Delivery to
    downstream consumers is someone else's job; they read undelivered rows.
    """

    __tablename__ = "outbox_event"

    topic: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    delivered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


Index("ix_outbox_topic_created", OutboxEvent.topic, OutboxEvent.created_at)
