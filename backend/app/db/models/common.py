from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from app.core.tenant import get_tenant_id


def uuid4_str() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HasId:
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=uuid4_str)


class HasCreatedAt:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)


class HasTenant:
    tenant_id: Mapped[str] = mapped_column(String(64), default=get_tenant_id, index=True, nullable=False)


class RecordLifecycle(str, enum.Enum):
    ACTIVE = "active"
    DELETED = "deleted"


class HasLifecycle:
    """Soft delete as a lifecycle state. Rows are never physically removed."""

    lifecycle: Mapped[str] = mapped_column(String(16), default=RecordLifecycle.ACTIVE.value, nullable=False, index=True)

    @classmethod
    def active(cls):
        return cls.lifecycle == RecordLifecycle.ACTIVE.value

    @property
    def is_deleted(self) -> bool:
        return self.lifecycle == RecordLifecycle.DELETED.value

    def soft_delete(self) -> None:
        self.lifecycle = RecordLifecycle.DELETED.value
