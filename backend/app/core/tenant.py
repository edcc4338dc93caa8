"""Tenant of the current request. Tenant-owned rows are stamped and filtered with it."""

from __future__ import annotations
import contextvars

DEFAULT_TENANT = "default"
TENANT_HEADER = "X-Tenant-Id"

_tenant: contextvars.ContextVar[str] = contextvars.ContextVar("tenant_id", default=DEFAULT_TENANT)


def set_tenant_id(tenant_id: str | None) -> contextvars.Token:
    return _tenant.set((tenant_id or "").strip() or DEFAULT_TENANT)


def reset_tenant_id(token: contextvars.Token) -> None:
    _tenant.reset(token)


def get_tenant_id() -> str:
    return _tenant.get()
