from __future__ import annotations
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from app.core.tenant import TENANT_HEADER, reset_tenant_id, set_tenant_id


class TenantMiddleware(BaseHTTPMiddleware):
    """Binds the caller's tenant for the lifetime of one request."""

    async def dispatch(self, request: Request, call_next):
        token = set_tenant_id(request.headers.get(TENANT_HEADER))
        try:
            return await call_next(request)
        finally:
            reset_tenant_id(token)
