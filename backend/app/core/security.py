from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt, JWTError

from app.core.config import JWT_SECRET, JWT_ALG
from app.core.tenant import get_tenant_id

bearer = HTTPBearer(auto_error=False)


@dataclass
class Principal:
    user_id: str | None = None
    username: str = "anonymous"
    tenant_id: str = "default"

    @property
    def actor(self) -> str:
        """Name recorded in allocated_by and the audit trail."""
        return self.user_id or self.username


def get_principal(creds: HTTPAuthorizationCredentials | None = Depends(bearer)) -> Principal:
    # Token issuance lives outside this service; an absent or bad token is anonymous.
    if not creds or not creds.credentials:
        return Principal(user_id=None, username="anonymous", tenant_id=get_tenant_id())

    try:
        payload = jwt.decode(creds.credentials, JWT_SECRET, algorithms=[JWT_ALG], options={"verify_aud": False})
    except JWTError:
        return Principal(user_id=None, username="anonymous", tenant_id=get_tenant_id())

    return Principal(
        user_id=payload.get("sub"),
        username=payload.get("email") or payload.get("name") or "unknown",
        tenant_id=payload.get("tid") or get_tenant_id(),
    )
