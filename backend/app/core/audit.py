from __future__ import annotations

import json
from typing import Any

from sqlalchemy.orm import Session

from app.db.models.security_audit import AuditLog
from app.core.tenant import get_tenant_id


def audit(
    db: Session,
    *,
    actor: str,
    action: str,
    entity_type: str,
    entity_id: str | None = None,
    payload: dict | None = None,
    tenant_id: str | None = None,
) -> AuditLog:
    """Add an append-only audit record to the caller's transaction.

    Keep payload JSON-serializable.
    """
    tenant_id = tenant_id or get_tenant_id()
    safe_payload: dict[str, Any] = payload or {}
    try:
        # Ensure it can roundtrip to JSON (avoids runtime errors on commit)
        json.dumps(safe_payload)
    except (TypeError, ValueError):
        safe_payload = json.loads(json.dumps(safe_payload, default=str))

    row = AuditLog(
        tenant_id=tenant_id,
        actor=actor,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=safe_payload,
    )
    db.add(row)
    return row
