"""
Unit-load decomposition and LPN numbering.

A received quantity is split into whole pallets of ``unit_capacity``; every
pallet but the last is full and the last carries the remainder, so the pallet
quantities always sum back to the received quantity.
"""

from __future__ import annotations

import logging
import math
import secrets
import string
from decimal import Decimal

from sqlalchemy.orm import Session

from app.core.config import LPN_PREFIX, LPN_STEM_LENGTH, LPN_MAX_ATTEMPTS
from app.core.tenant import get_tenant_id
from app.db.models.stock import PutAwayStock
from services.errors import ConflictError, ValidationError

logger = logging.getLogger(__name__)

_STEM_ALPHABET = string.ascii_uppercase + string.digits


def dec(x) -> Decimal:
    """Exact stored quantity. Floats go through str so 0.1 stays 0.1."""
    return Decimal(str(x))


def parse_capacity(value) -> float:
    """Units per pallet as captured on a line or SKU ("40", 40, None...). Anything unusable is 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        cap = float(str(value).strip())
    except ValueError:
        return 0.0
    if math.isnan(cap) or math.isinf(cap) or cap <= 0:
        return 0.0
    return cap


def unit_count(received_qty, unit_capacity) -> int:
    received = float(received_qty or 0)
    cap = parse_capacity(unit_capacity)
    if received <= 0 or cap <= 0:
        return 0
    return math.ceil(received / cap)


def unit_qty(received_qty, unit_capacity, unit_index: int, count: int) -> float:
    received = float(received_qty or 0)
    cap = parse_capacity(unit_capacity)
    if count <= 0 or unit_index < 0 or unit_index >= count:
        return 0.0
    if unit_index < count - 1:
        return cap
    return max(0.0, received - cap * (count - 1))


def decompose(received_qty, unit_capacity) -> list[float]:
    n = unit_count(received_qty, unit_capacity)
    return [unit_qty(received_qty, unit_capacity, i, n) for i in range(n)]


def _draw_stem() -> str:
    return "".join(secrets.choice(_STEM_ALPHABET) for _ in range(LPN_STEM_LENGTH))


def generate_lpns(db: Session, count: int) -> list[str]:
    """Return ``count`` new LPN numbers numbered contiguously under one random stem.

    The stem is re-drawn while any LPN of the tenant already starts with it.
    The unique (tenant_id, lpn_number) constraint is the final guard.
    """
    if count is None or count < 1:
        raise ValidationError("Count is required and must be at least 1")

    tenant_id = get_tenant_id()
    width = max(3, len(str(count)))
    for attempt in range(LPN_MAX_ATTEMPTS):
        prefix = f"{LPN_PREFIX}{_draw_stem()}"
        taken = (
            db.query(PutAwayStock.id)
            .filter(PutAwayStock.tenant_id == tenant_id, PutAwayStock.lpn_number.like(f"{prefix}%"))
            .first()
        )
        if taken is None:
            return [f"{prefix}{seq:0{width}d}" for seq in range(1, count + 1)]
        logger.info("LPN stem %s already in use for tenant %s (attempt %d)", prefix, tenant_id, attempt + 1)

    raise ConflictError(f"Could not allocate a unique LPN stem after {LPN_MAX_ATTEMPTS} attempts")
