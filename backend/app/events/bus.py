from __future__ import annotations

from sqlalchemy.orm import Session

from app.events.outbox import OutboxEvent

# Topics
STOCK_PUT_AWAY = "StockPutAway"
STOCK_ALLOCATED = "StockAllocated"
ALLOCATION_STATUS_CHANGED = "AllocationStatusChanged"
PUT_AWAY_RECORD_DELETED = "PutAwayRecordDeleted"
PICKUP_RECORDED = "PickupRecorded"
PICKUP_CANCELLED = "PickupCancelled"


def publish(db: Session, topic: str, payload: dict) -> OutboxEvent:
    """Publish an event by writing to the transactional outbox.

    The caller owns the transaction: the event commits (or rolls back) with it.
    """
    evt = OutboxEvent(topic=topic, payload=payload or {}, delivered=False)
    db.add(evt)
    return evt
