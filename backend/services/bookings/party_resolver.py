"""
Resolution of polymorphic party references on bookings.

A booking points at its charge-to / from / to party with an id plus a
collection tag, because the target can live in any of several collections.
The tag is never guessed: an id without a tag is refused. When the id is
missing, the tagged collection is searched by the address (or, for charge-to,
contact) hints stored on the booking, and the oldest match wins.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from app.core.tenant import get_tenant_id
from app.db.models.parties import Customer, EmptyPark, PayingCustomer, Wharf
from services.errors import PartyResolutionError

logger = logging.getLogger(__name__)


class PartyCollection(str, enum.Enum):
    CUSTOMERS = "customers"
    PAYING_CUSTOMERS = "paying-customers"
    EMPTY_PARKS = "empty-parks"
    WHARVES = "wharves"


class MatchBy(str, enum.Enum):
    ADDRESS = "address"
    CONTACT = "contact"


_MODELS = {
    PartyCollection.CUSTOMERS: Customer,
    PartyCollection.PAYING_CUSTOMERS: PayingCustomer,
    PartyCollection.EMPTY_PARKS: EmptyPark,
    PartyCollection.WHARVES: Wharf,
}

# Collections whose address is a nested document rather than flat columns
_NESTED_ADDRESS = {PartyCollection.EMPTY_PARKS, PartyCollection.WHARVES}


@dataclass
class PartyRef:
    id: str | None = None
    collection: str | None = None
    populated: dict | None = None


@dataclass
class AddressHints:
    street: str | None = None
    city: str | None = None
    state: str | None = None
    postcode: str | None = None
    contact_name: str | None = None
    contact_phone: str | None = None


def _collection(tag: str) -> PartyCollection:
    try:
        return PartyCollection(tag)
    except ValueError:
        raise PartyResolutionError(f"Unknown party collection '{tag}'", payload={"collection": tag}) from None


def party_dict(row, collection: PartyCollection) -> dict:
    if collection in _NESTED_ADDRESS:
        return {"id": row.id, "collection": collection.value, "name": row.name, "address": dict(row.address or {})}
    return {
        "id": row.id,
        "collection": collection.value,
        "customer_name": row.customer_name,
        "contact_name": row.contact_name,
        "contact_phone": row.contact_phone,
        "email": row.email,
        "street": row.street,
        "city": row.city,
        "state": row.state,
        "postcode": row.postcode,
    }


def _search_criteria(model, collection: PartyCollection, hints: AddressHints, match: MatchBy) -> list:
    if match == MatchBy.CONTACT:
        if collection in _NESTED_ADDRESS:
            return []
        either = []
        if hints.contact_name:
            either.append(model.contact_name == hints.contact_name)
        if hints.contact_phone:
            either.append(model.contact_phone == hints.contact_phone)
        return [or_(*either)] if either else []

    criteria = []
    for field in ("street", "city"):
        value = getattr(hints, field)
        if not value:
            continue
        if collection in _NESTED_ADDRESS:
            criteria.append(model.address[field].as_string() == value)
        else:
            criteria.append(getattr(model, field) == value)
    return [and_(*criteria)] if criteria else []


def resolve_party(db: Session, ref: PartyRef, hints: AddressHints | None = None,
                  match: MatchBy = MatchBy.ADDRESS) -> dict | None:
    """Return the referenced party as a dict tagged with its collection, or None."""
    populated = ref.populated or {}
    if populated.get("name") or populated.get("customer_name"):
        return {**populated, "collection": populated.get("collection") or ref.collection}

    if ref.id:
        if not ref.collection:
            raise PartyResolutionError(
                f"Party reference {ref.id} has no collection tag", payload={"id": ref.id}
            )
        collection = _collection(ref.collection)
        model = _MODELS[collection]
        row = db.query(model).filter(model.id == ref.id, model.tenant_id == get_tenant_id()).first()
        if row is None:
            logger.warning("Party %s not found in %s", ref.id, collection.value)
            return None
        return party_dict(row, collection)

    if not ref.collection:
        return None
    collection = _collection(ref.collection)
    model = _MODELS[collection]
    criteria = _search_criteria(model, collection, hints or AddressHints(), match)
    if not criteria:
        return None
    row = (
        db.query(model)
        .filter(model.tenant_id == get_tenant_id(), *criteria)
        .order_by(model.created_at.asc(), model.id.asc())
        .first()
    )
    if row is None:
        logger.info("No %s matched %s hints %s", collection.value, match.value, hints)
        return None
    return party_dict(row, collection)


def resolve_booking_parties(db: Session, booking) -> tuple[dict, list[dict]]:
    """Resolve charge-to, from and to on a booking. Failures become warnings."""
    refs = {
        "chargeTo": (
            PartyRef(booking.charge_to_id, booking.charge_to_collection),
            AddressHints(contact_name=booking.charge_to_contact_name, contact_phone=booking.charge_to_contact_phone),
            MatchBy.CONTACT,
        ),
        "from": (
            PartyRef(booking.from_id, booking.from_collection),
            AddressHints(street=booking.from_street, city=booking.from_city,
                         state=booking.from_state, postcode=booking.from_postcode),
            MatchBy.ADDRESS,
        ),
        "to": (
            PartyRef(booking.to_id, booking.to_collection),
            AddressHints(street=booking.to_street, city=booking.to_city,
                         state=booking.to_state, postcode=booking.to_postcode),
            MatchBy.ADDRESS,
        ),
    }
    resolved: dict = {}
    warnings: list[dict] = []
    for field, (ref, hints, match) in refs.items():
        try:
            resolved[field] = resolve_party(db, ref, hints, match)
        except PartyResolutionError as e:
            logger.warning("Booking %s: could not resolve %s: %s", booking.id, field, e.message)
            resolved[field] = None
            warnings.append({"field": field, "message": e.message})
    return resolved, warnings
