"""Call-outcome recording for single addresses."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.orm import Session

from mapper.db.enums import AddressStatus
from mapper.db.models import Address

logger = logging.getLogger(__name__)


class AddressServiceError(Exception):
    """Base exception for address service errors."""

    pass


class AddressNotFoundError(AddressServiceError):
    """Address not found."""

    pass


class InvalidStatusError(AddressServiceError):
    """Unknown address status."""

    pass


_UNSET = object()


def get_address(db: Session, address_id: UUID, congregation_id: UUID | None = None) -> Address:
    address = db.get(Address, address_id)
    if not address:
        raise AddressNotFoundError(f"Address {address_id} not found")
    if congregation_id is not None and address.congregation_id != congregation_id:
        raise AddressNotFoundError(f"Address {address_id} not found")
    return address


def record_outcome(
    db: Session,
    address_id: UUID,
    status: str,
    notes=_UNSET,
    acting_user: str | None = None,
    congregation_id: UUID | None = None,
    now: datetime | None = None,
) -> Address:
    """
    Record the outcome of a call at an address.

    - not_home increments the try counter
    - do_not_call stamps dnc_time
    - a changed notes value stamps who changed it and when

    Every transition is allowed. Flushes; the caller commits and refreshes
    the map aggregates.
    """
    valid = {s.value for s in AddressStatus}
    if status not in valid:
        raise InvalidStatusError(f"Invalid status '{status}'")

    address = get_address(db, address_id, congregation_id)
    now = now or datetime.now(timezone.utc)

    address.status = status
    if status == AddressStatus.NOT_HOME.value:
        address.not_home_tries = (address.not_home_tries or 0) + 1
    elif status == AddressStatus.DO_NOT_CALL.value:
        address.dnc_time = now

    if notes is not _UNSET and notes != address.notes:
        address.notes = notes
        address.last_notes_updated = now
        address.last_notes_updated_by = acting_user

    address.updated_by = acting_user
    db.flush()

    logger.info(f"Address {address_id} on map {address.map_id} set to {status}")
    return address
