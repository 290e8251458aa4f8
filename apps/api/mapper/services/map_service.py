"""
Structural changes to a map's address grid.

Every operation runs all of its writes inside the caller's session and only
flushes. The router commits (or rolls back) the whole operation as one
transaction and then refreshes aggregates as a separate step, so a failed
refresh can never undo a structural change.

Invariant: a map keeps at least one floor and at least one address code.
Operations that would break it are refused before anything is written.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy import delete, distinct, func, select, update
from sqlalchemy.orm import Session

from mapper.core.constants import ADDRESS_CODE_PATTERN, SEQUENCE_CSV_PATTERN
from mapper.db.enums import RESETTABLE_STATUSES, AddressStatus, MapType
from mapper.db.models import Address, Map, Option, Territory, address_options, utcnow

logger = logging.getLogger(__name__)


class MapServiceError(Exception):
    """Base exception for map service errors."""

    pass


class MapNotFoundError(MapServiceError):
    """Map not found."""

    pass


class TerritoryNotFoundError(MapServiceError):
    """Territory not found (or belongs to another congregation)."""

    pass


class DefaultOptionNotFoundError(MapServiceError):
    """Congregation has no default option."""

    pass


class FloorNotFoundError(MapServiceError):
    """Floor has no addresses on this map."""

    pass


class CodeNotFoundError(MapServiceError):
    """Address code not present on this map."""

    pass


class InvalidCodeError(MapServiceError):
    """Malformed, empty or duplicated address code in a request."""

    pass


class InvalidSequenceError(MapServiceError):
    """Malformed sequence CSV or sequence update payload."""

    pass


class InvalidMapTypeError(MapServiceError):
    """Unknown map type or floor count not allowed for the type."""

    pass


class TerritoryMismatchError(MapServiceError):
    """Map is not in the territory the caller expects it to be in."""

    pass


class LastFloorError(MapServiceError):
    """Refused: would leave the map without floors."""

    pass


class LastCodeError(MapServiceError):
    """Refused: would leave the map without address codes."""

    pass


@dataclass
class AddCodesResult:
    requested: int
    inserted: int
    skipped: int
    created: int
    existing_codes: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.inserted == 0:
            return "All codes already exist"
        return (
            f"{self.inserted} codes processed ({self.created} addresses created), "
            f"{self.skipped} skipped (already exist)"
        )


@dataclass(frozen=True)
class SequenceUpdate:
    code: str
    sequence: int


# =============================================================================
# Lookups
# =============================================================================

def get_map(db: Session, map_id: UUID, congregation_id: UUID | None = None) -> Map:
    map_record = db.get(Map, map_id)
    if not map_record:
        raise MapNotFoundError(f"Map {map_id} not found")
    if congregation_id is not None and map_record.congregation_id != congregation_id:
        raise MapNotFoundError(f"Map {map_id} not found")
    return map_record


def get_territory(db: Session, territory_id: UUID, congregation_id: UUID | None = None) -> Territory:
    territory = db.get(Territory, territory_id)
    if not territory:
        raise TerritoryNotFoundError(f"Territory {territory_id} not found")
    if congregation_id is not None and territory.congregation_id != congregation_id:
        raise TerritoryNotFoundError(f"Territory {territory_id} not found")
    return territory


def get_default_option(db: Session, congregation_id: UUID) -> Option:
    option = db.execute(
        select(Option).where(
            Option.congregation_id == congregation_id,
            Option.is_default.is_(True),
        )
    ).scalars().first()
    if not option:
        raise DefaultOptionNotFoundError(
            f"No default option configured for congregation {congregation_id}"
        )
    return option


def get_map_floors(db: Session, map_record: Map) -> list[int]:
    """
    Distinct floors of a map, ascending.

    Derived from the addresses; a map without addresses falls back to
    floors 1..map.floors.
    """
    floors = db.execute(
        select(distinct(Address.floor))
        .where(Address.map_id == map_record.id)
        .order_by(Address.floor)
    ).scalars().all()
    if floors:
        return list(floors)
    return list(range(1, max(map_record.floors, 1) + 1))


def count_map_floors(db: Session, map_id: UUID) -> int:
    return db.execute(
        select(func.count(distinct(Address.floor))).where(Address.map_id == map_id)
    ).scalar_one()


def count_map_codes(db: Session, map_id: UUID) -> int:
    return db.execute(
        select(func.count(distinct(Address.code))).where(Address.map_id == map_id)
    ).scalar_one()


def get_max_sequence(db: Session, map_id: UUID) -> int:
    """Highest sequence on the map, 0 when the map has no addresses."""
    return db.execute(
        select(func.coalesce(func.max(Address.sequence), 0)).where(Address.map_id == map_id)
    ).scalar_one()


def get_map_codes(db: Session, map_id: UUID) -> tuple[list[str], str]:
    """Distinct address codes ordered by sequence then code, plus the map type."""
    map_record = get_map(db, map_id)
    rows = db.execute(
        select(Address.code, func.min(Address.sequence).label("sequence"))
        .where(Address.map_id == map_id)
        .group_by(Address.code)
        .order_by(func.min(Address.sequence), Address.code)
    ).all()
    return [row.code for row in rows], map_record.type


def _new_address(
    map_record: Map,
    code: str,
    floor: int,
    sequence: int,
    default_option: Option,
) -> Address:
    return Address(
        congregation_id=map_record.congregation_id,
        territory_id=map_record.territory_id,
        map_id=map_record.id,
        floor=floor,
        code=code,
        sequence=sequence,
        status=AddressStatus.NOT_DONE.value,
        not_home_tries=0,
        options=[default_option],
    )


def _delete_addresses(db: Session, *criteria) -> int:
    """Delete addresses (and their option links) matching the criteria."""
    address_ids = select(Address.id).where(*criteria)
    db.execute(
        delete(address_options)
        .where(address_options.c.address_id.in_(address_ids))
    )
    result = db.execute(
        delete(Address)
        .where(*criteria)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount or 0


# =============================================================================
# Floors
# =============================================================================

def add_floor(db: Session, map_id: UUID, add_higher: bool) -> int:
    """
    Add a floor above the highest or below the lowest floor.

    The codes (and their sequences) of the reference floor are copied to the
    new floor as fresh not_done addresses. Floor 0 is never used: going
    below floor 1 lands on -1. Returns the new floor number.
    """
    map_record = get_map(db, map_id)
    default_option = get_default_option(db, map_record.congregation_id)

    floors = get_map_floors(db, map_record)
    reference_floor = floors[-1] if add_higher else floors[0]

    if add_higher:
        new_floor = reference_floor + 1
        if new_floor == 0:
            new_floor = 1
    else:
        new_floor = reference_floor - 1
        if new_floor == 0:
            new_floor = -1

    reference_codes = db.execute(
        select(Address.code, func.min(Address.sequence).label("sequence"))
        .where(Address.map_id == map_id, Address.floor == reference_floor)
        .group_by(Address.code)
        .order_by(func.min(Address.sequence), Address.code)
    ).all()

    for row in reference_codes:
        db.add(_new_address(map_record, row.code, new_floor, row.sequence, default_option))

    map_record.floors = len(floors) + 1
    db.flush()

    logger.info(
        f"Added floor {new_floor} to map {map_id} with {len(reference_codes)} addresses"
    )
    return new_floor


def remove_floor(db: Session, map_id: UUID, floor: int) -> int:
    """Delete every address on a floor. Refuses to remove the last floor."""
    map_record = get_map(db, map_id)

    floor_count = count_map_floors(db, map_id)
    if floor_count <= 1:
        raise LastFloorError("Cannot delete the last floor")

    floor_exists = db.execute(
        select(Address.id).where(Address.map_id == map_id, Address.floor == floor).limit(1)
    ).first()
    if not floor_exists:
        raise FloorNotFoundError(f"Floor {floor} not found on map {map_id}")

    deleted = _delete_addresses(db, Address.map_id == map_id, Address.floor == floor)
    map_record.floors = floor_count - 1
    db.flush()

    logger.info(f"Removed floor {floor} from map {map_id} ({deleted} addresses)")
    return deleted


# =============================================================================
# Address codes
# =============================================================================

def validate_codes(codes) -> list[str]:
    """
    Strict request validation: non-empty list of unique, well-formed codes.

    Raises InvalidCodeError naming the offending index.
    """
    if not isinstance(codes, (list, tuple)) or len(codes) == 0:
        raise InvalidCodeError("codes array is required and cannot be empty")

    seen: set[str] = set()
    validated: list[str] = []
    for i, code in enumerate(codes):
        if not isinstance(code, str) or code == "":
            raise InvalidCodeError(f"Invalid code at index {i}: must be non-empty string")
        if not ADDRESS_CODE_PATTERN.match(code):
            raise InvalidCodeError(
                f"Invalid code at index {i}: '{code}' must contain only "
                "alphanumeric characters and hyphens"
            )
        if code in seen:
            raise InvalidCodeError(f"Duplicate code in request: '{code}'")
        seen.add(code)
        validated.append(code)
    return validated


def add_address_codes(db: Session, map_id: UUID, codes) -> AddCodesResult:
    """
    Add new address codes to every floor of a map.

    Codes already on the map are skipped and reported. Each new code takes
    the next unused sequence number.
    """
    codes = validate_codes(codes)
    map_record = get_map(db, map_id)

    existing = set(
        db.execute(
            select(distinct(Address.code)).where(
                Address.map_id == map_id,
                Address.code.in_(codes),
            )
        ).scalars().all()
    )
    new_codes = [code for code in codes if code not in existing]
    existing_codes = [code for code in codes if code in existing]

    if not new_codes:
        return AddCodesResult(
            requested=len(codes),
            inserted=0,
            skipped=len(existing_codes),
            created=0,
            existing_codes=existing_codes,
        )

    floors = get_map_floors(db, map_record)
    default_option = get_default_option(db, map_record.congregation_id)

    sequence = get_max_sequence(db, map_id)
    for code in new_codes:
        sequence += 1
        for floor in floors:
            db.add(_new_address(map_record, code, floor, sequence, default_option))
    db.flush()

    created = len(new_codes) * len(floors)
    logger.info(
        f"Added {len(new_codes)} codes to map {map_id} ({created} addresses), "
        f"skipped {len(existing_codes)}"
    )
    return AddCodesResult(
        requested=len(codes),
        inserted=len(new_codes),
        skipped=len(existing_codes),
        created=created,
        existing_codes=existing_codes,
    )


def delete_address_code(db: Session, map_id: UUID, code: str) -> int:
    """
    Delete a code from every floor.

    Unknown codes raise CodeNotFoundError; removing the last code is refused.
    """
    map_record = get_map(db, map_id)

    exists = db.execute(
        select(Address.id).where(Address.map_id == map_id, Address.code == code).limit(1)
    ).first()
    if exists is None:
        raise CodeNotFoundError(f"Address code '{code}' not found on map {map_id}")
    if count_map_codes(db, map_id) <= 1:
        raise LastCodeError("Cannot delete the last address code")

    deleted = _delete_addresses(db, Address.map_id == map_id, Address.code == code)
    # Touch the map so the aggregates sweep sees this change
    map_record.updated_at = utcnow()
    db.flush()

    logger.info(f"Deleted code {code} from map {map_id} ({deleted} addresses)")
    return deleted


def update_sequences(db: Session, map_id: UUID, updates: list[SequenceUpdate]) -> int:
    """Set the sequence of every address sharing each code. Returns rows updated."""
    if not updates:
        raise InvalidSequenceError("codes array is required")
    get_map(db, map_id)

    updated = 0
    for item in updates:
        result = db.execute(
            update(Address)
            .where(Address.map_id == map_id, Address.code == item.code)
            .values(sequence=item.sequence)
            .execution_options(synchronize_session="fetch")
        )
        updated += result.rowcount or 0
    db.flush()

    logger.info(f"Updated sequences for {len(updates)} codes in map {map_id}")
    return updated


# =============================================================================
# Territory moves
# =============================================================================

def reassign_territory(
    db: Session,
    map_id: UUID,
    old_territory_id: UUID | None,
    new_territory_id: UUID,
) -> UUID:
    """
    Move a map and all of its addresses to another territory.

    Returns the territory the map was moved out of; the caller refreshes
    both territories after commit.
    """
    map_record = get_map(db, map_id)
    current_territory_id = map_record.territory_id
    if old_territory_id is not None and old_territory_id != current_territory_id:
        raise TerritoryMismatchError(
            f"Map {map_id} is not in territory {old_territory_id}"
        )
    get_territory(db, new_territory_id, map_record.congregation_id)

    db.execute(
        update(Address)
        .where(Address.map_id == map_id)
        .values(territory_id=new_territory_id)
        .execution_options(synchronize_session="fetch")
    )
    map_record.territory_id = new_territory_id
    # No row points at the old territory any more; mark it for the sweep
    old_territory = db.get(Territory, current_territory_id)
    if old_territory is not None:
        old_territory.updated_at = utcnow()
    db.flush()

    logger.info(f"Moved map {map_id} from territory {current_territory_id} to {new_territory_id}")
    return current_territory_id


# =============================================================================
# Map creation
# =============================================================================

def parse_sequence_csv(sequence: str) -> list[str]:
    """Split a comma-separated code list; raises InvalidSequenceError."""
    if not isinstance(sequence, str) or sequence == "":
        raise InvalidSequenceError("Invalid sequence format")
    if not SEQUENCE_CSV_PATTERN.match(sequence):
        raise InvalidSequenceError("Invalid sequence format")
    codes = sequence.split(",")
    if len(set(codes)) != len(codes):
        raise InvalidSequenceError("Duplicate code in sequence")
    return codes


def create_map(
    db: Session,
    territory_id: UUID,
    congregation_id: UUID,
    map_type: str,
    floors: int,
    sequence: str,
    coordinates: dict | str | None = None,
    code: str | None = None,
    name: str | None = None,
) -> Map:
    """
    Create a map and its floors x codes address grid.

    Codes take sequence 1..n in CSV order on every floor. Positions are
    1-based, not 0-based, so a new map numbers its codes the same way
    add_address_codes numbers appended ones.
    """
    codes = parse_sequence_csv(sequence)

    if map_type not in (MapType.SINGLE.value, MapType.MULTI.value):
        raise InvalidMapTypeError("Invalid map type")
    if map_type == MapType.SINGLE.value and floors != 1:
        raise InvalidMapTypeError("Invalid floor for single map")
    if floors < 1:
        raise InvalidMapTypeError("A map needs at least one floor")

    get_territory(db, territory_id, congregation_id)
    default_option = get_default_option(db, congregation_id)

    if isinstance(coordinates, dict):
        coordinates = json.dumps(coordinates)

    map_record = Map(
        congregation_id=congregation_id,
        territory_id=territory_id,
        code=code,
        description=name,
        type=map_type,
        floors=floors,
        coordinates=coordinates,
    )
    db.add(map_record)
    db.flush()

    for floor in range(1, floors + 1):
        for index, address_code in enumerate(codes, start=1):
            db.add(_new_address(map_record, address_code, floor, index, default_option))
    db.flush()

    logger.info(
        f"Map created with ID {map_record.id}: {floors} floors x {len(codes)} codes"
    )
    return map_record


# =============================================================================
# Resets
# =============================================================================

def _reset_addresses(db: Session, acting_user: str | None, *criteria) -> int:
    result = db.execute(
        update(Address)
        .where(*criteria, Address.status.in_(RESETTABLE_STATUSES))
        .values(
            status=AddressStatus.NOT_DONE.value,
            not_home_tries=0,
            updated_by=acting_user,
        )
        .execution_options(synchronize_session="fetch")
    )
    db.flush()
    return result.rowcount or 0


def reset_map(db: Session, map_id: UUID, acting_user: str | None) -> int:
    """Flip done/not_home addresses of a map back to not_done."""
    get_map(db, map_id)
    reset = _reset_addresses(db, acting_user, Address.map_id == map_id)
    logger.info(f"Reset {reset} addresses on map {map_id}")
    return reset


def reset_territory(db: Session, territory_id: UUID, acting_user: str | None) -> int:
    """Flip done/not_home addresses of a territory back to not_done."""
    get_territory(db, territory_id)
    reset = _reset_addresses(db, acting_user, Address.territory_id == territory_id)
    logger.info(f"Reset {reset} addresses in territory {territory_id}")
    return reset
