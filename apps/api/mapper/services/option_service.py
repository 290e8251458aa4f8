"""
Batch updates of a congregation's address options.

Invariant: a congregation has exactly one default option. It is checked
explicitly at the end of the transaction that changes options, so a batch
can never commit with zero or two defaults.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from mapper.core.constants import (
    OPTION_CODE_MAX_LENGTH,
    OPTION_CODE_PATTERN,
    OPTION_DESCRIPTION_MAX_LENGTH,
)
from mapper.db.models import Address, Option, address_options

logger = logging.getLogger(__name__)


class OptionServiceError(Exception):
    """Base exception for option service errors."""

    pass


class InvalidOptionsError(OptionServiceError):
    """Malformed options payload."""

    pass


class OptionNotFoundError(OptionServiceError):
    """Option not found or owned by another congregation."""

    pass


class DuplicateOptionError(OptionServiceError):
    """Code or sequence already used by another option."""

    pass


class DefaultOptionInvariantError(OptionServiceError):
    """The batch would leave the congregation without exactly one default."""

    pass


@dataclass
class OptionInput:
    id: UUID | None = None
    code: str = ""
    description: str = ""
    sequence: int = 0
    is_countable: bool = False
    is_default: bool = False
    is_deleted: bool = False


def list_options(db: Session, congregation_id: UUID) -> list[Option]:
    return db.execute(
        select(Option)
        .where(Option.congregation_id == congregation_id)
        .order_by(Option.sequence)
    ).scalars().all()


def validate_options(options: list[OptionInput]) -> None:
    """Payload checks that need no database access."""
    if not options:
        raise InvalidOptionsError("options array is required")

    default_count = 0
    codes: set[str] = set()
    sequences: set[int] = set()

    for i, option in enumerate(options):
        if option.is_deleted:
            if option.id is None:
                raise InvalidOptionsError(f"option at index {i}: deleted option needs an id")
            continue

        code = (option.code or "").strip()
        if not code:
            raise InvalidOptionsError(f"option at index {i}: code cannot be empty")
        if len(code) > OPTION_CODE_MAX_LENGTH:
            raise InvalidOptionsError(
                f"option at index {i}: code cannot exceed {OPTION_CODE_MAX_LENGTH} characters"
            )
        if not OPTION_CODE_PATTERN.match(code):
            raise InvalidOptionsError(
                f"option at index {i}: code can only contain letters, numbers, "
                "underscores, and hyphens"
            )
        if option.description and len(option.description) > OPTION_DESCRIPTION_MAX_LENGTH:
            raise InvalidOptionsError(
                f"option at index {i}: description cannot exceed "
                f"{OPTION_DESCRIPTION_MAX_LENGTH} characters"
            )
        if option.sequence < 0:
            raise InvalidOptionsError(f"option at index {i}: sequence cannot be negative")

        if code in codes:
            raise InvalidOptionsError(f"duplicate code in payload: {code}")
        codes.add(code)
        if option.sequence in sequences:
            raise InvalidOptionsError(f"duplicate sequence in payload: {option.sequence}")
        sequences.add(option.sequence)

        if option.is_default:
            default_count += 1

    if default_count != 1:
        raise InvalidOptionsError("exactly one option must be marked as default")


def _get_owned_option(db: Session, congregation_id: UUID, option_id: UUID) -> Option:
    option = db.get(Option, option_id)
    if not option or option.congregation_id != congregation_id:
        raise OptionNotFoundError(f"Option {option_id} not found")
    return option


def _check_unique(
    db: Session,
    congregation_id: UUID,
    option_id: UUID | None,
    column,
    value,
    batch_ids: set[UUID],
) -> None:
    # Options in the same batch may swap codes or sequences with each other
    query = select(Option.id).where(Option.congregation_id == congregation_id, column == value)
    if option_id is not None:
        query = query.where(Option.id != option_id)
    for existing_id in db.execute(query).scalars().all():
        if existing_id not in batch_ids:
            raise DuplicateOptionError(
                f"{column.key} '{value}' already exists for another option (id: {existing_id})"
            )


def _replace_with_default(
    db: Session,
    congregation_id: UUID,
    option: Option,
    default_option: Option,
) -> int:
    """Give every address carrying `option` the default option too."""
    addresses = db.execute(
        select(Address)
        .join(address_options, address_options.c.address_id == Address.id)
        .where(
            address_options.c.option_id == option.id,
            Address.congregation_id == congregation_id,
        )
    ).scalars().all()

    for address in addresses:
        if default_option not in address.options:
            address.options.append(default_option)
    db.flush()
    return len(addresses)


def update_options(
    db: Session,
    congregation_id: UUID,
    options: list[OptionInput],
) -> list[Option]:
    """
    Apply a batch of option creates, updates and deletions.

    Deleted options are removed last, after their addresses were given the
    (possibly new) default option. Flushes; the caller commits.
    """
    validate_options(options)

    kept = [option for option in options if not option.is_deleted]
    deleted = [option for option in options if option.is_deleted]
    batch_ids = {option.id for option in kept if option.id is not None}

    existing: dict[UUID, Option] = {}
    for option in options:
        if option.id is not None:
            existing[option.id] = _get_owned_option(db, congregation_id, option.id)

    for option in kept:
        _check_unique(db, congregation_id, option.id, Option.code, option.code.strip(), batch_ids)
        _check_unique(db, congregation_id, option.id, Option.sequence, option.sequence, batch_ids)

    # Park batch codes and sequences on unique placeholders so swaps never
    # collide with the (congregation, code) constraint mid-flush
    for offset, option in enumerate(kept):
        if option.id is not None:
            record = existing[option.id]
            record.code = f"~{record.id.hex}"
            record.sequence = -(offset + 1)
    db.flush()

    db.execute(
        update(Option)
        .where(Option.congregation_id == congregation_id, Option.is_default.is_(True))
        .values(is_default=False)
        .execution_options(synchronize_session="fetch")
    )

    default_option: Option | None = None
    results: list[Option] = []
    for option in kept:
        if option.id is not None:
            record = existing[option.id]
            if record.is_countable and not option.is_countable:
                logger.warning(
                    f"Option {record.id} (code: {option.code.strip()}) changed from countable "
                    "to non-countable - this affects aggregates"
                )
        else:
            record = Option(congregation_id=congregation_id)
            db.add(record)

        record.code = option.code.strip()
        record.description = (option.description or "").strip()
        record.sequence = option.sequence
        record.is_countable = option.is_countable
        record.is_default = option.is_default
        results.append(record)
        if option.is_default:
            default_option = record
    db.flush()

    if default_option is None:
        raise DefaultOptionInvariantError("no default option was set")

    for option in deleted:
        record = existing[option.id]
        replaced = _replace_with_default(db, congregation_id, record, default_option)
        db.execute(delete(address_options).where(address_options.c.option_id == record.id))
        db.delete(record)
        logger.info(f"Deleted option {record.id}; {replaced} addresses given the default option")
    db.flush()

    default_count = db.execute(
        select(func.count(Option.id)).where(
            Option.congregation_id == congregation_id,
            Option.is_default.is_(True),
        )
    ).scalar_one()
    if default_count != 1:
        raise DefaultOptionInvariantError(
            f"Congregation {congregation_id} would have {default_count} default options"
        )

    logger.info(f"Options update completed for congregation {congregation_id}")
    return results
