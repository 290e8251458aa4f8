"""
Map and territory progress aggregation.

Aggregates are a derived view of address rows. Recomputes read the current
addresses and overwrite the stored counts; they never depend on the previous
aggregate values and never write address rows.

Structural mutations commit first and then call the refresh_* wrappers.
A failed refresh leaves stale aggregates behind (logged and reported) until
the next refresh or the scheduled territory sweep.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

import sentry_sdk
from sqlalchemy import and_, case, exists, func, select, union
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mapper.core.structured_logging import build_log_context
from mapper.db.enums import AddressStatus
from mapper.db.models import Address, Congregation, Map, Option, Territory, address_options
from mapper.db.types import MapAggregates

logger = logging.getLogger(__name__)


class AggregationError(Exception):
    """Base exception for aggregation errors."""

    pass


class MapNotFoundError(AggregationError):
    """Map not found."""

    pass


class TerritoryNotFoundError(AggregationError):
    """Territory not found."""

    pass


COUNTED_STATUSES = tuple(status.value for status in AddressStatus)


@dataclass(frozen=True)
class AggregateCounts:
    """Bucketed address counts for one map or territory."""

    not_done: int = 0
    done: int = 0
    exhausted: int = 0  # not_home with tries >= max_tries
    outstanding: int = 0  # not_home with tries < max_tries
    dnc: int = 0
    invalid: int = 0

    @property
    def total(self) -> int:
        # dnc and invalid are tracked but never part of the denominator
        return self.done + self.not_done + self.exhausted + self.outstanding

    @property
    def progress(self) -> int:
        total = self.total
        if total == 0:
            return 0
        return (100 * (self.done + self.exhausted)) // total

    def to_aggregates(self) -> MapAggregates:
        return MapAggregates(
            not_done=self.not_done,
            done=self.done,
            not_home=self.outstanding,
            dnc=self.dnc,
            invalid=self.invalid,
        )


def _countable_address_clause():
    """Address has at least one countable option of its own congregation."""
    return exists(
        select(address_options.c.address_id)
        .join(Option, Option.id == address_options.c.option_id)
        .where(
            address_options.c.address_id == Address.id,
            Option.is_countable.is_(True),
            Option.congregation_id == Address.congregation_id,
        )
    )


def _bucket(condition):
    return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)


def _compute_counts(db: Session, scope_clause) -> AggregateCounts:
    is_not_home = Address.status == AddressStatus.NOT_HOME.value
    query = (
        select(
            _bucket(Address.status == AddressStatus.NOT_DONE.value).label("not_done"),
            _bucket(Address.status == AddressStatus.DONE.value).label("done"),
            _bucket(
                and_(is_not_home, Address.not_home_tries >= Congregation.max_tries)
            ).label("exhausted"),
            _bucket(
                and_(is_not_home, Address.not_home_tries < Congregation.max_tries)
            ).label("outstanding"),
            _bucket(Address.status == AddressStatus.DO_NOT_CALL.value).label("dnc"),
            _bucket(Address.status == AddressStatus.INVALID.value).label("invalid"),
        )
        .select_from(Address)
        .outerjoin(Congregation, Congregation.id == Address.congregation_id)
        .where(
            scope_clause,
            Address.status.in_(COUNTED_STATUSES),
            _countable_address_clause(),
        )
    )
    row = db.execute(query).one()
    return AggregateCounts(
        not_done=int(row.not_done),
        done=int(row.done),
        exhausted=int(row.exhausted),
        outstanding=int(row.outstanding),
        dnc=int(row.dnc),
        invalid=int(row.invalid),
    )


def compute_map_counts(db: Session, map_id: UUID) -> AggregateCounts:
    """Count countable addresses of a map by status bucket."""
    return _compute_counts(db, Address.map_id == map_id)


def compute_territory_counts(db: Session, territory_id: UUID) -> AggregateCounts:
    """
    Count countable addresses of a territory by status bucket.

    Counted straight from addresses rather than summed from map aggregates,
    so stale map rows cannot skew the territory.
    """
    return _compute_counts(db, Address.territory_id == territory_id)


# =============================================================================
# Recompute (raise on failure)
# =============================================================================

def recompute_territory(db: Session, territory_id: UUID) -> AggregateCounts:
    """Overwrite territory progress/aggregates from its addresses. Flushes, no commit."""
    territory = db.get(Territory, territory_id)
    if not territory:
        raise TerritoryNotFoundError(f"Territory {territory_id} not found")

    counts = compute_territory_counts(db, territory_id)
    territory.aggregates = counts.to_aggregates()
    territory.progress = counts.progress
    db.flush()

    logger.info(f"Updated territory {territory_id} with progress {counts.progress}%")
    return counts


def recompute_map(
    db: Session,
    map_id: UUID,
    cascade_to_territory: bool = True,
) -> AggregateCounts:
    """
    Overwrite map progress/aggregates from its addresses. Flushes, no commit.

    Cascades into the owning territory unless the caller suppresses it.
    """
    map_record = db.get(Map, map_id)
    if not map_record:
        raise MapNotFoundError(f"Map {map_id} not found")

    counts = compute_map_counts(db, map_id)
    map_record.aggregates = counts.to_aggregates()
    map_record.progress = counts.progress
    db.flush()

    logger.info(f"Map aggregates updated for map {map_id} (progress {counts.progress}%)")

    if cascade_to_territory:
        recompute_territory(db, map_record.territory_id)
    return counts


# =============================================================================
# Post-commit derived-view refresh (never raise)
# =============================================================================

def _report_refresh_failure(exc: Exception, context: dict) -> None:
    logger.warning(f"Aggregate refresh failed: {exc}", extra=context)
    sentry_sdk.capture_exception(exc)


def refresh_map_aggregates(
    db: Session,
    map_id: UUID,
    cascade_to_territory: bool = True,
) -> bool:
    """
    Recompute and commit a map's aggregates after a committed mutation.

    Returns False (after logging and rolling back) instead of raising, so
    the already-committed mutation is never reported as failed.
    """
    try:
        recompute_map(db, map_id, cascade_to_territory=cascade_to_territory)
        db.commit()
        return True
    except (AggregationError, SQLAlchemyError) as exc:
        db.rollback()
        _report_refresh_failure(exc, build_log_context(map_id=str(map_id)))
        return False


def refresh_territory_aggregates(db: Session, territory_id: UUID) -> bool:
    """Recompute and commit a territory's aggregates; False on failure."""
    try:
        recompute_territory(db, territory_id)
        db.commit()
        return True
    except (AggregationError, SQLAlchemyError) as exc:
        db.rollback()
        _report_refresh_failure(exc, build_log_context(territory_id=str(territory_id)))
        return False


def refresh_territory_and_maps(db: Session, territory_id: UUID) -> bool:
    """
    Recompute every map of a territory (no per-map cascade), then the
    territory itself, in one commit. Used after territory-wide writes and by
    the scheduled sweep.
    """
    try:
        map_ids = db.execute(
            select(Map.id).where(Map.territory_id == territory_id)
        ).scalars().all()
        for map_id in map_ids:
            recompute_map(db, map_id, cascade_to_territory=False)
        recompute_territory(db, territory_id)
        db.commit()
        return True
    except (AggregationError, SQLAlchemyError) as exc:
        db.rollback()
        _report_refresh_failure(exc, build_log_context(territory_id=str(territory_id)))
        return False


# =============================================================================
# Scheduled sweep
# =============================================================================

def get_recently_updated_territory_ids(db: Session, since: datetime) -> list[UUID]:
    """Territories written after `since`, directly or through a map or an address."""
    from_territories = select(Territory.id).where(Territory.updated_at > since)
    from_maps = select(Map.territory_id).where(Map.updated_at > since)
    from_addresses = select(Address.territory_id).where(Address.updated_at > since)
    return list(
        db.execute(union(from_territories, from_maps, from_addresses)).scalars().all()
    )


def process_territory_aggregates(
    db: Session,
    interval_minutes: int,
    now: datetime | None = None,
) -> tuple[int, int]:
    """
    Recompute maps and territories touched within the last interval.

    Reconciles territories whose refresh was skipped or failed after a
    mutation. Each territory commits separately; returns (processed, failed).
    """
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(minutes=interval_minutes)
    territory_ids = get_recently_updated_territory_ids(db, since)

    if not territory_ids:
        logger.info("Territory aggregates sweep: no territories updated in window")
        return 0, 0

    logger.info(f"Territory aggregates sweep: processing {len(territory_ids)} territories")
    failed = 0
    for territory_id in territory_ids:
        if not refresh_territory_and_maps(db, territory_id):
            failed += 1

    logger.info(
        f"Territory aggregates sweep completed: {len(territory_ids) - failed} ok, {failed} failed"
    )
    return len(territory_ids), failed
