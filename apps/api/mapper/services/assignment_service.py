"""
Quicklink assignment: pick the best map in a territory for a publisher and
issue a time-limited assignment on it.

Selection priority (single pass over candidates):
    1. fewest active normal assignments
    2. more than SAME_LOCALITY_METERS closer to the publisher
    3. within SAME_LOCALITY_METERS: lowest progress
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import and_, delete, func, select
from sqlalchemy.orm import Session

from mapper.core.config import settings
from mapper.core.constants import EARTH_RADIUS_METERS, SAME_LOCALITY_METERS
from mapper.db.enums import AssignmentType
from mapper.db.models import Assignment, Congregation, Map, Territory
from mapper.db.types import MapAggregates

logger = logging.getLogger(__name__)


class AssignmentServiceError(Exception):
    """Base exception for assignment service errors."""

    pass


class InvalidCoordinatesError(AssignmentServiceError):
    """Publisher location missing or not numeric."""

    pass


class TerritoryRequiredError(AssignmentServiceError):
    """Territory id missing."""

    pass


class NoMapsFoundError(AssignmentServiceError):
    """Territory has no selectable maps."""

    pass


class TerritoryNotFoundError(AssignmentServiceError):
    """Territory not found."""

    pass


class CongregationNotFoundError(AssignmentServiceError):
    """Congregation of the territory not found."""

    pass


# =============================================================================
# Value types
# =============================================================================

@dataclass(frozen=True)
class Coordinates:
    lat: float = 0.0
    lng: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}


@dataclass
class MapCandidate:
    """A map of the territory with its active assignment count."""

    id: UUID
    description: str
    progress: int
    coordinates: str
    aggregates: MapAggregates
    assignment_count: int
    distance: float | None = None


@dataclass
class AssignmentResult:
    assignment_id: UUID
    map_id: UUID
    map_name: str
    progress: int
    not_done: int
    not_home: int
    coordinates: Coordinates
    assignees: list[str] = field(default_factory=list)


# =============================================================================
# Geometry / parsing helpers
# =============================================================================

def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in meters."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)

    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def _as_float(value) -> float | None:
    # bool is an int subclass; a JSON true is not a coordinate
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return float(value)


def parse_coordinates(raw: str | dict | None) -> Coordinates | None:
    """Parse stored map coordinates; None when missing or malformed."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None
    if not isinstance(raw, dict):
        return None
    lat = _as_float(raw.get("lat"))
    lng = _as_float(raw.get("lng"))
    if lat is None or lng is None:
        return None
    return Coordinates(lat=lat, lng=lng)


def validate_location(lat, lng) -> Coordinates:
    """Validate the publisher location supplied with a quicklink request."""
    lat_value = _as_float(lat)
    lng_value = _as_float(lng)
    if lat_value is None:
        raise InvalidCoordinatesError("Invalid latitude value")
    if lng_value is None:
        raise InvalidCoordinatesError("Invalid longitude value")
    if not -90 <= lat_value <= 90 or not -180 <= lng_value <= 180:
        raise InvalidCoordinatesError("Coordinates out of range")
    return Coordinates(lat=lat_value, lng=lng_value)


def _active_normal_clause(now: datetime):
    return and_(
        Assignment.type == AssignmentType.NORMAL.value,
        Assignment.expiry_date > now,
    )


# =============================================================================
# Selection
# =============================================================================

def get_map_candidates(
    db: Session,
    territory_id: UUID,
    now: datetime | None = None,
) -> list[MapCandidate]:
    """
    All maps of a territory with their active normal assignment counts,
    ordered by assignment count then progress.
    """
    now = now or datetime.now(timezone.utc)
    active_counts = (
        select(Assignment.map_id, func.count(Assignment.id).label("assignment_count"))
        .where(_active_normal_clause(now))
        .group_by(Assignment.map_id)
        .subquery()
    )
    assignment_count = func.coalesce(active_counts.c.assignment_count, 0)
    query = (
        select(Map, assignment_count.label("assignment_count"))
        .outerjoin(active_counts, active_counts.c.map_id == Map.id)
        .where(Map.territory_id == territory_id)
        .order_by(assignment_count.asc(), Map.progress.asc())
    )
    return [
        MapCandidate(
            id=map_record.id,
            description=map_record.description or "",
            progress=map_record.progress or 0,
            coordinates=map_record.coordinates or "{}",
            aggregates=MapAggregates.from_value(map_record.aggregates),
            assignment_count=int(count or 0),
        )
        for map_record, count in db.execute(query).all()
    ]


def find_best_map(
    candidates: list[MapCandidate],
    lat: float,
    lng: float,
) -> MapCandidate | None:
    """Pick the best candidate; maps with unparseable coordinates are skipped."""
    best: MapCandidate | None = None
    best_count = math.inf
    best_distance = math.inf
    best_progress = math.inf

    for candidate in candidates:
        coords = parse_coordinates(candidate.coordinates)
        if coords is None:
            continue

        distance = haversine_distance(lat, lng, coords.lat, coords.lng)
        candidate.distance = distance

        is_better = False
        if candidate.assignment_count < best_count:
            is_better = True
        elif candidate.assignment_count == best_count:
            if distance < best_distance - SAME_LOCALITY_METERS:
                is_better = True
            elif abs(distance - best_distance) <= SAME_LOCALITY_METERS:
                if candidate.progress < best_progress:
                    is_better = True

        if is_better:
            best = candidate
            best_count = candidate.assignment_count
            best_distance = distance
            best_progress = candidate.progress

    return best


# =============================================================================
# Assignment creation
# =============================================================================

def get_congregation_for_territory(db: Session, territory_id: UUID) -> Congregation:
    territory = db.get(Territory, territory_id)
    if not territory:
        raise TerritoryNotFoundError(f"Territory {territory_id} not found")
    congregation = db.get(Congregation, territory.congregation_id)
    if not congregation:
        raise CongregationNotFoundError(f"Congregation {territory.congregation_id} not found")
    return congregation


def get_expiry_hours(congregation: Congregation) -> int:
    """Assignment lifetime in hours (DEFAULT_EXPIRY_HOURS when the congregation has none set)."""
    if congregation.expiry_hours is None:
        return settings.DEFAULT_EXPIRY_HOURS
    return congregation.expiry_hours


def create_assignment(
    db: Session,
    map_id: UUID,
    congregation_id: UUID,
    user_id: UUID | None,
    publisher: str | None,
    expiry_hours: int,
    now: datetime | None = None,
) -> Assignment:
    """Create a normal assignment expiring `expiry_hours` from now."""
    now = now or datetime.now(timezone.utc)
    assignment = Assignment(
        map_id=map_id,
        congregation_id=congregation_id,
        user_id=user_id,
        type=AssignmentType.NORMAL.value,
        publisher=publisher or "",
        expiry_date=now + timedelta(hours=expiry_hours),
    )
    db.add(assignment)
    db.flush()
    return assignment


def get_other_assignees(
    db: Session,
    map_id: UUID,
    exclude_assignment_id: UUID,
    now: datetime | None = None,
) -> list[str]:
    """Publisher labels of the other active normal assignments on a map."""
    now = now or datetime.now(timezone.utc)
    rows = db.execute(
        select(Assignment.publisher)
        .where(
            Assignment.map_id == map_id,
            Assignment.id != exclude_assignment_id,
            _active_normal_clause(now),
        )
        .order_by(Assignment.created_at)
    ).scalars().all()
    return [publisher or "" for publisher in rows]


def select_and_assign(
    db: Session,
    territory_id: UUID | None,
    lat,
    lng,
    publisher: str | None,
    user_id: UUID | None,
    now: datetime | None = None,
) -> AssignmentResult:
    """
    Choose the best map of a territory for a publisher and assign it.

    Flushes the new assignment; the caller commits.
    """
    if not territory_id:
        raise TerritoryRequiredError("Territory ID is required")
    location = validate_location(lat, lng)
    now = now or datetime.now(timezone.utc)

    candidates = get_map_candidates(db, territory_id, now)
    if not candidates:
        raise NoMapsFoundError("No maps found for territory")

    best = find_best_map(candidates, location.lat, location.lng)
    if best is None:
        raise NoMapsFoundError("No suitable map found")

    congregation = get_congregation_for_territory(db, territory_id)
    assignment = create_assignment(
        db,
        map_id=best.id,
        congregation_id=congregation.id,
        user_id=user_id,
        publisher=publisher,
        expiry_hours=get_expiry_hours(congregation),
        now=now,
    )

    assignees = get_other_assignees(db, best.id, assignment.id, now)
    coords = parse_coordinates(best.coordinates) or Coordinates()

    logger.info(
        f"Quicklink assigned map {best.id} in territory {territory_id} "
        f"(active={best.assignment_count}, distance={best.distance:.0f}m, progress={best.progress})"
    )

    return AssignmentResult(
        assignment_id=assignment.id,
        map_id=best.id,
        map_name=best.description,
        progress=best.progress,
        not_done=best.aggregates.not_done,
        not_home=best.aggregates.not_home,
        coordinates=coords,
        assignees=assignees,
    )


# =============================================================================
# Cleanup
# =============================================================================

def cleanup_expired_assignments(db: Session, now: datetime | None = None) -> int:
    """Delete every assignment that has expired. Flushes, no commit."""
    now = now or datetime.now(timezone.utc)
    result = db.execute(
        delete(Assignment)
        .where(Assignment.expiry_date < now)
        .execution_options(synchronize_session=False)
    )
    db.flush()
    removed = result.rowcount or 0
    if removed:
        logger.info(f"Assignments cleanup completed: {removed} assignments removed")
    else:
        logger.info("Assignments cleanup completed: no expired assignments found")
    return removed
