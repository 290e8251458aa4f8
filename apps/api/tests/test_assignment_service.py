"""Tests for quicklink map selection and assignment lifecycle."""

import json
import math
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from mapper.db.enums import AssignmentType
from mapper.db.models import Assignment
from mapper.services import assignment_service
from mapper.services.assignment_service import (
    InvalidCoordinatesError,
    MapCandidate,
    NoMapsFoundError,
    TerritoryRequiredError,
)
from mapper.db.types import MapAggregates

# Publisher location; 1 degree of latitude is ~111,195 m
ORIGIN = (1.3000, 103.8000)


def _north_of_origin(meters: float) -> str:
    lat = ORIGIN[0] + meters / 111_195
    return json.dumps({"lat": lat, "lng": ORIGIN[1]})


def _candidate(count: int, meters: float, progress: int, coordinates: str | None = None) -> MapCandidate:
    return MapCandidate(
        id=uuid.uuid4(),
        description=f"{count}/{meters}/{progress}",
        progress=progress,
        coordinates=coordinates if coordinates is not None else _north_of_origin(meters),
        aggregates=MapAggregates(),
        assignment_count=count,
    )


def _assign(db, map_record, hours: float, type_: str = AssignmentType.NORMAL.value, publisher="p"):
    db.add(Assignment(
        map_id=map_record.id,
        congregation_id=map_record.congregation_id,
        type=type_,
        publisher=publisher,
        expiry_date=datetime.now(timezone.utc) + timedelta(hours=hours),
    ))
    db.commit()


# =============================================================================
# Geometry / parsing
# =============================================================================

def test_haversine_distance_matches_known_values():
    assert assignment_service.haversine_distance(0, 0, 0, 0) == 0
    # One degree of longitude at the equator
    one_degree = assignment_service.haversine_distance(0, 0, 0, 1)
    assert one_degree == pytest.approx(2 * math.pi * 6_371_000 / 360, rel=1e-9)


@pytest.mark.parametrize("raw", [None, "", "not json", "[]", '{"lat": "1"}', '{"lat": 1}', '{"lat": true, "lng": 1}'])
def test_parse_coordinates_rejects_malformed(raw):
    assert assignment_service.parse_coordinates(raw) is None


def test_parse_coordinates_accepts_dict_and_json():
    assert assignment_service.parse_coordinates({"lat": 1, "lng": 2.5}).to_dict() == {"lat": 1.0, "lng": 2.5}
    assert assignment_service.parse_coordinates('{"lat": -1.5, "lng": 3}').lat == -1.5


@pytest.mark.parametrize("lat,lng", [(None, 1), (1, None), ("1", 1), (91, 0), (0, 181), (float("nan"), 0)])
def test_validate_location_rejects_bad_input(lat, lng):
    with pytest.raises(InvalidCoordinatesError):
        assignment_service.validate_location(lat, lng)


# =============================================================================
# Selection
# =============================================================================

def test_within_locality_lower_progress_wins():
    m1 = _candidate(0, 10, 40)
    m2 = _candidate(0, 5, 90)

    assert assignment_service.find_best_map([m1, m2], *ORIGIN) is m1
    assert assignment_service.find_best_map([m2, m1], *ORIGIN) is m1


def test_beyond_locality_nearer_map_wins_regardless_of_progress():
    far = _candidate(0, 500, 10)
    near = _candidate(0, 10, 95)

    assert assignment_service.find_best_map([far, near], *ORIGIN) is near
    assert assignment_service.find_best_map([near, far], *ORIGIN) is near


def test_fewer_assignments_always_wins():
    busy_near = _candidate(1, 5, 0)
    idle_far = _candidate(0, 5_000, 99)

    assert assignment_service.find_best_map([busy_near, idle_far], *ORIGIN) is idle_far
    assert assignment_service.find_best_map([idle_far, busy_near], *ORIGIN) is idle_far


def test_unparseable_candidates_are_skipped():
    broken = _candidate(0, 0, 0, coordinates="{bad")
    ok = _candidate(3, 100, 50)

    assert assignment_service.find_best_map([broken, ok], *ORIGIN) is ok
    assert assignment_service.find_best_map([broken], *ORIGIN) is None


def test_candidates_count_only_active_normal_assignments(db, territory, default_option, make_map):
    m1 = make_map(db, territory, default_option, ["1"], coordinates=_north_of_origin(10))
    _assign(db, m1, hours=-1)  # expired
    _assign(db, m1, hours=5, type_=AssignmentType.PERSONAL.value)
    m2 = make_map(db, territory, default_option, ["1"], coordinates=_north_of_origin(10), description="B2")
    _assign(db, m2, hours=5)

    candidates = assignment_service.get_map_candidates(db, territory.id)
    counts = {c.id: c.assignment_count for c in candidates}

    assert counts == {m1.id: 0, m2.id: 1}
    assert candidates[0].id == m1.id


def test_select_and_assign_creates_assignment_on_least_loaded_map(
    db, territory, default_option, make_map, publisher_user
):
    loaded = make_map(db, territory, default_option, ["1"], coordinates=_north_of_origin(5), description="Loaded")
    _assign(db, loaded, hours=5, publisher="Alice")
    idle = make_map(db, territory, default_option, ["1"], coordinates=_north_of_origin(2_000), description="Idle")

    result = assignment_service.select_and_assign(
        db, territory.id, ORIGIN[0], ORIGIN[1], publisher="Bob", user_id=publisher_user.id
    )
    db.commit()

    assert result.map_id == idle.id
    assert result.map_name == "Idle"
    assert result.assignees == []
    assignment = db.get(Assignment, result.assignment_id)
    assert assignment.type == AssignmentType.NORMAL.value
    assert assignment.publisher == "Bob"
    assert assignment.user_id == publisher_user.id


def test_select_and_assign_never_picks_above_minimum_load(db, territory, default_option, make_map):
    for i in range(4):
        make_map(db, territory, default_option, ["1"], coordinates=_north_of_origin(i * 100), description=f"M{i}")
    for _ in range(4):
        result = assignment_service.select_and_assign(db, territory.id, ORIGIN[0], ORIGIN[1], "p", None)
        db.commit()
        counts = {
            c.id: c.assignment_count
            for c in assignment_service.get_map_candidates(db, territory.id)
        }
        # After each pick the chosen map is at most one above every other map
        assert counts[result.map_id] - min(counts.values()) <= 1

    assert {c.assignment_count for c in assignment_service.get_map_candidates(db, territory.id)} == {1}


def test_select_and_assign_reports_other_assignees_and_aggregates(
    db, territory, default_option, make_map
):
    only = make_map(db, territory, default_option, ["1"], coordinates=_north_of_origin(1), description="Only")
    only.aggregates = {"notDone": 4, "notHome": 2}
    only.progress = 33
    db.commit()
    _assign(db, only, hours=5, publisher="Alice")

    result = assignment_service.select_and_assign(db, territory.id, ORIGIN[0], ORIGIN[1], "Bob", None)

    assert result.assignees == ["Alice"]
    assert (result.not_done, result.not_home, result.progress) == (4, 2, 33)


def test_select_and_assign_uses_congregation_expiry(db, congregation, territory, default_option, make_map):
    congregation.expiry_hours = 2
    db.commit()
    make_map(db, territory, default_option, ["1"])
    now = datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)

    result = assignment_service.select_and_assign(db, territory.id, 1.3, 103.8, None, None, now=now)
    assignment = db.get(Assignment, result.assignment_id)

    assert assignment.expiry_date.replace(tzinfo=timezone.utc) == now + timedelta(hours=2)


def test_select_and_assign_errors(db, territory):
    with pytest.raises(TerritoryRequiredError):
        assignment_service.select_and_assign(db, None, 1, 1, None, None)
    with pytest.raises(InvalidCoordinatesError):
        assignment_service.select_and_assign(db, territory.id, "x", 1, None, None)
    with pytest.raises(NoMapsFoundError):
        assignment_service.select_and_assign(db, territory.id, 1, 1, None, None)
    assert db.query(Assignment).count() == 0


def test_select_and_assign_with_only_broken_coordinates(db, territory, default_option, make_map):
    make_map(db, territory, default_option, ["1"], coordinates="oops")

    with pytest.raises(NoMapsFoundError):
        assignment_service.select_and_assign(db, territory.id, 1, 1, None, None)
    assert db.query(Assignment).count() == 0


# =============================================================================
# Cleanup
# =============================================================================

def test_cleanup_removes_only_expired(db, territory, default_option, make_map):
    map_record = make_map(db, territory, default_option, ["1"])
    _assign(db, map_record, hours=-2)
    _assign(db, map_record, hours=-1, type_=AssignmentType.PERSONAL.value)
    _assign(db, map_record, hours=3)

    removed = assignment_service.cleanup_expired_assignments(db)
    db.commit()

    assert removed == 2
    assert db.query(Assignment).count() == 1
