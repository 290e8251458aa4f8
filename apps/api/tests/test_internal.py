"""Tests for the scheduled internal endpoints."""

from datetime import datetime, timedelta, timezone

import pytest

from mapper.core.config import settings
from mapper.db.enums import AddressStatus, AssignmentType
from mapper.db.models import Assignment, Map, Territory
from mapper.routers import internal as internal_router

SECRET = {"X-Internal-Secret": "secret"}


@pytest.fixture
def internal_db(db, monkeypatch):
    """Route the endpoints' own sessions to the test session."""

    class _TestSession:
        def __enter__(self):
            return db

        def __exit__(self, exc_type, exc, tb):
            return False

    monkeypatch.setattr(settings, "INTERNAL_SECRET", "secret")
    monkeypatch.setattr(internal_router, "SessionLocal", lambda: _TestSession())
    return db


@pytest.mark.asyncio
async def test_wrong_secret_is_forbidden(client, internal_db):
    response = await client.post(
        "/internal/scheduled/assignments-cleanup", headers={"X-Internal-Secret": "nope"}
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_unconfigured_secret(client, db, monkeypatch):
    monkeypatch.setattr(settings, "INTERNAL_SECRET", "")

    response = await client.post("/internal/scheduled/territory-aggregates", headers=SECRET)

    assert response.status_code == 501


@pytest.mark.asyncio
async def test_cleanup_removes_expired(client, internal_db, territory, default_option, make_map):
    db = internal_db
    map_record = make_map(db, territory, default_option, ["1"])
    now = datetime.now(timezone.utc)
    for hours in (-2, -1, 5):
        db.add(Assignment(
            map_id=map_record.id,
            congregation_id=territory.congregation_id,
            type=AssignmentType.NORMAL.value,
            publisher="Ann",
            expiry_date=now + timedelta(hours=hours),
        ))
    db.commit()

    response = await client.post("/internal/scheduled/assignments-cleanup", headers=SECRET)

    assert response.status_code == 200
    assert response.json() == {"skipped": False, "removed": 2}
    assert db.query(Assignment).count() == 1


@pytest.mark.asyncio
async def test_cleanup_disabled(client, internal_db, monkeypatch):
    monkeypatch.setattr(settings, "ENABLE_ASSIGNMENTS_CLEANUP", False)

    response = await client.post("/internal/scheduled/assignments-cleanup", headers=SECRET)

    assert response.status_code == 200
    assert response.json()["skipped"] is True


@pytest.mark.asyncio
async def test_sweep_reconciles_stale_aggregates(client, internal_db, territory, default_option, make_map, set_statuses):
    db = internal_db
    map_record = make_map(db, territory, default_option, ["1", "2"])
    set_statuses(db, map_record, [(AddressStatus.DONE.value, 0), (AddressStatus.DONE.value, 0)])

    response = await client.post("/internal/scheduled/territory-aggregates", headers=SECRET)

    assert response.status_code == 200
    assert response.json() == {
        "skipped": False,
        "territories_processed": 1,
        "territories_failed": 0,
    }
    db.expire_all()
    assert db.get(Map, map_record.id).progress == 100
    assert db.get(Territory, territory.id).progress == 100


@pytest.mark.asyncio
async def test_sweep_disabled(client, internal_db, monkeypatch):
    monkeypatch.setattr(settings, "ENABLE_TERRITORY_AGGREGATIONS", False)

    response = await client.post("/internal/scheduled/territory-aggregates", headers=SECRET)

    assert response.json() == {
        "skipped": True,
        "territories_processed": 0,
        "territories_failed": 0,
    }
