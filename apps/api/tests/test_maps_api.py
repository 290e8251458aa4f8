"""API tests for map structure endpoints."""

import uuid
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from mapper.db.enums import AddressStatus
from mapper.db.models import Address, Congregation, Map, Territory
from mapper.services import aggregation_service, map_service

DB_ERROR = OperationalError("INSERT", {}, Exception("disk I/O error"))


def _address_count(db, map_id) -> int:
    return db.query(Address).filter(Address.map_id == map_id).count()


# =============================================================================
# Auth / RBAC
# =============================================================================

@pytest.mark.asyncio
async def test_requires_session(client, db, territory, default_option, make_map):
    map_record = make_map(db, territory, default_option, ["1"])

    response = await client.post("/map/codes", json={"map_id": str(map_record.id)})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_structural_change_requires_administrator(
    publisher_client, conductor_client, db, territory, default_option, make_map
):
    map_record = make_map(db, territory, default_option, ["1"])
    body = {"map_id": str(map_record.id), "codes": ["2"]}

    assert (await publisher_client.post("/map/code/add", json=body)).status_code == 403
    assert (await conductor_client.post("/map/code/add", json=body)).status_code == 403
    assert _address_count(db, map_record.id) == 1


@pytest.mark.asyncio
async def test_mutation_requires_csrf_header(admin_client, db, territory, default_option, make_map):
    map_record = make_map(db, territory, default_option, ["1"])

    response = await admin_client.post(
        "/map/code/add",
        json={"map_id": str(map_record.id), "codes": ["2"]},
        headers={"X-Requested-With": ""},
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_map_of_other_congregation_is_not_found(admin_client, db, default_option, make_map):
    other = Congregation(name="Other")
    db.add(other)
    db.flush()
    foreign_territory = Territory(congregation_id=other.id, code="X")
    db.add(foreign_territory)
    db.flush()
    map_record = make_map(db, foreign_territory, default_option, ["1", "2"])

    response = await admin_client.post(
        "/map/code/delete", json={"map_id": str(map_record.id), "code": "1"}
    )

    assert response.status_code == 404
    assert _address_count(db, map_record.id) == 2


# =============================================================================
# Codes
# =============================================================================

@pytest.mark.asyncio
async def test_get_codes(publisher_client, db, territory, default_option, make_map):
    map_record = make_map(db, territory, default_option, ["A", "B"], floors=[1, 2])

    response = await publisher_client.post("/map/codes", json={"map_id": str(map_record.id)})

    assert response.status_code == 200
    assert response.json() == {"codes": ["A", "B"], "type": "multi"}


@pytest.mark.asyncio
async def test_add_codes_refreshes_aggregates(admin_client, db, territory, default_option, make_map):
    map_record = make_map(db, territory, default_option, ["1"], floors=[1, 2])

    response = await admin_client.post(
        "/map/code/add", json={"map_id": str(map_record.id), "codes": ["1", "2", "3"]}
    )

    assert response.status_code == 200
    data = response.json()
    assert (data["inserted"], data["skipped"], data["created"]) == (2, 1, 4)
    assert data["existing_codes"] == ["1"]
    assert "warnings" not in data

    db.expire_all()
    assert db.get(Map, map_record.id).aggregates.not_done == 6
    assert db.get(Territory, territory.id).aggregates.not_done == 6


@pytest.mark.asyncio
async def test_add_codes_invalid_payload(admin_client, db, territory, default_option, make_map):
    map_record = make_map(db, territory, default_option, ["1"])

    response = await admin_client.post(
        "/map/code/add", json={"map_id": str(map_record.id), "codes": ["ok", 42]}
    )

    assert response.status_code == 400
    assert "index 1" in response.json()["detail"]


@pytest.mark.asyncio
async def test_delete_last_code_is_refused(admin_client, db, territory, default_option, make_map):
    map_record = make_map(db, territory, default_option, ["1"], floors=[1, 2])

    response = await admin_client.post(
        "/map/code/delete", json={"map_id": str(map_record.id), "code": "1"}
    )

    assert response.status_code == 400
    assert _address_count(db, map_record.id) == 2


@pytest.mark.asyncio
async def test_update_sequences(admin_client, db, territory, default_option, make_map):
    map_record = make_map(db, territory, default_option, ["1", "2"])

    response = await admin_client.post(
        "/map/codes/update",
        json={"map_id": str(map_record.id), "codes": [{"code": "1", "sequence": 9}]},
    )

    assert response.status_code == 200
    assert response.json()["updated"] == 1


# =============================================================================
# Floors
# =============================================================================

@pytest.mark.asyncio
async def test_add_and_remove_floor(admin_client, db, territory, default_option, make_map):
    map_record = make_map(db, territory, default_option, ["1", "2"], floors=[1])

    added = await admin_client.post(
        "/map/floor/add", json={"map_id": str(map_record.id), "add_higher": True}
    )
    assert added.status_code == 200
    assert added.json()["floor"] == 2
    assert _address_count(db, map_record.id) == 4

    removed = await admin_client.post(
        "/map/floor/remove", json={"map_id": str(map_record.id), "floor": 1}
    )
    assert removed.status_code == 200
    assert _address_count(db, map_record.id) == 2

    last = await admin_client.post(
        "/map/floor/remove", json={"map_id": str(map_record.id), "floor": 2}
    )
    assert last.status_code == 400
    assert _address_count(db, map_record.id) == 2


# =============================================================================
# Map lifecycle
# =============================================================================

@pytest.mark.asyncio
async def test_create_map(admin_client, db, territory, default_option):
    response = await admin_client.post("/map/add", json={
        "territory_id": str(territory.id),
        "type": "multi",
        "floors": 2,
        "sequence": "01,02,03",
        "coordinates": {"lat": 1.3, "lng": 103.8},
        "name": "Block 9",
    })

    assert response.status_code == 200
    map_id = uuid.UUID(response.json()["map_id"])
    assert _address_count(db, map_id) == 6
    db.expire_all()
    assert db.get(Map, map_id).aggregates.not_done == 6


@pytest.mark.asyncio
async def test_create_map_transaction_failure_leaves_nothing(admin_client, db, territory, default_option):
    with patch.object(map_service, "_new_address", side_effect=DB_ERROR):
        response = await admin_client.post("/map/add", json={
            "territory_id": str(territory.id),
            "type": "single",
            "floors": 1,
            "sequence": "A,B",
        })

    assert response.status_code == 500
    assert response.json()["detail"] == "Transaction failed"
    assert db.query(Map).count() == 0
    assert db.query(Address).count() == 0


@pytest.mark.asyncio
async def test_create_map_without_default_option(admin_client, db, congregation):
    territory = Territory(congregation_id=congregation.id, code="T9")
    db.add(territory)
    db.commit()

    response = await admin_client.post("/map/add", json={
        "territory_id": str(territory.id), "type": "single", "floors": 1, "sequence": "A",
    })

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_reassign_territory_refreshes_both(admin_client, db, congregation, territory, default_option, make_map, set_statuses):
    other = Territory(congregation_id=congregation.id, code="T2")
    db.add(other)
    map_record = make_map(db, territory, default_option, ["1", "2"])
    set_statuses(db, map_record, [(AddressStatus.DONE.value, 0), (AddressStatus.DONE.value, 0)])
    aggregation_service.refresh_map_aggregates(db, map_record.id)
    assert db.get(Territory, territory.id).progress == 100

    response = await admin_client.post("/map/territory/update", json={
        "map_id": str(map_record.id),
        "old_territory_id": str(territory.id),
        "new_territory_id": str(other.id),
    })

    assert response.status_code == 200
    db.expire_all()
    assert db.get(Territory, territory.id).progress == 0
    assert db.get(Territory, other.id).progress == 100


# =============================================================================
# Reset / aggregates
# =============================================================================

@pytest.mark.asyncio
async def test_conductor_resets_map(conductor_client, conductor_user, db, territory, default_option, make_map, set_statuses):
    map_record = make_map(db, territory, default_option, ["1", "2"])
    set_statuses(db, map_record, [(AddressStatus.DONE.value, 0), (AddressStatus.NOT_HOME.value, 1)])

    response = await conductor_client.post("/map/reset", json={"map_id": str(map_record.id)})

    assert response.status_code == 200
    assert response.json()["reset"] == 2
    db.expire_all()
    updated_by = {a.updated_by for a in db.query(Address).filter(Address.map_id == map_record.id)}
    assert updated_by == {conductor_user.name}


@pytest.mark.asyncio
async def test_refresh_failure_is_a_soft_warning(conductor_client, db, territory, default_option, make_map, set_statuses):
    map_record = make_map(db, territory, default_option, ["1"])
    set_statuses(db, map_record, [(AddressStatus.DONE.value, 0)])

    with patch.object(aggregation_service, "compute_map_counts", side_effect=DB_ERROR):
        response = await conductor_client.post("/map/reset", json={"map_id": str(map_record.id)})

    assert response.status_code == 200
    assert response.json()["warnings"] == ["aggregates_refresh_failed"]
    db.expire_all()
    # Reset stays committed
    assert db.query(Address).filter(Address.map_id == map_record.id).one().status == "not_done"


@pytest.mark.asyncio
async def test_recompute_map_endpoint(conductor_client, publisher_client, db, territory, default_option, make_map, set_statuses):
    map_record = make_map(db, territory, default_option, ["1", "2", "3", "4"])
    set_statuses(db, map_record, [(AddressStatus.DONE.value, 0)])

    forbidden = await publisher_client.post("/map/aggregates", json={"map_id": str(map_record.id)})
    response = await conductor_client.post("/map/aggregates", json={"map_id": str(map_record.id)})

    assert forbidden.status_code == 403
    assert response.status_code == 200
    assert response.json()["progress"] == 25
    assert response.json()["aggregates"]["notDone"] == 3
