"""Map structure API endpoints."""

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mapper.core.deps import (
    get_current_session,
    get_db,
    require_csrf_header,
    require_roles,
)
from mapper.db.enums import Role
from mapper.routers.responses import transaction_failed, with_refresh_warnings
from mapper.schemas.auth import UserSession
from mapper.services import aggregation_service, map_service
from mapper.services.map_service import (
    CodeNotFoundError,
    DefaultOptionNotFoundError,
    FloorNotFoundError,
    MapNotFoundError,
    MapServiceError,
    TerritoryNotFoundError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/map", tags=["maps"])

ADMIN_ONLY = [Role.ADMINISTRATOR]
CONDUCTOR_OR_ADMIN = [Role.CONDUCTOR, Role.ADMINISTRATOR]

NOT_FOUND_ERRORS = (
    MapNotFoundError,
    TerritoryNotFoundError,
    DefaultOptionNotFoundError,
    FloorNotFoundError,
    CodeNotFoundError,
)


# =============================================================================
# Schemas
# =============================================================================


class MapRequest(BaseModel):
    map_id: UUID


class AddCodesRequest(MapRequest):
    # Validated by the service so malformed entries report their index
    codes: list[Any] = Field(default_factory=list)


class DeleteCodeRequest(MapRequest):
    code: str = Field(..., min_length=1)


class SequenceItem(BaseModel):
    code: str = Field(..., min_length=1)
    sequence: int


class UpdateSequencesRequest(MapRequest):
    codes: list[SequenceItem] = Field(default_factory=list)


class AddFloorRequest(MapRequest):
    add_higher: bool = False


class RemoveFloorRequest(MapRequest):
    floor: int


class CreateMapRequest(BaseModel):
    territory_id: UUID
    type: str = Field(..., description="single or multi")
    floors: int = 1
    sequence: str = Field(..., description="Comma-separated address codes")
    coordinates: dict[str, float] | None = None
    code: str | None = Field(None, max_length=50)
    name: str | None = Field(None, max_length=255)


class ReassignTerritoryRequest(MapRequest):
    old_territory_id: UUID | None = None
    new_territory_id: UUID


def _raise_service_error(exc: MapServiceError) -> None:
    if isinstance(exc, NOT_FOUND_ERRORS):
        raise HTTPException(status_code=404, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))


# =============================================================================
# Reads
# =============================================================================


@router.post("/codes", response_model=dict)
def get_map_codes(
    data: MapRequest,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Distinct address codes of a map in sequence order."""
    try:
        map_service.get_map(db, data.map_id, session.congregation_id)
        codes, map_type = map_service.get_map_codes(db, data.map_id)
    except MapServiceError as e:
        _raise_service_error(e)
    return {"codes": codes, "type": map_type}


# =============================================================================
# Address codes
# =============================================================================


@router.post("/code/add", response_model=dict, dependencies=[Depends(require_csrf_header)])
def add_address_codes(
    data: AddCodesRequest,
    session: UserSession = Depends(require_roles(ADMIN_ONLY)),
    db: Session = Depends(get_db),
):
    """
    Add address codes to every floor of a map.

    Codes already on the map are skipped and reported back.
    """
    try:
        map_service.validate_codes(data.codes)
        map_service.get_map(db, data.map_id, session.congregation_id)
        result = map_service.add_address_codes(db, data.map_id, data.codes)
        db.commit()
    except MapServiceError as e:
        _raise_service_error(e)
    except SQLAlchemyError as e:
        raise transaction_failed(db, e)

    body = {
        "success": True,
        "message": result.message,
        "requested": result.requested,
        "inserted": result.inserted,
        "skipped": result.skipped,
        "created": result.created,
        "existing_codes": result.existing_codes,
    }
    if result.inserted == 0:
        return body
    refreshed = aggregation_service.refresh_map_aggregates(db, data.map_id)
    return with_refresh_warnings(body, refreshed)


@router.post("/codes/update", response_model=dict, dependencies=[Depends(require_csrf_header)])
def update_sequences(
    data: UpdateSequencesRequest,
    session: UserSession = Depends(require_roles(ADMIN_ONLY)),
    db: Session = Depends(get_db),
):
    """Update the sequence of one or more address codes."""
    updates = [
        map_service.SequenceUpdate(code=item.code, sequence=item.sequence)
        for item in data.codes
    ]
    try:
        map_service.get_map(db, data.map_id, session.congregation_id)
        updated = map_service.update_sequences(db, data.map_id, updates)
        db.commit()
    except MapServiceError as e:
        _raise_service_error(e)
    except SQLAlchemyError as e:
        raise transaction_failed(db, e)

    # Ordering only; aggregates are unaffected
    return {"message": "Address sequences updated successfully", "updated": updated}


@router.post("/code/delete", response_model=dict, dependencies=[Depends(require_csrf_header)])
def delete_address_code(
    data: DeleteCodeRequest,
    session: UserSession = Depends(require_roles(ADMIN_ONLY)),
    db: Session = Depends(get_db),
):
    """Delete an address code from every floor of a map."""
    try:
        map_service.get_map(db, data.map_id, session.congregation_id)
        deleted = map_service.delete_address_code(db, data.map_id, data.code)
        db.commit()
    except MapServiceError as e:
        _raise_service_error(e)
    except SQLAlchemyError as e:
        raise transaction_failed(db, e)

    refreshed = aggregation_service.refresh_map_aggregates(db, data.map_id)
    return with_refresh_warnings(
        {"message": "Address code deleted successfully", "deleted": deleted}, refreshed
    )


# =============================================================================
# Floors
# =============================================================================


@router.post("/floor/add", response_model=dict, dependencies=[Depends(require_csrf_header)])
def add_floor(
    data: AddFloorRequest,
    session: UserSession = Depends(require_roles(ADMIN_ONLY)),
    db: Session = Depends(get_db),
):
    """Add a floor above the highest or below the lowest floor."""
    try:
        map_service.get_map(db, data.map_id, session.congregation_id)
        floor = map_service.add_floor(db, data.map_id, data.add_higher)
        db.commit()
    except MapServiceError as e:
        _raise_service_error(e)
    except SQLAlchemyError as e:
        raise transaction_failed(db, e)

    refreshed = aggregation_service.refresh_map_aggregates(db, data.map_id)
    return with_refresh_warnings({"message": "Floor added successfully", "floor": floor}, refreshed)


@router.post("/floor/remove", response_model=dict, dependencies=[Depends(require_csrf_header)])
def remove_floor(
    data: RemoveFloorRequest,
    session: UserSession = Depends(require_roles(ADMIN_ONLY)),
    db: Session = Depends(get_db),
):
    """Remove a floor and all of its addresses."""
    try:
        map_service.get_map(db, data.map_id, session.congregation_id)
        deleted = map_service.remove_floor(db, data.map_id, data.floor)
        db.commit()
    except MapServiceError as e:
        _raise_service_error(e)
    except SQLAlchemyError as e:
        raise transaction_failed(db, e)

    refreshed = aggregation_service.refresh_map_aggregates(db, data.map_id)
    return with_refresh_warnings(
        {"message": "Floor removed successfully", "deleted": deleted}, refreshed
    )


# =============================================================================
# Map lifecycle
# =============================================================================


@router.post("/add", response_model=dict, dependencies=[Depends(require_csrf_header)])
def create_map(
    data: CreateMapRequest,
    session: UserSession = Depends(require_roles(ADMIN_ONLY)),
    db: Session = Depends(get_db),
):
    """Create a map with its full floors x codes address grid."""
    try:
        map_record = map_service.create_map(
            db,
            territory_id=data.territory_id,
            congregation_id=session.congregation_id,
            map_type=data.type,
            floors=data.floors,
            sequence=data.sequence,
            coordinates=data.coordinates,
            code=data.code,
            name=data.name,
        )
        map_id = map_record.id
        db.commit()
    except MapServiceError as e:
        _raise_service_error(e)
    except SQLAlchemyError as e:
        raise transaction_failed(db, e)

    refreshed = aggregation_service.refresh_map_aggregates(db, map_id)
    return with_refresh_warnings(
        {"message": "Map added successfully", "map_id": str(map_id)}, refreshed
    )


@router.post("/territory/update", response_model=dict, dependencies=[Depends(require_csrf_header)])
def reassign_territory(
    data: ReassignTerritoryRequest,
    session: UserSession = Depends(require_roles(ADMIN_ONLY)),
    db: Session = Depends(get_db),
):
    """Move a map and its addresses to another territory."""
    try:
        map_service.get_map(db, data.map_id, session.congregation_id)
        old_territory_id = map_service.reassign_territory(
            db, data.map_id, data.old_territory_id, data.new_territory_id
        )
        db.commit()
    except MapServiceError as e:
        _raise_service_error(e)
    except SQLAlchemyError as e:
        raise transaction_failed(db, e)

    refreshed = [
        aggregation_service.refresh_map_aggregates(db, data.map_id, cascade_to_territory=False),
        aggregation_service.refresh_territory_aggregates(db, old_territory_id),
        aggregation_service.refresh_territory_aggregates(db, data.new_territory_id),
    ]
    return with_refresh_warnings({"message": "Territory updated successfully"}, *refreshed)


@router.post("/reset", response_model=dict, dependencies=[Depends(require_csrf_header)])
def reset_map(
    data: MapRequest,
    session: UserSession = Depends(require_roles(CONDUCTOR_OR_ADMIN)),
    db: Session = Depends(get_db),
):
    """Reset done and not-home addresses of a map to not done."""
    try:
        map_service.get_map(db, data.map_id, session.congregation_id)
        reset = map_service.reset_map(db, data.map_id, session.name)
        db.commit()
    except MapServiceError as e:
        _raise_service_error(e)
    except SQLAlchemyError as e:
        raise transaction_failed(db, e)

    refreshed = aggregation_service.refresh_map_aggregates(db, data.map_id)
    return with_refresh_warnings({"message": "Map reset successfully", "reset": reset}, refreshed)


@router.post("/aggregates", response_model=dict, dependencies=[Depends(require_csrf_header)])
def recompute_map(
    data: MapRequest,
    session: UserSession = Depends(require_roles(CONDUCTOR_OR_ADMIN)),
    db: Session = Depends(get_db),
):
    """Recompute a map's aggregates and its territory's."""
    try:
        map_service.get_map(db, data.map_id, session.congregation_id)
        counts = aggregation_service.recompute_map(db, data.map_id)
        db.commit()
    except MapServiceError as e:
        _raise_service_error(e)
    except aggregation_service.AggregationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SQLAlchemyError as e:
        raise transaction_failed(db, e)

    return {
        "message": "Map aggregates updated",
        "progress": counts.progress,
        "aggregates": counts.to_aggregates().to_dict(),
    }
