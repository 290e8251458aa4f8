"""Territory API endpoints: resets, quicklink assignment and aggregates."""

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mapper.core.deps import (
    get_current_session,
    get_db,
    require_csrf_header,
    require_roles,
)
from mapper.core.rate_limit import LINK_RATE_LIMIT, limiter
from mapper.db.enums import Role
from mapper.routers.responses import transaction_failed, with_refresh_warnings
from mapper.schemas.auth import UserSession
from mapper.services import aggregation_service, assignment_service, map_service
from mapper.services.assignment_service import (
    AssignmentServiceError,
    CongregationNotFoundError,
    NoMapsFoundError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/territory", tags=["territories"])

CONDUCTOR_OR_ADMIN = [Role.CONDUCTOR, Role.ADMINISTRATOR]


# =============================================================================
# Schemas
# =============================================================================


class TerritoryRequest(BaseModel):
    territory_id: UUID


class LinkRequest(BaseModel):
    territory_id: UUID | None = None
    # Checked by the service: must be finite numbers in range
    lat: Any = None
    lng: Any = None
    publisher: str | None = None


class CoordinatesResponse(BaseModel):
    lat: float
    lng: float


class LinkResponse(BaseModel):
    assignment_id: UUID
    map_id: UUID
    map_name: str
    progress: int
    not_done: int
    not_home: int
    coordinates: CoordinatesResponse
    assignees: list[str]


def _require_territory(db: Session, session: UserSession, territory_id: UUID) -> None:
    try:
        map_service.get_territory(db, territory_id, session.congregation_id)
    except map_service.TerritoryNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


# =============================================================================
# Endpoints
# =============================================================================


@router.post("/reset", response_model=dict, dependencies=[Depends(require_csrf_header)])
def reset_territory(
    data: TerritoryRequest,
    session: UserSession = Depends(require_roles(CONDUCTOR_OR_ADMIN)),
    db: Session = Depends(get_db),
):
    """Reset done and not-home addresses of every map in a territory."""
    _require_territory(db, session, data.territory_id)
    try:
        reset = map_service.reset_territory(db, data.territory_id, session.name)
        db.commit()
    except map_service.MapServiceError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SQLAlchemyError as e:
        raise transaction_failed(db, e)

    refreshed = aggregation_service.refresh_territory_and_maps(db, data.territory_id)
    return with_refresh_warnings(
        {"message": "Territory reset successfully", "reset": reset}, refreshed
    )


@router.post("/link", response_model=LinkResponse, dependencies=[Depends(require_csrf_header)])
@limiter.limit(LINK_RATE_LIMIT)
def create_quicklink(
    request: Request,
    data: LinkRequest,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """
    Assign the publisher the best map of a territory.

    Picks the map with the fewest active assignments, then the nearest,
    then the least progressed among maps at the same spot.
    """
    try:
        if not data.territory_id:
            raise assignment_service.TerritoryRequiredError("Territory ID is required")
        assignment_service.validate_location(data.lat, data.lng)
    except AssignmentServiceError as e:
        raise HTTPException(status_code=400, detail=str(e))

    _require_territory(db, session, data.territory_id)

    try:
        result = assignment_service.select_and_assign(
            db,
            territory_id=data.territory_id,
            lat=data.lat,
            lng=data.lng,
            publisher=data.publisher,
            user_id=session.user_id,
        )
        db.commit()
    except (NoMapsFoundError, CongregationNotFoundError, assignment_service.TerritoryNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AssignmentServiceError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SQLAlchemyError as e:
        raise transaction_failed(db, e)

    return LinkResponse(
        assignment_id=result.assignment_id,
        map_id=result.map_id,
        map_name=result.map_name,
        progress=result.progress,
        not_done=result.not_done,
        not_home=result.not_home,
        coordinates=CoordinatesResponse(**result.coordinates.to_dict()),
        assignees=result.assignees,
    )


@router.post("/aggregates", response_model=dict, dependencies=[Depends(require_csrf_header)])
def recompute_territory(
    data: TerritoryRequest,
    session: UserSession = Depends(require_roles(CONDUCTOR_OR_ADMIN)),
    db: Session = Depends(get_db),
):
    """Recompute a territory's aggregates from its addresses."""
    _require_territory(db, session, data.territory_id)
    try:
        counts = aggregation_service.recompute_territory(db, data.territory_id)
        db.commit()
    except aggregation_service.AggregationError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SQLAlchemyError as e:
        raise transaction_failed(db, e)

    return {
        "message": "Territory aggregates updated",
        "progress": counts.progress,
        "aggregates": counts.to_aggregates().to_dict(),
    }
