"""Address call-outcome endpoint."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mapper.core.deps import get_current_session, get_db, require_csrf_header
from mapper.routers.responses import transaction_failed, with_refresh_warnings
from mapper.schemas.auth import UserSession
from mapper.services import address_service, aggregation_service
from mapper.services.address_service import AddressNotFoundError, AddressServiceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/address", tags=["addresses"])


class OutcomeRequest(BaseModel):
    address_id: UUID
    status: str = Field(..., description="not_done, done, not_home, do_not_call or invalid")
    notes: str | None = None


@router.post("/outcome", response_model=dict, dependencies=[Depends(require_csrf_header)])
def record_outcome(
    data: OutcomeRequest,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """
    Record the outcome of a call at an address.

    Only the map's aggregates are refreshed here; the territory catches up
    on the next scheduled sweep.
    """
    kwargs = {}
    if "notes" in data.model_fields_set:
        kwargs["notes"] = data.notes
    try:
        address = address_service.record_outcome(
            db,
            data.address_id,
            data.status,
            acting_user=session.name,
            congregation_id=session.congregation_id,
            **kwargs,
        )
        map_id = address.map_id
        db.commit()
    except AddressNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except AddressServiceError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SQLAlchemyError as e:
        raise transaction_failed(db, e)

    refreshed = aggregation_service.refresh_map_aggregates(db, map_id, cascade_to_territory=False)
    return with_refresh_warnings({"message": "Address updated", "status": data.status}, refreshed)
