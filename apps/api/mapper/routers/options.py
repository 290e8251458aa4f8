"""Congregation option (address type) endpoints."""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from mapper.core.deps import get_current_session, get_db, require_csrf_header, require_roles
from mapper.db.enums import Role
from mapper.routers.responses import transaction_failed
from mapper.schemas.auth import UserSession
from mapper.services import option_service
from mapper.services.option_service import (
    DefaultOptionInvariantError,
    DuplicateOptionError,
    OptionInput,
    OptionNotFoundError,
    OptionServiceError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/options", tags=["options"])


class OptionItem(BaseModel):
    id: UUID | None = None
    code: str = ""
    description: str = ""
    sequence: int = 0
    is_countable: bool = False
    is_default: bool = False
    is_deleted: bool = False


class UpdateOptionsRequest(BaseModel):
    options: list[OptionItem] = Field(default_factory=list)


class OptionResponse(BaseModel):
    id: UUID
    code: str
    description: str | None
    sequence: int
    is_countable: bool
    is_default: bool

    model_config = {"from_attributes": True}


@router.get("", response_model=list[OptionResponse])
def list_options(
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """List the congregation's options in sequence order."""
    return option_service.list_options(db, session.congregation_id)


@router.post("/update", response_model=dict, dependencies=[Depends(require_csrf_header)])
def update_options(
    data: UpdateOptionsRequest,
    session: UserSession = Depends(require_roles([Role.ADMINISTRATOR])),
    db: Session = Depends(get_db),
):
    """Create, update and delete options in one batch."""
    options = [OptionInput(**item.model_dump()) for item in data.options]
    try:
        option_service.update_options(db, session.congregation_id, options)
        db.commit()
    except OptionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DuplicateOptionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except DefaultOptionInvariantError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except OptionServiceError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SQLAlchemyError as e:
        raise transaction_failed(db, e)

    return {"message": "Options processed successfully"}
