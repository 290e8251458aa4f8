"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
Call from external cron (every 5 minutes for cleanup, every
TERRITORY_AGGREGATES_INTERVAL_MINUTES for the aggregates sweep).
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Header, HTTPException
from pydantic import BaseModel

from mapper.core.config import settings
from mapper.db.session import SessionLocal
from mapper.services import aggregation_service, assignment_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal/scheduled", tags=["internal"])


def verify_internal_secret(x_internal_secret: str = Header(...)):
    """Verify the internal secret header."""
    expected = settings.INTERNAL_SECRET
    if not expected:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if x_internal_secret != expected:
        raise HTTPException(status_code=403, detail="Invalid internal secret")


class CleanupResponse(BaseModel):
    skipped: bool = False
    removed: int = 0


class TerritorySweepResponse(BaseModel):
    skipped: bool = False
    territories_processed: int = 0
    territories_failed: int = 0


@router.post("/assignments-cleanup", response_model=CleanupResponse)
def assignments_cleanup(x_internal_secret: str = Header(...)):
    """Delete every expired assignment."""
    verify_internal_secret(x_internal_secret)

    if not settings.ENABLE_ASSIGNMENTS_CLEANUP:
        logger.info("Assignments cleanup disabled, skipping")
        return CleanupResponse(skipped=True)

    with SessionLocal() as db:
        removed = assignment_service.cleanup_expired_assignments(
            db, datetime.now(timezone.utc)
        )
        db.commit()

    return CleanupResponse(removed=removed)


@router.post("/territory-aggregates", response_model=TerritorySweepResponse)
def territory_aggregates(x_internal_secret: str = Header(...)):
    """
    Recompute aggregates of territories touched in the last interval.

    Reconciles any map or territory whose post-mutation refresh failed.
    """
    verify_internal_secret(x_internal_secret)

    if not settings.ENABLE_TERRITORY_AGGREGATIONS:
        logger.info("Territory aggregations disabled, skipping")
        return TerritorySweepResponse(skipped=True)

    with SessionLocal() as db:
        processed, failed = aggregation_service.process_territory_aggregates(
            db, settings.TERRITORY_AGGREGATES_INTERVAL_MINUTES
        )

    return TerritorySweepResponse(
        territories_processed=processed,
        territories_failed=failed,
    )
