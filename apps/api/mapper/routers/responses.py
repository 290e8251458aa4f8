"""Shared response helpers for mutation endpoints."""

import logging

from fastapi import HTTPException
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

AGGREGATES_REFRESH_FAILED = "aggregates_refresh_failed"


def with_refresh_warnings(body: dict, *refreshed: bool) -> dict:
    """
    Attach a soft warning when any post-commit aggregate refresh failed.

    The mutation itself is committed at this point and still reported as
    successful.
    """
    if not all(refreshed):
        body["warnings"] = [AGGREGATES_REFRESH_FAILED]
    return body


def transaction_failed(db: Session, exc: Exception) -> HTTPException:
    """Roll back a failed mutation and build the 500 to raise."""
    db.rollback()
    logger.error(f"Transaction failed: {exc}")
    return HTTPException(status_code=500, detail="Transaction failed")
