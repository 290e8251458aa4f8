"""Pydantic schemas for API request/response models."""

from mapper.schemas.auth import TokenPayload, UserSession

__all__ = [
    "TokenPayload",
    "UserSession",
]
