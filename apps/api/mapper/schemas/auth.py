"""Authentication-related Pydantic schemas."""

from uuid import UUID

from pydantic import BaseModel

from mapper.db.enums import Role


class TokenPayload(BaseModel):
    """Decoded JWT payload structure."""
    sub: UUID  # user_id
    congregation_id: UUID
    role: str
    token_version: int


class UserSession(BaseModel):
    """
    Session context for authenticated requests.

    Returned by the get_current_session dependency; carries everything
    needed for authorization and for stamping `updated_by`.
    """
    user_id: UUID
    congregation_id: UUID
    role: Role  # Validated enum
    email: str
    name: str
