"""Rate limiting configuration for the mapper API."""

import os

from slowapi import Limiter
from slowapi.util import get_remote_address

from mapper.core.config import settings

# In-memory storage unless RATE_LIMIT_STORAGE_URI points at a shared backend
IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://" if IS_TESTING else settings.RATE_LIMIT_STORAGE_URI,
    enabled=not IS_TESTING,
)

LINK_RATE_LIMIT = f"{settings.RATE_LIMIT_LINK}/minute"
