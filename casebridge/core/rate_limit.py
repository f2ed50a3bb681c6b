"""Rate limiting configuration for the HTTP API."""

import os

from slowapi import Limiter
from slowapi.util import get_remote_address

from casebridge.core.config import settings

IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")

# Applied per route to mutating endpoints
WRITE_LIMIT = f"{max(settings.RATE_LIMIT_API, 1)}/minute"

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
    enabled=not IS_TESTING and settings.RATE_LIMIT_API > 0,
)
