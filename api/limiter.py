"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and the route
modules under api/routes/v1/ (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

Limits are read from Settings at request time, so SEARCH_RATE_LIMIT and
INGEST_RATE_LIMIT take effect without touching the route modules.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def search_limit() -> str:
    return get_settings().search_rate_limit


def ingest_limit() -> str:
    return get_settings().ingest_rate_limit
