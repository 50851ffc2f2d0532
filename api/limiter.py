"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and the route
modules (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same counter
store. Counters live in Redis by default (settings.limiter_storage_uri), so
every worker process enforces the same fixed window per client IP and route.

Limit strings (LOGIN_RATE_LIMIT / AUTH_RATE_LIMIT) are read once at import.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

LOGIN_LIMIT = _settings.login_rate_limit
AUTH_LIMIT = _settings.auth_rate_limit

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=_settings.limiter_storage_uri,
    strategy="fixed-window",
    headers_enabled=True,
    # Redis outage: keep limiting per process instead of failing requests
    in_memory_fallback_enabled=True,
)
