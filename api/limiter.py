"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and the route
modules under api/routes/v1/ (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

Limits are callables reading Settings so they can be tuned per deployment
without a code change. The credential check gets its own, tighter limit: it
is the endpoint an attacker with a stolen handset would hammer.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def verify_limit() -> str:
    return get_settings().verify_rate_limit


def api_limit() -> str:
    return get_settings().api_rate_limit
