"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and the route
modules (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

Limit strings come from settings and are resolved per request through the
callables below, so HANASHI_LOGIN_RATE_LIMIT / HANASHI_RESET_RATE_LIMIT take
effect without touching the decorators. slowapi calls these with no
request in hand, so they are the one place outside the lifespan and the CLI
that reads get_settings() (cached, so each call is a dict lookup).

This per-IP limit is independent of the per-account flood filter on password
reset requests (auth/secret_tokens.py): one throttles clients, the other
throttles mail to a single address.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_limit() -> str:
    return get_settings().login_rate_limit


def reset_limit() -> str:
    return get_settings().reset_rate_limit
