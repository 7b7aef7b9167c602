"""
auth/dependencies.py -- FastAPI Depends() helpers for session authentication.

The session cookie (named by settings.session_cookie_name) carries the
32-char hex session id. An absent or malformed cookie, or one naming a
session that no longer exists, means "no session": the soft variant returns
None and the hard variants raise 401.

try_get_current_session() is the soft variant (returns None on failure).
get_current_session() wraps it and raises HTTP 401 if unauthenticated.
require_group(group) builds a dependency that also demands group membership
and raises HTTP 403 otherwise. require_admin is require_group(Group.ADMINS).

Services are read from request.app.state, wired by the API lifespan.

Layer rule: no imports from api/, notify/, or core/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import ipaddress
import logging

from fastapi import HTTPException, Request

from auth.errors import BadSessionId, NoSuchSession
from auth.groups import Group
from auth.models import Account, Session

logger = logging.getLogger("hanashi.auth")

_UNSPECIFIED_ADDRESS = "0.0.0.0"  # noqa: S104 # nosec B104 -- placeholder value, never bound


def client_address(request: Request) -> str:
    """The peer IP, or 0.0.0.0 for peers without one (unix sockets, test clients)."""
    host = request.client.host if request.client else ""
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return _UNSPECIFIED_ADDRESS
    return host


def try_get_current_session(request: Request) -> tuple[Account, Session] | None:
    """Resolve the session cookie to (Account, Session), or None.

    Never raises for a missing or bad cookie -- callers that need a hard 401
    should use get_current_session().
    """
    cookie_name = request.app.state.settings.session_cookie_name
    token = request.cookies.get(cookie_name)
    if not token:
        return None
    try:
        return request.app.state.sessions.check_session(token)
    except (BadSessionId, NoSuchSession):
        logger.debug("Rejected session cookie from %s", client_address(request))
        return None


def get_current_session(request: Request) -> tuple[Account, Session]:
    """Require a live session. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(current: tuple[Account, Session] = Depends(get_current_session)): ...
    """
    found = try_get_current_session(request)
    if found is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return found


def get_current_account(request: Request) -> Account:
    return get_current_session(request)[0]


def require_group(group: Group | str):
    """Dependency factory: a live session whose account belongs to `group`.

    An unknown group name raises NoneResult, which the API maps to 403 --
    a route guarded by a group that does not exist admits nobody.
    """

    def dependency(request: Request) -> Account:
        account = get_current_account(request)
        if not request.app.state.groups.check_user_group(account.id, group):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "Insufficient privileges."},
            )
        return account

    return dependency


require_admin = require_group(Group.ADMINS)
