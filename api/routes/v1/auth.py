"""
api/routes/v1/auth.py -- Login, session, confirmation and password reset endpoints.

Routes:
  POST /api/v1/auth/login                    -- password login; sets session cookie
  POST /api/v1/auth/logout                   -- ends the session; clears cookie
  GET  /api/v1/auth/me                       -- current account; rotates the session
  POST /api/v1/auth/password                 -- change password (requires auth)
  GET  /api/v1/auth/confirm/{secret}         -- which address an invite is for
  POST /api/v1/auth/confirm                  -- accept invite: create account, log in
  POST /api/v1/auth/password-reset           -- request a reset email
  GET  /api/v1/auth/password-reset/{secret}  -- which address a reset link is for
  POST /api/v1/auth/password-reset/complete  -- set new password, log in

Security:
  POST /login and POST /password-reset are rate-limited per client IP.
  Login answers the same 401 for unknown email and wrong password, and
  UserLifecycle.authenticate() equalizes their timing. Use it, never inline.
  POST /password-reset answers 202 whether or not the address is registered
  and whether or not a reset is already pending.
  Cache-Control: no-store on every response that sets a session cookie.
  Password change and reset end every session of the account and issue a
  fresh one to the caller.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_limit, reset_limit
from api.models import (
    AccountResponse,
    ConfirmInfoResponse,
    ConfirmRequest,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    ResetCompleteRequest,
    ResetInfoResponse,
    ResetRequest,
)
from auth.accounts import redact_email
from auth.dependencies import client_address, get_current_session
from auth.errors import AuthError, BadSessionId, NoSuchSession, NoSuchUser, RateLimitExceeded
from auth.models import Account, Session
from auth.tokens import clear_session_cookie, set_session_cookie

logger = logging.getLogger("hanashi.api")

# Auth policy:
# - POST /auth/login, /auth/logout:           public
# - GET  /auth/me, POST /auth/password:        requires a live session
# - /auth/confirm*, /auth/password-reset*:     public, gated by the emailed secret
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _account_response(request: Request, account: Account, session: Session | None = None) -> AccountResponse:
    return AccountResponse.from_account(
        account,
        groups=request.app.state.groups.groups_of(account.id),
        last_seen=session.last_seen if session is not None else None,
    )


def _session_response(request: Request, account: Account, session: Session, status_code: int = 200) -> JSONResponse:
    """JSON body for account plus the session cookie, never cached."""
    settings = request.app.state.settings
    resp = JSONResponse(
        status_code=status_code,
        content=_account_response(request, account, session).model_dump(mode="json"),
    )
    set_session_cookie(
        resp,
        session.token,
        cookie_name=settings.session_cookie_name,
        domain=settings.site_domain,
        secure=settings.secure_cookies,
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _fresh_login(request: Request, account: Account) -> Session:
    """End every session of the account and start one for this client."""
    sessions = request.app.state.sessions
    sessions.end_all_sessions(account.id)
    return sessions.start_session(account, client_address(request))


# ---------------------------------------------------------------------------
# Login / logout / session
# ---------------------------------------------------------------------------


@limiter.limit(login_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=AccountResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    Returns the same generic 401 for unknown email and wrong password.
    """
    settings = request.app.state.settings
    account = request.app.state.lifecycle.authenticate(body.email, body.password, settings.pepper)
    if account is None:
        err = AuthError()
        resp = JSONResponse(status_code=err.status_code, content={"error": {"code": err.code, "message": err.message}})
        resp.headers["Cache-Control"] = "no-store"
        return resp

    session = request.app.state.sessions.start_session(account, client_address(request))
    return _session_response(request, account, session)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """End the current session, if any, and clear the cookie."""
    settings = request.app.state.settings
    token = request.cookies.get(settings.session_cookie_name)
    if token:
        try:
            request.app.state.sessions.end_session(token)
        except BadSessionId:
            pass  # a malformed cookie names no session; clearing it is all there is to do
    resp = JSONResponse(content={"message": "Logged out."})
    clear_session_cookie(resp, settings.session_cookie_name, settings.site_domain)
    return resp


@router.get("/auth/me", response_model=AccountResponse)
def me(
    request: Request,
    current: tuple[Account, Session] = Depends(get_current_session),
) -> JSONResponse:
    """Return the current account and rotate its session token."""
    account, session = current
    fresh = request.app.state.sessions.refresh_session(session, client_address(request))
    return _session_response(request, account, fresh)


@router.post("/auth/password", response_model=AccountResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    current: tuple[Account, Session] = Depends(get_current_session),
) -> JSONResponse:
    """Change the password after re-checking the old one."""
    account, _session = current
    settings = request.app.state.settings
    lifecycle = request.app.state.lifecycle
    if account.email is None or lifecycle.authenticate(account.email, body.old_password, settings.pepper) is None:
        raise AuthError()
    lifecycle.change_password(account.id, body.new_password, settings.pepper)
    return _session_response(request, account, _fresh_login(request, account))


# ---------------------------------------------------------------------------
# Email confirmation
# ---------------------------------------------------------------------------


@router.get("/auth/confirm/{secret}", response_model=ConfirmInfoResponse)
def confirm_info(request: Request, secret: str) -> ConfirmInfoResponse:
    """Show which address an invitation is for. Does not consume it."""
    found = request.app.state.secrets.check_pending_email_confirm(secret)
    if found is None:
        raise NoSuchSession()
    email, _groups = found
    return ConfirmInfoResponse(email=email)


@router.post("/auth/confirm", response_model=AccountResponse, status_code=201)
def confirm(request: Request, body: ConfirmRequest) -> JSONResponse:
    """Accept an invitation: create the account, join its groups, log in."""
    settings = request.app.state.settings
    account = request.app.state.secrets.complete_pending_email_confirm(body.password, body.secret, settings.pepper)
    session = request.app.state.sessions.start_session(account, client_address(request))
    return _session_response(request, account, session, status_code=201)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@limiter.limit(reset_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/password-reset", response_model=MessageResponse, status_code=202)
def request_password_reset(request: Request, body: ResetRequest) -> JSONResponse:
    """Email a reset link to a registered address.

    The answer is 202 in every case so the endpoint can't be used to probe
    which addresses are registered or have a reset pending.
    """
    try:
        reset = request.app.state.secrets.send_password_change_request(body.email)
    except NoSuchUser:
        logger.info("Password reset requested for unknown address %s", redact_email(body.email))
    except RateLimitExceeded:
        logger.info("Password reset for %s suppressed: one is already pending", redact_email(body.email))
    else:
        request.app.state.mailer.send_pw_reset_email(reset)
    return JSONResponse(
        status_code=202,
        content={"message": "If the address is registered, a reset link is on its way."},
    )


@router.get("/auth/password-reset/{secret}", response_model=ResetInfoResponse)
def reset_info(request: Request, secret: str) -> ResetInfoResponse:
    found = request.app.state.secrets.check_password_reset(secret)
    if found is None:
        raise NoSuchSession()
    reset, _account = found
    return ResetInfoResponse(email=reset.email)


@router.post("/auth/password-reset/complete", response_model=AccountResponse)
def complete_password_reset(request: Request, body: ResetCompleteRequest) -> JSONResponse:
    """Set a new password with a reset secret; every old session ends."""
    settings = request.app.state.settings
    account = request.app.state.secrets.complete_password_reset(body.secret, body.new_password, settings.pepper)
    session = request.app.state.sessions.start_session(account, client_address(request))
    return _session_response(request, account, session)
