"""
api/routes/v1/users.py -- Account and group administration (admins only).

Routes:
  GET    /api/v1/users                              -- all accounts with groups and last activity
  GET    /api/v1/users/pending                      -- addresses with an open invitation
  POST   /api/v1/users/invite                       -- invite an address (pending confirm + email)
  POST   /api/v1/users/pending/clean                -- drop invitations older than N days
  POST   /api/v1/users/{id}/deactivate              -- clear email and password, keep history
  DELETE /api/v1/users/{id}                         -- remove the account and all its data
  POST   /api/v1/users/{id}/groups/{group_id}       -- add to group
  DELETE /api/v1/users/{id}/groups/{group_id}       -- remove from group
  GET    /api/v1/groups                             -- all groups

Security:
  Every route depends on require_admin (session + membership in "admins").
  Admins cannot deactivate or remove their own account through the API, so
  the last admin can't lock everyone out by accident.
"""

from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import (
    AccountResponse,
    CleanPendingRequest,
    CleanPendingResponse,
    GroupResponse,
    InviteRequest,
    InviteResponse,
)
from auth.accounts import validate_email
from auth.dependencies import require_admin
from auth.errors import AccountExists
from auth.models import Account

router = APIRouter()


def _not_found(what: str = "User") -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": f"{what} not found."})


def _refuse_self(target_id: int, current: Account, action: str) -> None:
    if target_id == current.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_action", "message": f"You cannot {action} your own account."},
        )


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[AccountResponse])
def list_users(request: Request, current: Account = Depends(require_admin)) -> list[AccountResponse]:
    store = request.app.state.store
    groups = request.app.state.groups
    last_seen = store.last_seen_by_account()
    return [
        AccountResponse.from_account(
            account,
            groups=groups.groups_of(account.id),
            last_seen=(last_seen.get(account.id) or [None])[0],
        )
        for account in request.app.state.lifecycle.list_accounts()
    ]


@router.get("/users/pending", response_model=list[str])
def list_pending(request: Request, current: Account = Depends(require_admin)) -> list[str]:
    return request.app.state.secrets.all_pending_email_confirms()


@router.get("/groups", response_model=list[GroupResponse])
def list_groups(request: Request, current: Account = Depends(require_admin)) -> list[GroupResponse]:
    return [GroupResponse.from_group(g) for g in request.app.state.groups.all_groups()]


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------


@router.post("/users/invite", response_model=InviteResponse, status_code=202)
def invite(request: Request, body: InviteRequest, current: Account = Depends(require_admin)) -> InviteResponse:
    """Send an invitation email. The account is created when it is accepted."""
    validate_email(body.email)
    if request.app.state.lifecycle.get_by_email(body.email) is not None:
        raise AccountExists()
    store = request.app.state.store
    for group_id in body.group_ids:
        if store.get_group(group_id) is None:
            raise HTTPException(
                status_code=400,
                detail={"code": "bad_request", "message": f"Unknown group id {group_id}."},
            )
    secret = request.app.state.secrets.add_pending_email_confirm(body.email, body.group_ids)
    request.app.state.mailer.send_confirmation(body.email, secret)
    return InviteResponse(email=body.email, group_ids=body.group_ids)


@router.post("/users/pending/clean", response_model=CleanPendingResponse)
def clean_pending(
    request: Request,
    body: CleanPendingRequest,
    current: Account = Depends(require_admin),
) -> CleanPendingResponse:
    removed = request.app.state.secrets.clean_old_pendings(timedelta(days=body.older_than_days))
    return CleanPendingResponse(removed=removed)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@router.post("/users/{account_id}/deactivate", response_model=AccountResponse)
def deactivate(request: Request, account_id: int, current: Account = Depends(require_admin)) -> AccountResponse:
    _refuse_self(account_id, current, "deactivate")
    account = request.app.state.lifecycle.deactivate(account_id)
    if account is None:
        raise _not_found()
    return AccountResponse.from_account(account, groups=request.app.state.groups.groups_of(account_id))


@router.delete("/users/{account_id}", status_code=204)
def remove(request: Request, account_id: int, current: Account = Depends(require_admin)) -> Response:
    _refuse_self(account_id, current, "remove")
    if request.app.state.lifecycle.remove_completely(account_id) is None:
        raise _not_found()
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Group membership
# ---------------------------------------------------------------------------


@router.post("/users/{account_id}/groups/{group_id}", response_model=AccountResponse)
def join_group(
    request: Request,
    account_id: int,
    group_id: int,
    current: Account = Depends(require_admin),
) -> AccountResponse:
    account = request.app.state.lifecycle.get_by_id(account_id)
    if account is None:
        raise _not_found()
    groups = request.app.state.groups
    groups.join_user_group_by_id(account_id, group_id)
    return AccountResponse.from_account(account, groups=groups.groups_of(account_id))


@router.delete("/users/{account_id}/groups/{group_id}", status_code=204)
def leave_group(
    request: Request,
    account_id: int,
    group_id: int,
    current: Account = Depends(require_admin),
) -> Response:
    if not request.app.state.groups.remove_user_group_by_id(account_id, group_id):
        raise _not_found("Membership")
    return Response(status_code=204)
