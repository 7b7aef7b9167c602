"""
API request and response models for Hanashi REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Length rules for emails and passwords are NOT repeated here. The domain layer
owns them and raises typed errors that the API maps to 400, so the HTTP and
CLI paths reject exactly the same inputs.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Account, UserGroup

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    email: str = Field(max_length=1024)
    # Not stripped: whitespace is part of a password.
    password: str = Field(max_length=4096)

    @field_validator("email")
    @classmethod
    def strip_email(cls, value: str) -> str:
        return value.strip()


class PasswordChangeRequest(BaseModel):
    old_password: str = Field(max_length=4096)
    new_password: str = Field(max_length=4096)


class ConfirmRequest(BaseModel):
    """Body of POST /auth/confirm: the emailed secret plus the chosen password."""

    secret: str = Field(max_length=64)
    password: str = Field(max_length=4096)


class ResetRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=1024)


class ResetCompleteRequest(BaseModel):
    secret: str = Field(max_length=64)
    new_password: str = Field(max_length=4096)


class InviteRequest(BaseModel):
    """Body of POST /users/invite. group_ids are joined when the invite is accepted."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=1024)
    group_ids: list[int] = Field(default_factory=list, max_length=32)


class CleanPendingRequest(BaseModel):
    older_than_days: int = Field(default=14, ge=0, le=3650)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class GroupResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    group_name: str
    anonymous: bool

    @classmethod
    def from_group(cls, group: UserGroup) -> "GroupResponse":
        return cls(id=group.id, group_name=group.group_name, anonymous=group.anonymous)


class AccountResponse(BaseModel):
    """One account as seen by an admin or by its owner."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: Optional[str]
    created_at: datetime
    groups: list[str] = []
    last_seen: Optional[datetime] = None

    @classmethod
    def from_account(
        cls,
        account: Account,
        groups: list[UserGroup] | None = None,
        last_seen: datetime | None = None,
    ) -> "AccountResponse":
        """Factory Method: the domain -> transport mapping lives next to the model."""
        return cls(
            id=account.id,
            email=account.email,
            created_at=account.created_at,
            groups=[g.group_name for g in groups or []],
            last_seen=last_seen,
        )


class ConfirmInfoResponse(BaseModel):
    """What GET /auth/confirm/{secret} reveals: the invited address only."""

    email: str


class ResetInfoResponse(BaseModel):
    email: str


class InviteResponse(BaseModel):
    email: str
    group_ids: list[int]


class CleanPendingResponse(BaseModel):
    removed: int


class MessageResponse(BaseModel):
    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
