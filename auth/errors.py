"""
auth/errors.py -- Domain and infrastructure exceptions for the identity layer.

Two families:
  HanashiError subclasses are expected, recoverable outcomes (bad input, wrong
  password, unknown secret, flood filter). They carry a stable `code` and the
  HTTP `status_code` the API boundary maps them to. They are never logged as
  faults.

  InfrastructureError wraps store and transport failures with context. The API
  boundary turns it into a generic 500 and logs the chained cause.

Layer rule: no imports from api/, notify/, or core/.
"""

from __future__ import annotations


class HanashiError(Exception):
    """Base class for identity-layer outcomes that callers are expected to handle."""

    status_code: int = 400
    code: str = "bad_request"
    message: str = "Bad request."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        if message is not None:
            self.message = message


# ---------------------------------------------------------------------------
# Validation (400)
# ---------------------------------------------------------------------------


class EmailAddressTooLong(HanashiError):
    message = "A valid e-mail address can be 254 characters at maximum."


class EmailAddressNotValid(HanashiError):
    message = "An e-mail address must contain the character '@'."


class PasswordTooShort(HanashiError):
    message = "A valid password must be at least 8 characters (bytes)."


class PasswordTooLong(HanashiError):
    message = "A valid password must be at maximum 1024 characters (bytes)."


class PasswordAlreadySet(HanashiError):
    status_code = 409
    code = "conflict"
    message = "Password already set!"


class AccountExists(HanashiError):
    status_code = 409
    code = "conflict"
    message = "An account with that e-mail address already exists."


class FormParseError(HanashiError):
    message = "Can't parse the HTTP form!"


# ---------------------------------------------------------------------------
# Authentication (401)
# ---------------------------------------------------------------------------


class PasswordDoesntMatch(HanashiError):
    status_code = 401
    code = "unauthorized"
    message = "Password doesn't match."


class AuthError(HanashiError):
    """Generic login failure. Folds NoSuchUser and PasswordDoesntMatch."""

    status_code = 401
    code = "unauthorized"
    message = "Username (= e-mail) or password doesn't match."


class BadSessionId(HanashiError):
    status_code = 401
    code = "unauthorized"
    message = "Malformed session ID!"


class NoSuchSession(HanashiError):
    """No session row (or no secret row) matches the presented token."""

    status_code = 401
    code = "unauthorized"
    message = "Session doesn't exist!"


# ---------------------------------------------------------------------------
# Lookup / policy
# ---------------------------------------------------------------------------


class NoSuchUser(HanashiError):
    status_code = 404
    code = "not_found"

    def __init__(self, email: str) -> None:
        self.email = email
        super().__init__(f"No user with e-mail address {email} exists.")


class NoneResult(HanashiError):
    """A named authorization group does not exist."""

    status_code = 403
    code = "forbidden"

    def __init__(self, group_name: str) -> None:
        self.group_name = group_name
        super().__init__(f"No user group named {group_name!r} exists.")


class RateLimitExceeded(HanashiError):
    status_code = 429
    code = "rate_limited"
    message = "A request of this kind is already pending. Try again later."


# ---------------------------------------------------------------------------
# Infrastructure (500)
# ---------------------------------------------------------------------------


class InfrastructureError(Exception):
    """Store or transport fault. Always raised `from` the underlying exception."""


class EntropyUnavailable(InfrastructureError):
    """The OS random source could not be read. Fatal, never retried."""
