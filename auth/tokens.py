"""
auth/tokens.py -- Random token generation, external encodings, cookie helpers.

Security design decisions:
  Entropy: every session id and every secret token comes from fresh_token(),
       16 bytes (128 bits) read from the OS CSPRNG via secrets.token_bytes.
       A failure to read the OS source is an EntropyUnavailable error, never
       retried and never replaced by a weaker generator.

  Session ids: stored as raw bytes, exchanged as 32 lowercase hex chars.
       session_from_hex() rejects anything that is not exactly that shape
       with BadSessionId before a store lookup happens.

  Secrets (email confirmation, password reset): URL-safe base64 without
       padding, always 22 chars, so they can be dropped into a link as-is.

  Cookie: httpOnly, samesite=lax, global path, optional site domain. No
       max_age: sessions have no absolute expiry, the browser keeps the
       cookie until logout clears it.

Layer rule: no imports from api/, notify/, or core/.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import secrets

from auth.errors import BadSessionId, EntropyUnavailable

logger = logging.getLogger("hanashi.auth")

SESSID_BITS = 128
SESSID_BYTES = SESSID_BITS // 8
SESSID_HEX_LEN = SESSID_BITS // 4
SECRET_LEN = 22  # len(urlsafe_b64encode(16 bytes)) without "=="

_SESSID_HEX_RE = re.compile(r"[0-9a-fA-F]{%d}" % SESSID_HEX_LEN)


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


def fresh_token() -> bytes:
    """Return 128 bits from the OS random source."""
    try:
        return secrets.token_bytes(SESSID_BYTES)
    except (OSError, NotImplementedError) as exc:
        logger.critical("Unable to read the system random number generator")
        raise EntropyUnavailable("Unable to connect to the system random number generator!") from exc


def fresh_secret() -> str:
    """Return a new URL-safe secret for an email link."""
    return base64.urlsafe_b64encode(fresh_token()).decode("ascii").rstrip("=")


# ---------------------------------------------------------------------------
# Session id encoding
# ---------------------------------------------------------------------------


def session_to_hex(sess_id: bytes) -> str:
    return sess_id.hex()


def session_from_hex(token: str) -> bytes:
    """Decode the external session id. Raises BadSessionId on any malformation."""
    if not isinstance(token, str) or _SESSID_HEX_RE.fullmatch(token) is None:
        raise BadSessionId()
    return bytes.fromhex(token)


def is_wellformed_secret(secret: str) -> bool:
    """Cheap shape check for secrets arriving from a URL."""
    if not isinstance(secret, str) or len(secret) != SECRET_LEN:
        return False
    try:
        return len(base64.urlsafe_b64decode(secret + "==")) == SESSID_BYTES
    except (binascii.Error, ValueError):
        return False


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(
    response,
    token: str,
    cookie_name: str = "session_id",
    domain: str = "",
    secure: bool = False,
) -> None:
    """Write the session id as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    path="/" and domain=<site domain>: one cookie for the whole site.
    """
    response.set_cookie(
        cookie_name,
        value=token,
        path="/",
        domain=domain or None,
        httponly=True,
        samesite="lax",
        secure=secure,
    )


def clear_session_cookie(response, cookie_name: str = "session_id", domain: str = "") -> None:
    response.delete_cookie(cookie_name, path="/", domain=domain or None)
