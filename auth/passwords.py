"""
auth/passwords.py -- Password hashing and verification with a site-wide pepper.

Security design:
  Peppered pre-hash: the plaintext is first run through HMAC-SHA256 keyed
      with the runtime pepper, and the base64 of that digest is what bcrypt
      sees. Two consequences:
        - A stolen database is useless without the pepper, which lives only
          in the process environment.
        - bcrypt's 72-byte input limit never truncates anything: the pre-hash
          is always 44 bytes, so every byte of a 1024-byte password counts.

  bcrypt: per-credential random salt and a tunable cost factor. checkpw()
      compares in constant time with respect to the candidate.

  Length policy is measured in UTF-8 bytes: 8 <= len <= 1024.

  _DUMMY_CREDENTIAL: computed once at import so authenticate() can burn the
      same bcrypt work for an unknown email as for a wrong password.

Layer rule: no imports from api/, notify/, or core/.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets

import bcrypt

from auth.errors import PasswordDoesntMatch, PasswordTooLong, PasswordTooShort
from auth.models import Credential

MIN_PASSWORD_BYTES = 8
MAX_PASSWORD_BYTES = 1024
BCRYPT_ROUNDS = 12

# bcrypt salts look like b"$2b$12$" + 22 chars
_SALT_PREFIX_LEN = 29


def _prehash(plaintext: str, pepper: bytes) -> bytes:
    digest = hmac.new(pepper, plaintext.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest)


def _check_length(plaintext: str) -> None:
    size = len(plaintext.encode("utf-8"))
    if size < MIN_PASSWORD_BYTES:
        raise PasswordTooShort()
    if size > MAX_PASSWORD_BYTES:
        raise PasswordTooLong()


def set_password(plaintext: str, pepper: bytes, rounds: int | None = None) -> Credential:
    """Derive a fresh Credential for plaintext.

    rounds defaults to the module-level BCRYPT_ROUNDS, read at call time.

    Raises PasswordTooShort / PasswordTooLong before doing any hashing work.
    The returned Credential has no account_id yet; the store fills it in.
    """
    _check_length(plaintext)
    rounds = rounds or BCRYPT_ROUNDS
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(_prehash(plaintext, pepper), salt).decode("ascii")
    return Credential(
        password_hash=hashed,
        salt=hashed[:_SALT_PREFIX_LEN],
        rounds=rounds,
    )


def check_password(plaintext: str, credential: Credential, pepper: bytes) -> None:
    """Verify plaintext against a stored credential.

    Returns None on success and raises PasswordDoesntMatch otherwise. A
    mismatch is an expected outcome, not a fault: callers decide whether to
    fold it into AuthError.

    Length violations are reported as a mismatch too. A stored credential can
    never have been derived from an out-of-range password, and reporting the
    length rule here would tell a login form more than "wrong password".
    """
    try:
        _check_length(plaintext)
    except (PasswordTooShort, PasswordTooLong):
        raise PasswordDoesntMatch() from None
    try:
        ok = bcrypt.checkpw(_prehash(plaintext, pepper), credential.password_hash.encode("ascii"))
    except ValueError:
        # Corrupt hash in the DB. Treat as a non-match rather than crashing
        # the login route; the row is still unusable either way.
        ok = False
    if not ok:
        raise PasswordDoesntMatch()


# Timing equalization dummy: bcrypt work identical to a real check.
_DUMMY_PEPPER = secrets.token_bytes(32)
_DUMMY_CREDENTIAL: Credential = set_password("hanashi_timing_dummy", _DUMMY_PEPPER)


def burn_dummy_check(plaintext: str) -> None:
    """Run one bcrypt verification whose result is discarded.

    Called when the account does not exist so the response time matches a
    real wrong-password check.
    """
    try:
        check_password(plaintext, _DUMMY_CREDENTIAL, _DUMMY_PEPPER)
    except PasswordDoesntMatch:
        pass
