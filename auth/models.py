"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; the store maps rows into them and the managers do the work.

Timestamps are timezone-aware UTC datetimes. Session ids are raw bytes; the
external hex form lives in auth/tokens.py.

Layer rule: no imports from api/, notify/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Account:
    """An identity record.

    email is None once the account has been deactivated. The row itself (and
    its stats/metrics) survives deactivation so historical activity is kept.
    """

    id: int
    email: str | None
    created_at: datetime


@dataclass
class Credential:
    """Derived hash material for one account.

    password_hash is bcrypt(HMAC-SHA256(pepper, password)). salt is the
    bcrypt salt prefix, stored separately for auditability; bcrypt also
    embeds it in the hash. The pepper itself is never part of this record.

    account_id is None for a freshly derived credential that has not been
    written yet.
    """

    password_hash: str
    salt: str
    rounds: int
    account_id: int | None = None


@dataclass
class Session:
    sess_id: bytes  # 16 bytes, see auth/tokens.py
    account_id: int
    started: datetime
    last_seen: datetime
    last_ip: bytes  # packed IPv4 (4 bytes) or IPv6 (16 bytes)

    @property
    def token(self) -> str:
        return self.sess_id.hex()


@dataclass
class PendingEmailConfirm:
    secret: str
    email: str
    groups: list[int] = field(default_factory=list)
    added: datetime | None = None


@dataclass
class PasswordResetSecret:
    secret: str
    account_id: int
    email: str  # snapshot taken when the request was made
    added: datetime


@dataclass
class UserGroup:
    id: int
    group_name: str
    anonymous: bool = False


@dataclass
class GroupMembership:
    account_id: int
    group_id: int
    anonymous: bool = False


@dataclass
class UserStats:
    account_id: int
    days_used: int = 0
    all_active_time_ms: int = 0
    quiz_answered: int = 0
    quiz_correct: int = 0
    last_nag_email: datetime | None = None


@dataclass
class UserMetrics:
    account_id: int
    new_words_since_break: int = 0
    new_sentences_since_break: int = 0
    new_words_today: int = 0
    new_sentences_today: int = 0
    break_until: datetime | None = None
