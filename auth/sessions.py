"""
auth/sessions.py -- Session issue, validation, rotation, and retirement.

Lifecycle: absent -> active -> (rotated -> active)* -> ended.

Rotation policy:
  refresh_session() never updates a row in place. It inserts a new session
  that keeps the original `started`, then deletes the account's sessions that
  have been idle longer than ROTATION_GRACE. A browser with requests still in
  flight on the previous token keeps working for up to that window; once the
  account goes idle the table converges on one live token.

  Sessions have no absolute expiry. A session that is never rotated or ended
  stays valid until logout, rotation cleanup, or account removal.

Layer rule: no imports from api/, notify/, or core/.
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.errors import FormParseError, NoSuchSession
from auth.models import Account, Session
from auth.store import IdentityStore
from auth.tokens import fresh_token, session_from_hex

logger = logging.getLogger("hanashi.sessions")

ROTATION_GRACE = timedelta(minutes=1)

ClientAddress = str | ipaddress.IPv4Address | ipaddress.IPv6Address


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def pack_address(address: ClientAddress) -> bytes:
    """Client address as raw bytes: 4 for IPv4, 16 for IPv6."""
    if isinstance(address, str):
        try:
            address = ipaddress.ip_address(address)
        except ValueError:
            raise FormParseError("Can't parse the client address!") from None
    return address.packed


class SessionManager:
    def __init__(self, store: IdentityStore, clock: Callable[[], datetime] = _utcnow) -> None:
        self.store = store
        self.clock = clock

    def start_session(self, account: Account, client_address: ClientAddress) -> Session:
        now = self.clock()
        session = Session(
            sess_id=fresh_token(),
            account_id=account.id,
            started=now,
            last_seen=now,
            last_ip=pack_address(client_address),
        )
        self.store.insert_session(session)
        logger.debug("Session started for account %d", account.id)
        return session

    def check_session(self, token: str) -> tuple[Account, Session]:
        """Resolve an external session token.

        Raises BadSessionId for a malformed token (no store access happens)
        and NoSuchSession when no row matches.
        """
        sess_id = session_from_hex(token)
        found = self.store.get_session_with_account(sess_id)
        if found is None:
            raise NoSuchSession()
        return found

    def refresh_session(self, old_session: Session, client_address: ClientAddress) -> Session:
        """Issue a new token for old_session's account and sweep idle sessions."""
        now = self.clock()
        session = Session(
            sess_id=fresh_token(),
            account_id=old_session.account_id,
            started=old_session.started,
            last_seen=now,
            last_ip=pack_address(client_address),
        )
        with self.store.transaction() as conn:
            self.store.insert_session(session, conn=conn)
            # Runs after the insert so the account is never left without a token.
            removed = self.store.delete_idle_sessions(
                old_session.account_id,
                seen_before=now - ROTATION_GRACE,
                keep=session.sess_id,
                conn=conn,
            )
        if removed:
            logger.debug("Rotation removed %d idle session(s) of account %d", removed, old_session.account_id)
        return session

    def end_session(self, token: str) -> None:
        """Delete the session. Ending an already-ended session is a no-op."""
        self.store.delete_session(session_from_hex(token))

    def end_all_sessions(self, account_id: int) -> int:
        removed = self.store.delete_sessions_for(account_id)
        logger.info("Ended %d session(s) of account %d", removed, account_id)
        return removed
