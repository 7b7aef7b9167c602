"""
auth/secret_tokens.py -- Email confirmation and password reset secrets.

Both families are single-use secrets delivered by email, generated by
fresh_secret() and checked the same way. They differ in what they unlock:

  Email confirmation: proves ownership of an address before an account
      exists. Completion creates the account and joins the invited groups.

  Password reset: proves ownership of an existing account's address.
      At most one valid secret per account. A new request while one is
      younger than RESET_WINDOW is rejected (flood filter); an older one is
      superseded. A secret past RESET_WINDOW reads as absent and is deleted
      on that read.

Race safety (claim-by-delete):
  Consumption deletes the secret row inside the same transaction that does
  the work and checks the affected row count. Of two concurrent completions
  only one delete can affect a row; the other sees zero, raises
  NoSuchSession, and its transaction rolls back.

Layer rule: no imports from api/, notify/, or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone

from auth.accounts import UserLifecycle, redact_email
from auth.errors import NoSuchSession, NoSuchUser, RateLimitExceeded
from auth.models import Account, PasswordResetSecret, PendingEmailConfirm
from auth.passwords import set_password
from auth.store import IdentityStore
from auth.tokens import fresh_secret

logger = logging.getLogger("hanashi.secrets")

RESET_WINDOW = timedelta(days=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SecretTokenStore:
    def __init__(
        self,
        store: IdentityStore,
        lifecycle: UserLifecycle,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.clock = clock

    # ------------------------------------------------------------------
    # Email confirmation
    # ------------------------------------------------------------------

    def add_pending_email_confirm(self, email: str, group_ids: Iterable[int] = ()) -> str:
        """Register an invitation and return its secret."""
        confirm = PendingEmailConfirm(
            secret=fresh_secret(),
            email=email,
            groups=list(group_ids),
            added=self.clock(),
        )
        self.store.insert_pending_confirm(confirm)
        logger.info("Pending confirmation added for %s", redact_email(email))
        return confirm.secret

    def check_pending_email_confirm(self, secret: str) -> tuple[str, list[int]] | None:
        """(email, group_ids) for a live secret, else None. Does not consume it."""
        confirm = self.store.get_pending_confirm(secret)
        if confirm is None:
            return None
        return confirm.email, confirm.groups

    def complete_pending_email_confirm(self, password: str, secret: str, pepper: bytes) -> Account:
        """Consume the secret, create the account and join its groups.

        All of it happens in one transaction. Raises NoSuchSession for an
        unknown or already-consumed secret; validation errors from account
        creation leave the secret in place.
        """
        with self.store.transaction() as conn:
            confirm = self.store.get_pending_confirm(secret, conn=conn)
            if confirm is None:
                raise NoSuchSession()
            if self.store.delete_pending_confirm(secret, conn=conn) != 1:
                raise NoSuchSession()
            account = self.lifecycle.create(confirm.email, password, pepper, conn=conn)
            for group_id in confirm.groups:
                self.lifecycle.groups.join_user_group_by_id(account.id, group_id, conn=conn)
        logger.info("Email confirmed for account %d", account.id)
        return account

    def clean_old_pendings(self, older_than: timedelta) -> int:
        removed = self.store.delete_pending_confirms_before(self.clock() - older_than)
        logger.info("Removed %d stale pending confirmation(s)", removed)
        return removed

    def all_pending_email_confirms(self) -> list[str]:
        return [c.email for c in self.store.list_pending_confirms()]

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def send_password_change_request(self, email: str) -> PasswordResetSecret:
        """Create a reset secret for the account owning email.

        Raises RateLimitExceeded while a previous secret is younger than
        RESET_WINDOW, NoSuchUser for an unknown email.
        """
        now = self.clock()
        with self.store.transaction() as conn:
            earlier = self.store.latest_reset_for_email(email, conn=conn)
            if earlier is not None:
                previous, owner = earlier
                if previous.added > now - RESET_WINDOW:
                    raise RateLimitExceeded()
                self.store.delete_reset_secrets_for(owner.id, conn=conn)

            account = self.store.get_account_by_email(email, conn=conn)
            if account is None:
                raise NoSuchUser(email)

            reset = PasswordResetSecret(
                secret=fresh_secret(),
                account_id=account.id,
                email=email,
                added=now,
            )
            self.store.insert_reset_secret(reset, conn=conn)
        logger.info("Password reset requested for account %d", account.id)
        return reset

    def _expired(self, reset: PasswordResetSecret) -> bool:
        return reset.added < self.clock() - RESET_WINDOW

    def check_password_reset(self, secret: str) -> tuple[PasswordResetSecret, Account] | None:
        """The live secret and its account, or None.

        None covers unknown and expired secrets and secrets of a deactivated
        account; the latter two are deleted on the way.
        """
        with self.store.transaction() as conn:
            found = self.store.get_reset_with_account(secret, conn=conn)
            if found is None:
                return None
            reset, account = found
            if self._expired(reset) or account.email is None:
                self.store.delete_reset_secrets_for(reset.account_id, conn=conn)
                logger.debug("Stale reset secret of account %d removed", reset.account_id)
                return None
        return reset, account

    def invalidate_password_reset(self, reset: PasswordResetSecret | str) -> int:
        """Delete every outstanding reset secret of the owning account."""
        if isinstance(reset, str):
            found = self.store.get_reset_with_account(reset)
            if found is None:
                return 0
            reset = found[0]
        return self.store.delete_reset_secrets_for(reset.account_id)

    def complete_password_reset(self, secret: str, new_password: str, pepper: bytes) -> Account:
        """Consume the secret, replace the password, and end all sessions.

        Raises NoSuchSession if the secret is unknown, expired, already used
        or belongs to a deactivated account. Raises PasswordTooShort /
        PasswordTooLong for a bad new password.
        """
        credential = set_password(new_password, pepper)
        account = None
        with self.store.transaction() as conn:
            found = self.store.get_reset_with_account(secret, conn=conn)
            if found is not None:
                reset, owner = found
                if self._expired(reset) or owner.email is None:
                    self.store.delete_reset_secrets_for(reset.account_id, conn=conn)
                elif self.store.delete_reset_secret(secret, conn=conn) == 1:
                    self.store.delete_reset_secrets_for(reset.account_id, conn=conn)
                    self.store.replace_credential(reset.account_id, credential, conn=conn)
                    self.store.delete_sessions_for(reset.account_id, conn=conn)
                    account = owner
        if account is None:
            raise NoSuchSession()
        logger.info("Password reset completed for account %d", account.id)
        return account
