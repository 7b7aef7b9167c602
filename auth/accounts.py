"""
auth/accounts.py -- Account lifecycle: create, authenticate, deactivate, remove.

Atomicity:
  create() writes the users row, its credential, stats and metrics in one
  transaction; an account without stats is never observable. It accepts an
  outer `conn` so confirmation completion can fold account creation into its
  own claim-and-join transaction.

  remove_completely() empties every table in DEPENDENT_TABLES before deleting
  the users row. Siblings may go in any order; the parent always goes last.
  With foreign keys enforced, a child table missing from that list makes the
  parent delete fail instead of leaving orphans.

Enumeration:
  authenticate() is the only call that folds "unknown email" and "wrong
  password" into one outcome (None), and it burns a dummy bcrypt check for
  unknown emails so both take the same time. Lower-level lookups such as
  set_password() keep NoSuchUser.

Layer rule: no imports from api/, notify/, or core/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Protocol

from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth.errors import (
    AccountExists,
    EmailAddressNotValid,
    EmailAddressTooLong,
    NoSuchUser,
    PasswordAlreadySet,
    PasswordDoesntMatch,
)
from auth.groups import Group, GroupChecker
from auth.models import Account
from auth.passwords import burn_dummy_check, check_password, set_password
from auth.store import IdentityStore

logger = logging.getLogger("hanashi.accounts")

MAX_EMAIL_LEN = 254


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def redact_email(email: str | None) -> str:
    """'alice@example.com' -> 'a***@example.com' for log lines."""
    if not email:
        return "<none>"
    local, _, domain = email.partition("@")
    return f"{local[:1]}***@{domain}" if domain else "***"


def validate_email(email: str) -> None:
    if len(email) > MAX_EMAIL_LEN:
        raise EmailAddressTooLong()
    if "@" not in email:
        raise EmailAddressNotValid()


# ---------------------------------------------------------------------------
# Progress tracking collaborator
# ---------------------------------------------------------------------------


class ProgressTracker(Protocol):
    def has_work_left(self, account_id: int) -> bool:
        """True if the account still has something to study."""
        ...


class DueItemsTracker:
    """Counts scheduled reviews and queued new material for an account."""

    def __init__(self, store: IdentityStore) -> None:
        self.store = store

    def has_work_left(self, account_id: int) -> bool:
        return self.store.count_due_items(account_id) > 0 or self.store.count_pending_items(account_id) > 0


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class UserLifecycle:
    def __init__(
        self,
        store: IdentityStore,
        groups: GroupChecker | None = None,
        tracker: ProgressTracker | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.groups = groups or GroupChecker(store)
        self.tracker = tracker or DueItemsTracker(store)
        self.clock = clock

    # -- creation -------------------------------------------------------

    def create(self, email: str, password: str, pepper: bytes, conn: Connection | None = None) -> Account:
        """Create an account with its credential, stats and metrics.

        Raises EmailAddressTooLong / EmailAddressNotValid / PasswordTooShort /
        PasswordTooLong before touching the store, AccountExists if the email
        is already registered.
        """
        validate_email(email)
        credential = set_password(password, pepper)
        try:
            if conn is not None:
                account = self._insert_account(email, credential, conn)
            else:
                with self.store.transaction() as own:
                    account = self._insert_account(email, credential, own)
        except IntegrityError:
            raise AccountExists() from None
        logger.info("Created account %d for %s", account.id, redact_email(email))
        return account

    def _insert_account(self, email, credential, conn: Connection) -> Account:
        if self.store.get_account_by_email(email, conn=conn) is not None:
            raise AccountExists()
        account = self.store.insert_account(email, self.clock(), conn=conn)
        self.store.insert_credential(account.id, credential, conn=conn)
        self.store.insert_stats_and_metrics(account.id, conn=conn)
        return account

    # -- authentication ---------------------------------------------------

    def authenticate(self, email: str, plaintext: str, pepper: bytes) -> Account | None:
        """The account if email and password match, else None."""
        found = self.store.get_account_with_credential(email)
        started = time.perf_counter()
        if found is None or found[1] is None:
            burn_dummy_check(plaintext)
            account = None
        else:
            account, credential = found
            try:
                check_password(plaintext, credential, pepper)
            except PasswordDoesntMatch:
                account = None
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info("Checked password. Time spent: %.0f ms", elapsed_ms)
        return account

    # -- credentials ------------------------------------------------------

    def set_password(self, email: str, password: str, pepper: bytes) -> Account:
        """Give an account its first password. Never overwrites an existing one."""
        with self.store.transaction() as conn:
            found = self.store.get_account_with_credential(email, conn=conn)
            if found is None:
                raise NoSuchUser(email)
            account, existing = found
            if existing is not None:
                raise PasswordAlreadySet()
            self.store.insert_credential(account.id, set_password(password, pepper), conn=conn)
        logger.info("Password set for account %d", account.id)
        return account

    def change_password(
        self,
        account_id: int,
        new_password: str,
        pepper: bytes,
        conn: Connection | None = None,
    ) -> None:
        """Unconditionally replace the account's credential."""
        credential = set_password(new_password, pepper)
        self.store.replace_credential(account_id, credential, conn=conn)
        logger.info("Password changed for account %d", account_id)

    # -- deactivation / removal -------------------------------------------

    def deactivate(self, account_id: int) -> Account | None:
        """Clear the email and revoke every way to log in; stats and history stay."""
        with self.store.transaction() as conn:
            account = self.store.get_account(account_id, conn=conn)
            if account is None:
                return None
            self.store.delete_credential(account_id, conn=conn)
            self.store.delete_sessions_for(account_id, conn=conn)
            self.store.delete_reset_secrets_for(account_id, conn=conn)
            self.store.clear_email(account_id, conn=conn)
        logger.info("Deactivated account %d (%s)", account_id, redact_email(account.email))
        account.email = None
        return account

    def remove_completely(self, account_id: int) -> Account | None:
        """Delete the account and every row that references it.

        Returns the removed snapshot, or None if there was no such account.
        Safe to call twice.
        """
        with self.store.transaction() as conn:
            account = self.store.get_account(account_id, conn=conn)
            if account is None:
                return None
            removed = self.store.delete_dependents(account_id, conn=conn)
            self.store.delete_account_row(account_id, conn=conn)
        logger.info(
            "Removed account %d (%s): %s",
            account_id,
            redact_email(account.email),
            ", ".join(f"{table}={n}" for table, n in removed.items() if n),
        )
        return account

    def remove_by_email(self, email: str) -> Account:
        account = self.store.get_account_by_email(email)
        if account is None:
            raise NoSuchUser(email)
        removed = self.remove_completely(account.id)
        if removed is None:
            raise NoSuchUser(email)
        return removed

    # -- lookups ----------------------------------------------------------

    def get_by_email(self, email: str) -> Account | None:
        return self.store.get_account_by_email(email)

    def get_by_id(self, account_id: int) -> Account | None:
        return self.store.get_account(account_id)

    def list_accounts(self) -> list[Account]:
        return self.store.list_accounts()

    # -- re-engagement ----------------------------------------------------

    def find_slackers(
        self,
        inactive_since: datetime,
        cooldown: timedelta | None = None,
    ) -> list[tuple[int, str]]:
        """Accounts worth a re-engagement email.

        An account qualifies when it has an email, no session seen after
        inactive_since, work left according to the progress tracker, belongs
        to the nag_emails group, and (with a cooldown) has not been nagged
        within that cooldown.
        """
        nag_group = self.groups.group_id(Group.NAG_EMAILS)
        if nag_group is None:
            logger.info("No %s group exists; nobody has opted in", Group.NAG_EMAILS.value)
            return []

        now = self.clock()
        slackers = []
        for account_id, email in self.store.accounts_inactive_since(inactive_since):
            if not self.tracker.has_work_left(account_id):
                continue
            if not self.store.has_membership(account_id, nag_group):
                continue
            if cooldown is not None:
                stats = self.store.get_stats(account_id)
                last = stats.last_nag_email if stats is not None else None
                if last is not None and last > now - cooldown:
                    continue
            slackers.append((account_id, email))
        return slackers

    def mark_nagged(self, account_id: int) -> None:
        self.store.set_last_nag_email(account_id, self.clock())
