"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper. IdentityStore is the repository;
the _row_to_* functions are the mappers. Managers in auth/ never build SQL
themselves -- they call the typed methods below.

Transactions:
  Every method takes an optional `conn`. Without one, the method runs in its
  own engine.begin() transaction. With one, it joins the caller's transaction,
  which is how multi-row units (account + credential + stats + metrics,
  confirmation completion, full removal) stay atomic:

      with store.transaction() as conn:
          account = store.insert_account(email, now, conn=conn)
          store.insert_credential(account.id, cred, conn=conn)

  SQLAlchemy failures other than IntegrityError are re-raised as
  InfrastructureError. IntegrityError passes through untouched so callers
  can translate unique-constraint races into domain errors.

Referential integrity:
  Every per-account table carries a FOREIGN KEY to users.id without ON DELETE
  CASCADE, and SQLite connections switch foreign_keys=ON. Deleting a users row
  while any child row remains fails, so DEPENDENT_TABLES must be emptied first.

Timestamps:
  Stored as fixed-width UTC ISO 8601 strings with microseconds, so SQL string
  comparison equals chronological comparison on every backend.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, notify/, or core/.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import InfrastructureError
from auth.models import (
    Account,
    Credential,
    GroupMembership,
    PasswordResetSecret,
    PendingEmailConfirm,
    Session,
    UserGroup,
    UserMetrics,
    UserStats,
)

_DEFAULT_DB_URL = "sqlite:///hanashi.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(254), unique=True),  # NULL after deactivation
    Column("created_at", String(32), nullable=False),
)

_passwords = Table(
    "passwords",
    metadata,
    Column("id", Integer, ForeignKey("users.id"), primary_key=True),  # one per account
    Column("password_hash", String(60), nullable=False),
    Column("salt", String(29), nullable=False),
    Column("rounds", Integer, nullable=False),
)

_user_metrics = Table(
    "user_metrics",
    metadata,
    Column("id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("new_words_since_break", Integer, nullable=False, server_default="0"),
    Column("new_sentences_since_break", Integer, nullable=False, server_default="0"),
    Column("new_words_today", Integer, nullable=False, server_default="0"),
    Column("new_sentences_today", Integer, nullable=False, server_default="0"),
    Column("break_until", String(32)),
)

_user_stats = Table(
    "user_stats",
    metadata,
    Column("id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("days_used", Integer, nullable=False, server_default="0"),
    Column("all_active_time_ms", Integer, nullable=False, server_default="0"),
    Column("quiz_answered", Integer, nullable=False, server_default="0"),
    Column("quiz_correct", Integer, nullable=False, server_default="0"),
    Column("last_nag_email", String(32)),
)

_sessions = Table(
    "sessions",
    metadata,
    Column("sess_id", LargeBinary(16), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("started", String(32), nullable=False),
    Column("last_seen", String(32), nullable=False),
    Column("last_ip", LargeBinary(16), nullable=False),
)

_pending_email_confirms = Table(
    "pending_email_confirms",
    metadata,
    Column("secret", String(64), primary_key=True),
    Column("email", String(254), nullable=False),
    Column("groups", Text, nullable=False, server_default="[]"),  # JSON array of group ids
    Column("added", String(32), nullable=False),
)

_reset_email_secrets = Table(
    "reset_email_secrets",
    metadata,
    Column("secret", String(64), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("email", String(254), nullable=False),
    Column("added", String(32), nullable=False),
)

_user_groups = Table(
    "user_groups",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("group_name", String(100), nullable=False, unique=True),
    Column("anonymous", Boolean, nullable=False, server_default="0"),
)

_group_memberships = Table(
    "group_memberships",
    metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("group_id", Integer, ForeignKey("user_groups.id"), primary_key=True),
    Column("anonymous", Boolean, nullable=False, server_default="0"),
)

# Per-account rows owned by other parts of the application (study progress,
# scheduling). Only their user_id link matters here: removal must clear them.

_anon_aliases = Table(
    "anon_aliases",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("group_id", Integer, ForeignKey("user_groups.id")),
    UniqueConstraint("user_id", "group_id", name="uq_alias_user_group"),
)

_skill_data = Table(
    "skill_data",
    metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("skill_id", Integer, primary_key=True),
    Column("skill_level", Integer, nullable=False, server_default="0"),
)

_event_experiences = Table(
    "event_experiences",
    metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("event_id", Integer, primary_key=True),
    Column("event_init", String(32), nullable=False),
    Column("event_finish", String(32)),
)

_pending_items = Table(
    "pending_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("item_type", String(30), nullable=False),
    Column("added", String(32), nullable=False),
)

_due_items = Table(
    "due_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False, index=True),
    Column("item_type", String(30), nullable=False),
    Column("due_date", String(32), nullable=False),
)

# Every table holding rows that reference users.id, with the column that does.
# Siblings are independent of each other; all of them precede the users row.
DEPENDENT_TABLES: list[tuple[Table, str]] = [
    (_passwords, "id"),
    (_user_metrics, "id"),
    (_user_stats, "id"),
    (_sessions, "user_id"),
    (_skill_data, "user_id"),
    (_event_experiences, "user_id"),
    (_group_memberships, "user_id"),
    (_anon_aliases, "user_id"),
    (_pending_items, "user_id"),
    (_due_items, "user_id"),
    (_reset_email_secrets, "user_id"),
]


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. foreign_keys=ON is what turns a mis-ordered
    cascading delete into an error instead of orphaned rows.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC ISO 8601 (always with microseconds)."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def from_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for accounts, credentials, sessions, secrets, and groups.

    Usage:
        store = IdentityStore("sqlite:///hanashi.db")
        with store.transaction() as conn:
            ...
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _sqlite_pragmas)
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise InfrastructureError("Couldn't initialize the identity schema.") from exc

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Yield a connection inside one transaction; commit on success, roll back on error."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            raise InfrastructureError(f"Identity store failure ({exc.__class__.__name__}).") from exc

    @contextmanager
    def _conn(self, conn: Connection | None) -> Iterator[Connection]:
        if conn is not None:
            yield conn
        else:
            with self.transaction() as fresh:
                yield fresh

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def insert_account(self, email: str, now: datetime, conn: Connection | None = None) -> Account:
        """Insert a users row. Raises IntegrityError if the email is taken."""
        with self._conn(conn) as c:
            result = c.execute(_users.insert().values(email=email, created_at=to_iso(now)))
            account_id = result.inserted_primary_key[0]
        return Account(id=account_id, email=email, created_at=now)

    def get_account(self, account_id: int, conn: Connection | None = None) -> Account | None:
        with self._conn(conn) as c:
            row = c.execute(_users.select().where(_users.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_account_by_email(self, email: str, conn: Connection | None = None) -> Account | None:
        with self._conn(conn) as c:
            row = c.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_account_with_credential(
        self, email: str, conn: Connection | None = None
    ) -> tuple[Account, Credential | None] | None:
        """Account + credential by email (left join). None if the email is unknown."""
        query = (
            select(_users, _passwords.c.password_hash, _passwords.c.salt, _passwords.c.rounds)
            .select_from(_users.outerjoin(_passwords, _passwords.c.id == _users.c.id))
            .where(_users.c.email == email)
        )
        with self._conn(conn) as c:
            row = c.execute(query).fetchone()
        if row is None:
            return None
        credential = None
        if row.password_hash is not None:
            credential = Credential(
                password_hash=row.password_hash,
                salt=row.salt,
                rounds=row.rounds,
                account_id=row.id,
            )
        return _row_to_account(row), credential

    def list_accounts(self, conn: Connection | None = None) -> list[Account]:
        with self._conn(conn) as c:
            rows = c.execute(_users.select().order_by(_users.c.id)).fetchall()
        return [_row_to_account(r) for r in rows]

    def clear_email(self, account_id: int, conn: Connection | None = None) -> int:
        with self._conn(conn) as c:
            result = c.execute(_users.update().where(_users.c.id == account_id).values(email=None))
        return result.rowcount

    def delete_account_row(self, account_id: int, conn: Connection | None = None) -> int:
        """Delete the users row only. Children must already be gone."""
        with self._conn(conn) as c:
            result = c.execute(_users.delete().where(_users.c.id == account_id))
        return result.rowcount

    def delete_account_row_by_email(self, email: str, conn: Connection | None = None) -> Account | None:
        with self._conn(conn) as c:
            row = c.execute(_users.select().where(_users.c.email == email)).fetchone()
            if row is None:
                return None
            c.execute(_users.delete().where(_users.c.id == row.id))
        return _row_to_account(row)

    def delete_dependents(self, account_id: int, conn: Connection | None = None) -> dict[str, int]:
        """Empty every DEPENDENT_TABLES table for account_id. Returns rows removed per table."""
        removed: dict[str, int] = {}
        with self._conn(conn) as c:
            for table, column in DEPENDENT_TABLES:
                result = c.execute(table.delete().where(table.c[column] == account_id))
                removed[table.name] = result.rowcount
        return removed

    def count_owned_rows(self, account_id: int, conn: Connection | None = None) -> dict[str, int]:
        """Row counts per dependent table for account_id."""
        counts: dict[str, int] = {}
        with self._conn(conn) as c:
            for table, column in DEPENDENT_TABLES:
                counts[table.name] = c.execute(
                    select(func.count()).select_from(table).where(table.c[column] == account_id)
                ).scalar_one()
        return counts

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def insert_credential(self, account_id: int, credential: Credential, conn: Connection | None = None) -> None:
        """Insert the account's credential. Raises IntegrityError if one exists."""
        with self._conn(conn) as c:
            c.execute(
                _passwords.insert().values(
                    id=account_id,
                    password_hash=credential.password_hash,
                    salt=credential.salt,
                    rounds=credential.rounds,
                )
            )
        credential.account_id = account_id

    def replace_credential(self, account_id: int, credential: Credential, conn: Connection | None = None) -> None:
        """Overwrite the account's credential, inserting it if there was none."""
        with self._conn(conn) as c:
            result = c.execute(
                _passwords.update()
                .where(_passwords.c.id == account_id)
                .values(
                    password_hash=credential.password_hash,
                    salt=credential.salt,
                    rounds=credential.rounds,
                )
            )
            if result.rowcount == 0:
                self.insert_credential(account_id, credential, conn=c)
        credential.account_id = account_id

    def get_credential(self, account_id: int, conn: Connection | None = None) -> Credential | None:
        with self._conn(conn) as c:
            row = c.execute(_passwords.select().where(_passwords.c.id == account_id)).fetchone()
        if row is None:
            return None
        return Credential(password_hash=row.password_hash, salt=row.salt, rounds=row.rounds, account_id=row.id)

    def delete_credential(self, account_id: int, conn: Connection | None = None) -> int:
        with self._conn(conn) as c:
            result = c.execute(_passwords.delete().where(_passwords.c.id == account_id))
        return result.rowcount

    # ------------------------------------------------------------------
    # Stats / metrics
    # ------------------------------------------------------------------

    def insert_stats_and_metrics(self, account_id: int, conn: Connection | None = None) -> None:
        with self._conn(conn) as c:
            c.execute(_user_metrics.insert().values(id=account_id))
            c.execute(_user_stats.insert().values(id=account_id))

    def get_stats(self, account_id: int, conn: Connection | None = None) -> UserStats | None:
        with self._conn(conn) as c:
            row = c.execute(_user_stats.select().where(_user_stats.c.id == account_id)).fetchone()
        return _row_to_stats(row) if row is not None else None

    def get_metrics(self, account_id: int, conn: Connection | None = None) -> UserMetrics | None:
        with self._conn(conn) as c:
            row = c.execute(_user_metrics.select().where(_user_metrics.c.id == account_id)).fetchone()
        return _row_to_metrics(row) if row is not None else None

    def set_last_nag_email(self, account_id: int, when: datetime, conn: Connection | None = None) -> int:
        with self._conn(conn) as c:
            result = c.execute(
                _user_stats.update().where(_user_stats.c.id == account_id).values(last_nag_email=to_iso(when))
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def insert_session(self, session: Session, conn: Connection | None = None) -> Session:
        with self._conn(conn) as c:
            c.execute(
                _sessions.insert().values(
                    sess_id=session.sess_id,
                    user_id=session.account_id,
                    started=to_iso(session.started),
                    last_seen=to_iso(session.last_seen),
                    last_ip=session.last_ip,
                )
            )
        return session

    def get_session_with_account(
        self, sess_id: bytes, conn: Connection | None = None
    ) -> tuple[Account, Session] | None:
        query = (
            select(
                _sessions,
                _users.c.email,
                _users.c.created_at.label("user_created_at"),
            )
            .select_from(_sessions.join(_users, _users.c.id == _sessions.c.user_id))
            .where(_sessions.c.sess_id == sess_id)
        )
        with self._conn(conn) as c:
            row = c.execute(query).fetchone()
        if row is None:
            return None
        account = Account(id=row.user_id, email=row.email, created_at=from_iso(row.user_created_at))
        return account, _row_to_session(row)

    def list_sessions(self, account_id: int, conn: Connection | None = None) -> list[Session]:
        """Sessions of one account, most recently seen first."""
        with self._conn(conn) as c:
            rows = c.execute(
                _sessions.select().where(_sessions.c.user_id == account_id).order_by(_sessions.c.last_seen.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def delete_session(self, sess_id: bytes, conn: Connection | None = None) -> int:
        with self._conn(conn) as c:
            result = c.execute(_sessions.delete().where(_sessions.c.sess_id == sess_id))
        return result.rowcount

    def delete_idle_sessions(
        self,
        account_id: int,
        seen_before: datetime,
        keep: bytes,
        conn: Connection | None = None,
    ) -> int:
        """Delete the account's sessions last seen before the cutoff, except `keep`."""
        with self._conn(conn) as c:
            result = c.execute(
                _sessions.delete().where(
                    (_sessions.c.user_id == account_id)
                    & (_sessions.c.last_seen < to_iso(seen_before))
                    & (_sessions.c.sess_id != keep)
                )
            )
        return result.rowcount

    def delete_sessions_for(self, account_id: int, conn: Connection | None = None) -> int:
        with self._conn(conn) as c:
            result = c.execute(_sessions.delete().where(_sessions.c.user_id == account_id))
        return result.rowcount

    def last_seen_by_account(self, conn: Connection | None = None) -> dict[int, list[datetime]]:
        """Session last_seen times per account, newest first."""
        seen: dict[int, list[datetime]] = {}
        with self._conn(conn) as c:
            rows = c.execute(
                select(_sessions.c.user_id, _sessions.c.last_seen).order_by(_sessions.c.last_seen.desc())
            ).fetchall()
        for row in rows:
            seen.setdefault(row.user_id, []).append(from_iso(row.last_seen))
        return seen

    def accounts_inactive_since(self, cutoff: datetime, conn: Connection | None = None) -> list[tuple[int, str]]:
        """(id, email) of accounts with an email and no session seen after cutoff."""
        active = select(_sessions.c.user_id).where(_sessions.c.last_seen > to_iso(cutoff))
        query = (
            select(_users.c.id, _users.c.email)
            .where(_users.c.email.is_not(None))
            .where(_users.c.id.not_in(active))
            .order_by(_users.c.id)
        )
        with self._conn(conn) as c:
            rows = c.execute(query).fetchall()
        return [(r.id, r.email) for r in rows]

    # ------------------------------------------------------------------
    # Pending email confirmations
    # ------------------------------------------------------------------

    def insert_pending_confirm(self, confirm: PendingEmailConfirm, conn: Connection | None = None) -> None:
        with self._conn(conn) as c:
            c.execute(
                _pending_email_confirms.insert().values(
                    secret=confirm.secret,
                    email=confirm.email,
                    groups=json.dumps(list(confirm.groups)),
                    added=to_iso(confirm.added),
                )
            )

    def get_pending_confirm(self, secret: str, conn: Connection | None = None) -> PendingEmailConfirm | None:
        with self._conn(conn) as c:
            row = c.execute(
                _pending_email_confirms.select().where(_pending_email_confirms.c.secret == secret)
            ).fetchone()
        return _row_to_pending(row) if row is not None else None

    def delete_pending_confirm(self, secret: str, conn: Connection | None = None) -> int:
        with self._conn(conn) as c:
            result = c.execute(_pending_email_confirms.delete().where(_pending_email_confirms.c.secret == secret))
        return result.rowcount

    def delete_pending_confirms_before(self, cutoff: datetime, conn: Connection | None = None) -> int:
        with self._conn(conn) as c:
            result = c.execute(
                _pending_email_confirms.delete().where(_pending_email_confirms.c.added < to_iso(cutoff))
            )
        return result.rowcount

    def list_pending_confirms(self, conn: Connection | None = None) -> list[PendingEmailConfirm]:
        with self._conn(conn) as c:
            rows = c.execute(_pending_email_confirms.select().order_by(_pending_email_confirms.c.added)).fetchall()
        return [_row_to_pending(r) for r in rows]

    # ------------------------------------------------------------------
    # Password reset secrets
    # ------------------------------------------------------------------

    def insert_reset_secret(self, reset: PasswordResetSecret, conn: Connection | None = None) -> None:
        with self._conn(conn) as c:
            c.execute(
                _reset_email_secrets.insert().values(
                    secret=reset.secret,
                    user_id=reset.account_id,
                    email=reset.email,
                    added=to_iso(reset.added),
                )
            )

    def latest_reset_for_email(
        self, email: str, conn: Connection | None = None
    ) -> tuple[PasswordResetSecret, Account] | None:
        """The newest outstanding reset secret of the account owning email."""
        query = (
            _reset_join()
            .where(_users.c.email == email)
            .order_by(_reset_email_secrets.c.added.desc())
            .limit(1)
        )
        with self._conn(conn) as c:
            row = c.execute(query).fetchone()
        return _row_to_reset_pair(row) if row is not None else None

    def get_reset_with_account(
        self, secret: str, conn: Connection | None = None
    ) -> tuple[PasswordResetSecret, Account] | None:
        with self._conn(conn) as c:
            row = c.execute(_reset_join().where(_reset_email_secrets.c.secret == secret)).fetchone()
        return _row_to_reset_pair(row) if row is not None else None

    def delete_reset_secret(self, secret: str, conn: Connection | None = None) -> int:
        with self._conn(conn) as c:
            result = c.execute(_reset_email_secrets.delete().where(_reset_email_secrets.c.secret == secret))
        return result.rowcount

    def delete_reset_secrets_for(self, account_id: int, conn: Connection | None = None) -> int:
        with self._conn(conn) as c:
            result = c.execute(_reset_email_secrets.delete().where(_reset_email_secrets.c.user_id == account_id))
        return result.rowcount

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def insert_group(self, group_name: str, anonymous: bool = False, conn: Connection | None = None) -> UserGroup:
        with self._conn(conn) as c:
            result = c.execute(_user_groups.insert().values(group_name=group_name, anonymous=anonymous))
        return UserGroup(id=result.inserted_primary_key[0], group_name=group_name, anonymous=anonymous)

    def get_group_by_name(self, group_name: str, conn: Connection | None = None) -> UserGroup | None:
        with self._conn(conn) as c:
            row = c.execute(_user_groups.select().where(_user_groups.c.group_name == group_name)).fetchone()
        return _row_to_group(row) if row is not None else None

    def get_group(self, group_id: int, conn: Connection | None = None) -> UserGroup | None:
        with self._conn(conn) as c:
            row = c.execute(_user_groups.select().where(_user_groups.c.id == group_id)).fetchone()
        return _row_to_group(row) if row is not None else None

    def list_groups(self, conn: Connection | None = None) -> list[UserGroup]:
        with self._conn(conn) as c:
            rows = c.execute(_user_groups.select().order_by(_user_groups.c.id)).fetchall()
        return [_row_to_group(r) for r in rows]

    def insert_membership(self, membership: GroupMembership, conn: Connection | None = None) -> None:
        """Raises IntegrityError on a duplicate pair or an unknown group id."""
        with self._conn(conn) as c:
            c.execute(
                _group_memberships.insert().values(
                    user_id=membership.account_id,
                    group_id=membership.group_id,
                    anonymous=membership.anonymous,
                )
            )

    def delete_membership(self, account_id: int, group_id: int, conn: Connection | None = None) -> int:
        with self._conn(conn) as c:
            result = c.execute(
                _group_memberships.delete().where(
                    (_group_memberships.c.user_id == account_id) & (_group_memberships.c.group_id == group_id)
                )
            )
        return result.rowcount

    def has_membership(self, account_id: int, group_id: int, conn: Connection | None = None) -> bool:
        with self._conn(conn) as c:
            row = c.execute(
                select(_group_memberships.c.user_id).where(
                    (_group_memberships.c.user_id == account_id) & (_group_memberships.c.group_id == group_id)
                )
            ).fetchone()
        return row is not None

    def memberships_of(self, account_id: int, conn: Connection | None = None) -> list[GroupMembership]:
        with self._conn(conn) as c:
            rows = c.execute(
                _group_memberships.select()
                .where(_group_memberships.c.user_id == account_id)
                .order_by(_group_memberships.c.group_id)
            ).fetchall()
        return [_row_to_membership(r) for r in rows]

    def members_of(self, group_id: int, conn: Connection | None = None) -> list[tuple[Account, GroupMembership]]:
        query = (
            select(_users, _group_memberships.c.group_id, _group_memberships.c.anonymous)
            .select_from(_users.join(_group_memberships, _group_memberships.c.user_id == _users.c.id))
            .where(_group_memberships.c.group_id == group_id)
            .order_by(_users.c.id)
        )
        with self._conn(conn) as c:
            rows = c.execute(query).fetchall()
        return [
            (
                _row_to_account(r),
                GroupMembership(account_id=r.id, group_id=r.group_id, anonymous=bool(r.anonymous)),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Study progress (read-only views used by slacker detection)
    # ------------------------------------------------------------------

    def count_due_items(self, account_id: int, conn: Connection | None = None) -> int:
        with self._conn(conn) as c:
            return c.execute(
                select(func.count()).select_from(_due_items).where(_due_items.c.user_id == account_id)
            ).scalar_one()

    def count_pending_items(self, account_id: int, conn: Connection | None = None) -> int:
        with self._conn(conn) as c:
            return c.execute(
                select(func.count()).select_from(_pending_items).where(_pending_items.c.user_id == account_id)
            ).scalar_one()

    def ping(self) -> bool:
        """True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
        except SQLAlchemyError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Query builders
# ---------------------------------------------------------------------------


def _reset_join():
    return select(
        _reset_email_secrets,
        _users.c.email.label("user_email"),
        _users.c.created_at.label("user_created_at"),
    ).select_from(_reset_email_secrets.join(_users, _users.c.id == _reset_email_secrets.c.user_id))


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(id=row.id, email=row.email, created_at=from_iso(row.created_at))


def _row_to_session(row) -> Session:
    return Session(
        sess_id=bytes(row.sess_id),
        account_id=row.user_id,
        started=from_iso(row.started),
        last_seen=from_iso(row.last_seen),
        last_ip=bytes(row.last_ip),
    )


def _row_to_pending(row) -> PendingEmailConfirm:
    return PendingEmailConfirm(
        secret=row.secret,
        email=row.email,
        groups=[int(g) for g in json.loads(row.groups or "[]")],
        added=from_iso(row.added),
    )


def _row_to_reset_pair(row) -> tuple[PasswordResetSecret, Account]:
    reset = PasswordResetSecret(
        secret=row.secret,
        account_id=row.user_id,
        email=row.email,
        added=from_iso(row.added),
    )
    account = Account(id=row.user_id, email=row.user_email, created_at=from_iso(row.user_created_at))
    return reset, account


def _row_to_group(row) -> UserGroup:
    return UserGroup(id=row.id, group_name=row.group_name, anonymous=bool(row.anonymous))


def _row_to_membership(row) -> GroupMembership:
    return GroupMembership(account_id=row.user_id, group_id=row.group_id, anonymous=bool(row.anonymous))


def _row_to_stats(row) -> UserStats:
    return UserStats(
        account_id=row.id,
        days_used=row.days_used,
        all_active_time_ms=row.all_active_time_ms,
        quiz_answered=row.quiz_answered,
        quiz_correct=row.quiz_correct,
        last_nag_email=from_iso(row.last_nag_email),
    )


def _row_to_metrics(row) -> UserMetrics:
    return UserMetrics(
        account_id=row.id,
        new_words_since_break=row.new_words_since_break,
        new_sentences_since_break=row.new_sentences_since_break,
        new_words_today=row.new_words_today,
        new_sentences_today=row.new_sentences_today,
        break_until=from_iso(row.break_until),
    )
