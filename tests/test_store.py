"""
tests/test_store.py -- Unit tests for auth/store.py (IdentityStore).

Uses in-memory SQLite via the `store` fixture. Covers:
  - DEPENDENT_TABLES lists every table with a foreign key to users.id
  - foreign keys are enforced: a users row with children can't be deleted
  - transaction(): commit on success, rollback on error
  - timestamps round-trip with timezone and order as strings
  - session join, last_seen_by_account, accounts_inactive_since
  - ping()
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import Session
from auth.store import DEPENDENT_TABLES, from_iso, metadata, to_iso

NOW = datetime(2024, 4, 1, 12, 0, tzinfo=timezone.utc)


def _session(account_id: int, last_seen: datetime, sess_id: bytes) -> Session:
    return Session(sess_id=sess_id, account_id=account_id, started=last_seen, last_seen=last_seen, last_ip=b"\x7f\0\0\1")


class TestSchema:
    def test_dependent_tables_cover_every_user_foreign_key(self) -> None:
        referencing = {
            table.name
            for table in metadata.sorted_tables
            for fk in table.foreign_keys
            if fk.column.table.name == "users"
        }
        assert {table.name for table, _ in DEPENDENT_TABLES} == referencing

    def test_foreign_keys_enforced(self, store) -> None:
        account = store.insert_account("alice@example.com", NOW)
        store.insert_stats_and_metrics(account.id)
        with pytest.raises(IntegrityError):
            store.delete_account_row(account.id)
        assert store.get_account(account.id) is not None


class TestTransactions:
    def test_commit(self, store) -> None:
        with store.transaction() as conn:
            account = store.insert_account("alice@example.com", NOW, conn=conn)
            store.insert_stats_and_metrics(account.id, conn=conn)
        assert store.get_stats(account.id) is not None

    def test_rollback_on_error(self, store) -> None:
        with pytest.raises(ZeroDivisionError):
            with store.transaction() as conn:
                store.insert_account("alice@example.com", NOW, conn=conn)
                1 / 0
        assert store.get_account_by_email("alice@example.com") is None

    def test_duplicate_email_is_integrity_error(self, store) -> None:
        store.insert_account("alice@example.com", NOW)
        with pytest.raises(IntegrityError):
            store.insert_account("alice@example.com", NOW)


class TestTimestamps:
    def test_fixed_width_and_utc(self) -> None:
        text = to_iso(datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc))
        assert text == "2024-01-02T03:04:05.000000+00:00"

    def test_other_offsets_normalised(self) -> None:
        jst = timezone(timedelta(hours=9))
        assert to_iso(datetime(2024, 1, 2, 12, 0, tzinfo=jst)) == "2024-01-02T03:00:00.000000+00:00"

    def test_round_trip(self) -> None:
        assert from_iso(to_iso(NOW)) == NOW
        assert from_iso(None) is None

    def test_string_order_is_time_order(self) -> None:
        earlier = to_iso(NOW)
        later = to_iso(NOW + timedelta(microseconds=1))
        assert earlier < later


class TestSessionQueries:
    def test_get_session_with_account(self, store) -> None:
        account = store.insert_account("alice@example.com", NOW)
        store.insert_session(_session(account.id, NOW, b"\x01" * 16))
        found_account, session = store.get_session_with_account(b"\x01" * 16)
        assert found_account.email == "alice@example.com"
        assert found_account.created_at == NOW
        assert session.last_seen == NOW
        assert store.get_session_with_account(b"\x02" * 16) is None

    def test_last_seen_by_account_newest_first(self, store) -> None:
        account = store.insert_account("alice@example.com", NOW)
        store.insert_session(_session(account.id, NOW, b"\x01" * 16))
        store.insert_session(_session(account.id, NOW + timedelta(hours=1), b"\x02" * 16))
        assert store.last_seen_by_account() == {account.id: [NOW + timedelta(hours=1), NOW]}

    def test_accounts_inactive_since(self, store) -> None:
        active = store.insert_account("active@example.com", NOW)
        idle = store.insert_account("idle@example.com", NOW)
        never = store.insert_account("never@example.com", NOW)
        gone = store.insert_account("gone@example.com", NOW)
        store.clear_email(gone.id)
        store.insert_session(_session(active.id, NOW, b"\x01" * 16))
        store.insert_session(_session(idle.id, NOW - timedelta(days=10), b"\x02" * 16))

        inactive = store.accounts_inactive_since(NOW - timedelta(days=3))

        assert inactive == [(idle.id, "idle@example.com"), (never.id, "never@example.com")]


def test_ping(store) -> None:
    assert store.ping() is True
