"""
tests/test_accounts.py -- Unit tests for auth/accounts.py (UserLifecycle).

Covers:
  - create: validation before any store write, duplicate email, atomic
    account + credential + stats + metrics
  - authenticate: success, wrong password, unknown email, deactivated account
  - set_password / change_password
  - deactivate: email cleared, credential and sessions gone, history kept
  - remove_completely: zero rows left in every dependent table, safe twice
  - find_slackers / mark_nagged
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import insert

from auth.accounts import DueItemsTracker, UserLifecycle, redact_email, validate_email
from auth.errors import (
    AccountExists,
    EmailAddressNotValid,
    EmailAddressTooLong,
    NoSuchUser,
    PasswordAlreadySet,
    PasswordTooShort,
)
from auth.groups import Group
from auth.store import (
    _anon_aliases,
    _due_items,
    _event_experiences,
    _pending_items,
    _skill_data,
    to_iso,
)

PEPPER = b"\x07" * 32


@pytest.fixture
def alice(lifecycle):
    return lifecycle.create("alice@example.com", "alice-password", PEPPER)


class TestEmailHelpers:
    def test_redact(self) -> None:
        assert redact_email("alice@example.com") == "a***@example.com"
        assert redact_email(None) == "<none>"
        assert redact_email("nodomain") == "***"

    def test_validate_length(self) -> None:
        validate_email("a@" + "b" * 252)
        with pytest.raises(EmailAddressTooLong):
            validate_email("a@" + "b" * 253)

    def test_validate_needs_at_sign(self) -> None:
        with pytest.raises(EmailAddressNotValid):
            validate_email("alice.example.com")


class TestCreate:
    def test_create_writes_every_owned_row(self, lifecycle, store, clock) -> None:
        account = lifecycle.create("alice@example.com", "alice-password", PEPPER)
        assert account.email == "alice@example.com"
        assert account.created_at == clock.now
        assert store.get_credential(account.id) is not None
        assert store.get_stats(account.id).days_used == 0
        assert store.get_metrics(account.id).new_words_today == 0

    def test_duplicate_email(self, lifecycle, alice, store) -> None:
        with pytest.raises(AccountExists):
            lifecycle.create("alice@example.com", "other-password", PEPPER)
        assert len(store.list_accounts()) == 1

    def test_invalid_email_writes_nothing(self, lifecycle, store) -> None:
        with pytest.raises(EmailAddressNotValid):
            lifecycle.create("alice", "alice-password", PEPPER)
        assert store.list_accounts() == []

    def test_short_password_writes_nothing(self, lifecycle, store) -> None:
        with pytest.raises(PasswordTooShort):
            lifecycle.create("alice@example.com", "short", PEPPER)
        assert store.list_accounts() == []

    def test_failure_mid_unit_rolls_back(self, lifecycle, store, monkeypatch: pytest.MonkeyPatch) -> None:
        def explode(account_id, conn=None):
            raise RuntimeError("disk full")

        monkeypatch.setattr(store, "insert_stats_and_metrics", explode)
        with pytest.raises(RuntimeError):
            lifecycle.create("alice@example.com", "alice-password", PEPPER)
        assert store.get_account_by_email("alice@example.com") is None


class TestAuthenticate:
    def test_success(self, lifecycle, alice) -> None:
        assert lifecycle.authenticate("alice@example.com", "alice-password", PEPPER).id == alice.id

    def test_wrong_password(self, lifecycle, alice) -> None:
        assert lifecycle.authenticate("alice@example.com", "wrong-password", PEPPER) is None

    def test_unknown_email(self, lifecycle) -> None:
        assert lifecycle.authenticate("nobody@example.com", "whatever-pass", PEPPER) is None

    def test_account_without_password(self, lifecycle, alice, store) -> None:
        store.delete_credential(alice.id)
        assert lifecycle.authenticate("alice@example.com", "alice-password", PEPPER) is None


class TestPasswords:
    def test_set_password_refuses_to_overwrite(self, lifecycle, alice) -> None:
        with pytest.raises(PasswordAlreadySet):
            lifecycle.set_password("alice@example.com", "new-password", PEPPER)

    def test_set_password_unknown_user(self, lifecycle) -> None:
        with pytest.raises(NoSuchUser) as info:
            lifecycle.set_password("nobody@example.com", "new-password", PEPPER)
        assert info.value.email == "nobody@example.com"

    def test_set_password_after_credential_removed(self, lifecycle, alice, store) -> None:
        store.delete_credential(alice.id)
        lifecycle.set_password("alice@example.com", "new-password", PEPPER)
        assert lifecycle.authenticate("alice@example.com", "new-password", PEPPER) is not None

    def test_change_password(self, lifecycle, alice) -> None:
        lifecycle.change_password(alice.id, "changed-password", PEPPER)
        assert lifecycle.authenticate("alice@example.com", "alice-password", PEPPER) is None
        assert lifecycle.authenticate("alice@example.com", "changed-password", PEPPER) is not None


class TestDeactivate:
    def test_deactivate_clears_identity_keeps_history(self, lifecycle, alice, sessions, store) -> None:
        sessions.start_session(alice, "192.0.2.7")
        result = lifecycle.deactivate(alice.id)

        assert result.id == alice.id
        assert result.email is None
        assert store.get_account(alice.id).email is None
        assert store.get_credential(alice.id) is None
        assert store.list_sessions(alice.id) == []
        assert store.get_stats(alice.id) is not None
        assert lifecycle.authenticate("alice@example.com", "alice-password", PEPPER) is None

    def test_deactivate_drops_outstanding_reset_secrets(self, lifecycle, alice, secret_tokens, store) -> None:
        reset = secret_tokens.send_password_change_request("alice@example.com")
        lifecycle.deactivate(alice.id)
        assert store.get_reset_with_account(reset.secret) is None
        assert store.count_owned_rows(alice.id)["reset_email_secrets"] == 0

    def test_deactivated_email_can_register_again(self, lifecycle, alice) -> None:
        lifecycle.deactivate(alice.id)
        again = lifecycle.create("alice@example.com", "alice-password", PEPPER)
        assert again.id != alice.id

    def test_deactivate_unknown(self, lifecycle) -> None:
        assert lifecycle.deactivate(9999) is None


def _seed_study_rows(store, account_id: int, group_id: int, now) -> None:
    with store.engine.begin() as conn:
        conn.execute(insert(_anon_aliases).values(name="anon-1", user_id=account_id, group_id=group_id))
        conn.execute(insert(_skill_data).values(user_id=account_id, skill_id=1, skill_level=3))
        conn.execute(insert(_event_experiences).values(user_id=account_id, event_id=1, event_init=to_iso(now)))
        conn.execute(insert(_pending_items).values(user_id=account_id, item_type="word", added=to_iso(now)))
        conn.execute(insert(_due_items).values(user_id=account_id, item_type="word", due_date=to_iso(now)))


class TestRemoveCompletely:
    def test_leaves_no_owned_rows(self, lifecycle, alice, groups, sessions, secret_tokens, store, clock) -> None:
        subjects = groups.get_group(Group.SUBJECTS)
        groups.join_user_group_by_id(alice.id, subjects.id, anonymous=True)
        sessions.start_session(alice, "192.0.2.7")
        secret_tokens.send_password_change_request("alice@example.com")
        _seed_study_rows(store, alice.id, subjects.id, clock.now)
        assert all(n > 0 for n in store.count_owned_rows(alice.id).values())

        removed = lifecycle.remove_completely(alice.id)

        assert removed.id == alice.id
        assert removed.email == "alice@example.com"
        assert store.get_account(alice.id) is None
        assert set(store.count_owned_rows(alice.id).values()) == {0}

    def test_other_accounts_untouched(self, lifecycle, alice, store) -> None:
        bob = lifecycle.create("bob@example.com", "bob-password", PEPPER)
        lifecycle.remove_completely(alice.id)
        assert store.get_account(bob.id) is not None
        assert store.get_credential(bob.id) is not None

    def test_second_call_is_harmless(self, lifecycle, alice) -> None:
        assert lifecycle.remove_completely(alice.id) is not None
        assert lifecycle.remove_completely(alice.id) is None

    def test_remove_deactivated_account(self, lifecycle, alice, store) -> None:
        lifecycle.deactivate(alice.id)
        assert lifecycle.remove_completely(alice.id).email is None
        assert store.get_account(alice.id) is None

    def test_remove_by_email(self, lifecycle, alice) -> None:
        assert lifecycle.remove_by_email("alice@example.com").id == alice.id
        with pytest.raises(NoSuchUser):
            lifecycle.remove_by_email("alice@example.com")


class TestSlackers:
    @pytest.fixture
    def opted_in(self, lifecycle, groups, alice, store, clock):
        groups.join_user_group_by_name(alice.id, Group.NAG_EMAILS)
        with store.engine.begin() as conn:
            conn.execute(insert(_due_items).values(user_id=alice.id, item_type="word", due_date=to_iso(clock.now)))
        return alice

    def test_inactive_opted_in_account_with_work(self, lifecycle, opted_in, clock) -> None:
        clock.advance(days=5)
        assert lifecycle.find_slackers(clock.now - timedelta(days=3)) == [(opted_in.id, "alice@example.com")]

    def test_recent_session_excludes(self, lifecycle, opted_in, sessions, clock) -> None:
        clock.advance(days=5)
        sessions.start_session(opted_in, "192.0.2.7")
        assert lifecycle.find_slackers(clock.now - timedelta(days=3)) == []

    def test_not_opted_in_excludes(self, lifecycle, alice, store, clock) -> None:
        with store.engine.begin() as conn:
            conn.execute(insert(_due_items).values(user_id=alice.id, item_type="word", due_date=to_iso(clock.now)))
        assert lifecycle.find_slackers(clock.now) == []

    def test_no_work_left_excludes(self, lifecycle, groups, alice, clock) -> None:
        groups.join_user_group_by_name(alice.id, Group.NAG_EMAILS)
        assert lifecycle.find_slackers(clock.now) == []

    def test_cooldown(self, lifecycle, opted_in, clock) -> None:
        lifecycle.mark_nagged(opted_in.id)
        clock.advance(days=2)
        assert lifecycle.find_slackers(clock.now, cooldown=timedelta(days=7)) == []
        clock.advance(days=6)
        assert [a for a, _ in lifecycle.find_slackers(clock.now, cooldown=timedelta(days=7))] == [opted_in.id]

    def test_no_nag_group_means_nobody(self, store, clock) -> None:
        lifecycle = UserLifecycle(store, clock=clock)
        assert lifecycle.find_slackers(clock.now) == []

    def test_due_items_tracker(self, store, opted_in, lifecycle) -> None:
        bob = lifecycle.create("bob@example.com", "bob-password", PEPPER)
        tracker = DueItemsTracker(store)
        assert tracker.has_work_left(opted_in.id) is True
        assert tracker.has_work_left(bob.id) is False
