"""
tests/test_cli.py -- Tests for the hanashi-user command line (main.py).

Each test points HANASHI_DATABASE_URL at a fresh SQLite file under tmp_path,
so consecutive main() calls inside one test share state the way consecutive
shell invocations would. Passwords are fed through a patched getpass.

Covers:
  - force_add + login, mismatched password prompts
  - duplicate accounts and other domain errors exit with status 1
  - seed-groups / groups / join / leave
  - add (invitation) with the email server unconfigured, ls shows it pending
  - passwd refuses to overwrite, deactivate, rm
  - clean-pendings and nag
"""

from __future__ import annotations

import base64

import pytest

import main as cli
from core.config import get_settings

PEPPER_B64 = base64.b64encode(b"\x09" * 32).decode("ascii")


@pytest.fixture
def cli_env(tmp_path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("HANASHI_DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("HANASHI_RUNTIME_PEPPER", PEPPER_B64)
    monkeypatch.setenv("HANASHI_EMAIL_SERVER", "")
    get_settings.cache_clear()
    yield tmp_path
    get_settings.cache_clear()


@pytest.fixture
def typed(monkeypatch: pytest.MonkeyPatch):
    """Queue answers for getpass prompts."""
    answers: list[str] = []

    def fake_getpass(prompt: str = "") -> str:
        return answers.pop(0)

    monkeypatch.setattr(cli, "getpass", fake_getpass)
    return answers


def _run(*argv: str) -> int:
    return cli.main(list(argv))


class TestAccounts:
    def test_force_add_then_login(self, cli_env, typed, capsys) -> None:
        typed.extend(["cli-password", "cli-password"])
        assert _run("force_add", "alice@example.com") == 0
        assert "Success! Created user" in capsys.readouterr().out

        typed.append("cli-password")
        assert _run("login", "alice@example.com") == 0
        assert "Logged in as user" in capsys.readouterr().out

        typed.append("wrong-password")
        assert _run("login", "alice@example.com") == 1
        assert "doesn't match" in capsys.readouterr().out

    def test_mismatched_passwords(self, cli_env, typed, capsys) -> None:
        typed.extend(["cli-password", "other-password"])
        assert _run("force_add", "alice@example.com") == 1
        assert "don't match" in capsys.readouterr().out

    def test_duplicate_force_add(self, cli_env, typed, capsys) -> None:
        typed.extend(["cli-password"] * 4)
        assert _run("force_add", "alice@example.com") == 0
        assert _run("force_add", "alice@example.com") == 1
        assert "already exists" in capsys.readouterr().out

    def test_short_password(self, cli_env, typed, capsys) -> None:
        typed.extend(["short", "short"])
        assert _run("force_add", "alice@example.com") == 1
        assert "at least 8" in capsys.readouterr().out

    def test_passwd_refuses_to_overwrite(self, cli_env, typed, capsys) -> None:
        typed.extend(["cli-password"] * 4)
        _run("force_add", "alice@example.com")
        assert _run("passwd", "alice@example.com") == 1
        assert "Password already set!" in capsys.readouterr().out

    def test_passwd_unknown_user(self, cli_env, typed, capsys) -> None:
        typed.extend(["cli-password"] * 2)
        assert _run("passwd", "nobody@example.com") == 1
        assert "No user with e-mail address nobody@example.com" in capsys.readouterr().out

    def test_deactivate_and_rm(self, cli_env, typed, capsys) -> None:
        typed.extend(["cli-password"] * 4)
        _run("force_add", "alice@example.com")
        _run("force_add", "bob@example.com")

        assert _run("deactivate", "alice@example.com") == 0
        assert _run("rm", "bob@example.com") == 0
        capsys.readouterr()

        assert _run("ls") == 0
        out = capsys.readouterr().out
        assert "1 user(s) found" in out
        assert "(deactivated)" in out
        assert "bob@example.com" not in out

        assert _run("rm", "bob@example.com") == 1
        assert _run("deactivate", "bob@example.com") == 1


class TestGroups:
    def test_seed_join_leave(self, cli_env, typed, capsys) -> None:
        typed.extend(["cli-password"] * 2)
        _run("force_add", "alice@example.com")

        assert _run("seed-groups") == 0
        assert "8 group(s) created" in capsys.readouterr().out
        assert _run("seed-groups") == 0
        assert "0 group(s) created" in capsys.readouterr().out

        assert _run("join", "alice@example.com", "admins") == 0
        assert "joined admins" in capsys.readouterr().out
        assert _run("join", "alice@example.com", "admins") == 0
        assert "already belongs" in capsys.readouterr().out

        assert _run("groups") == 0
        out = capsys.readouterr().out
        assert "admins" in out
        assert "subjects" in out and "(anonymous)" in out

        assert _run("leave", "alice@example.com", "admins") == 0
        assert _run("leave", "alice@example.com", "admins") == 1

    def test_join_unknown_group(self, cli_env, typed, capsys) -> None:
        typed.extend(["cli-password"] * 2)
        _run("force_add", "alice@example.com")
        assert _run("join", "alice@example.com", "no_such_group") == 1
        assert "no_such_group" in capsys.readouterr().out


class TestInvitations:
    def test_add_creates_pending_confirmation(self, cli_env, capsys) -> None:
        _run("seed-groups")
        assert _run("add", "new@example.com", "--group", "subjects") == 0
        assert "Confirmation email sent" in capsys.readouterr().out

        _run("ls")
        assert "pending invitation(s): new@example.com" in capsys.readouterr().out

        assert _run("clean-pendings", "--days", "0") == 0
        assert "Removed 1 invitation(s)" in capsys.readouterr().out

    def test_add_unknown_group(self, cli_env, capsys) -> None:
        assert _run("add", "new@example.com", "--group", "nope") == 1
        assert "No group named 'nope'" in capsys.readouterr().out

    def test_add_existing_user(self, cli_env, typed, capsys) -> None:
        typed.extend(["cli-password"] * 2)
        _run("force_add", "alice@example.com")
        assert _run("add", "alice@example.com") == 1
        assert "User already exists!" in capsys.readouterr().out


def test_nag_with_nobody_to_nag(cli_env, capsys) -> None:
    _run("seed-groups")
    assert _run("nag") == 0
    assert "Sent 0 reminder email(s)" in capsys.readouterr().out


def test_unknown_command_exits() -> None:
    with pytest.raises(SystemExit):
        cli.main(["frobnicate"])
