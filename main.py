#!/usr/bin/env python3
"""
Hanashi user control -- command-line account administration.

Works directly against the identity store named by HANASHI_DATABASE_URL,
with the same pepper (HANASHI_RUNTIME_PEPPER) the web app uses. Passwords
are always read from the terminal, never from arguments.

Usage:
  python main.py ls
  python main.py add alice@example.com --group subjects
  python main.py force_add alice@example.com
  python main.py passwd alice@example.com
  python main.py login alice@example.com
  python main.py deactivate alice@example.com
  python main.py rm alice@example.com
  python main.py groups
  python main.py join alice@example.com admins
  python main.py leave alice@example.com admins
  python main.py seed-groups
  python main.py clean-pendings --days 14
  python main.py nag
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import timedelta
from getpass import getpass

from auth.accounts import UserLifecycle
from auth.errors import HanashiError, InfrastructureError
from auth.groups import GroupChecker
from auth.secret_tokens import SecretTokenStore
from auth.store import IdentityStore
from core.config import Settings, get_settings
from notify.email import Mailer, build_mailer

logger = logging.getLogger("hanashi.cli")


class _Services:
    """Everything a subcommand may need, built once from Settings."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.store = IdentityStore(settings.database_url)
        self.groups = GroupChecker(self.store)
        self.lifecycle = UserLifecycle(self.store, self.groups)
        self.secrets = SecretTokenStore(self.store, self.lifecycle)
        self.mailer: Mailer = build_mailer(
            site_name=settings.site_name,
            site_link=settings.site_link,
            from_address=settings.email_from_address,
            from_name=settings.email_from_name,
            host=settings.email_server,
            port=settings.email_port,
            username=settings.email_username,
            password=settings.email_password,
            starttls=settings.email_starttls,
        )

    def account_by_email(self, email: str):
        account = self.lifecycle.get_by_email(email)
        if account is None:
            print(f"  [!] No user with e-mail address {email}.")
        return account


def _read_new_password() -> str | None:
    first = getpass("  Enter a password: ")
    second = getpass("  Repeat the password: ")
    if first != second:
        print("  [!] The passwords don't match.")
        return None
    return first


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def cmd_ls(svc: _Services, args: argparse.Namespace) -> int:
    accounts = svc.lifecycle.list_accounts()
    last_seen = svc.store.last_seen_by_account()
    print(f"  {len(accounts)} user(s) found:")
    for account in accounts:
        groups = ", ".join(g.group_name for g in svc.groups.groups_of(account.id)) or "-"
        seen = last_seen.get(account.id)
        seen_text = seen[0].strftime("%Y-%m-%d %H:%M") if seen else "never"
        print(f"  {account.id:>5}  {account.email or '(deactivated)':<40} groups: {groups:<30} last seen: {seen_text}")
    pending = svc.secrets.all_pending_email_confirms()
    if pending:
        print(f"\n  {len(pending)} pending invitation(s): {', '.join(pending)}")
    return 0


def cmd_add(svc: _Services, args: argparse.Namespace) -> int:
    if svc.lifecycle.get_by_email(args.email) is not None:
        print("  [!] User already exists!")
        return 1
    group_ids = []
    for name in args.group:
        group = svc.groups.get_group(name)
        if group is None:
            print(f"  [!] No group named {name!r}.")
            return 1
        group_ids.append(group.id)
    print(f"  Adding a user with email {args.email}")
    secret = svc.secrets.add_pending_email_confirm(args.email, group_ids)
    svc.mailer.send_confirmation(args.email, secret)
    print("  Success! Confirmation email sent.")
    return 0


def cmd_force_add(svc: _Services, args: argparse.Namespace) -> int:
    print(f"  Adding a user with email {args.email} without email confirmation")
    password = _read_new_password()
    if password is None:
        return 1
    account = svc.lifecycle.create(args.email, password, svc.settings.pepper)
    print(f"  Success! Created user {account.id}.")
    return 0


def cmd_passwd(svc: _Services, args: argparse.Namespace) -> int:
    print(f"  Setting user {args.email} password.")
    password = _read_new_password()
    if password is None:
        return 1
    account = svc.lifecycle.set_password(args.email, password, svc.settings.pepper)
    print(f"  Success! Password set for user {account.id}.")
    return 0


def cmd_login(svc: _Services, args: argparse.Namespace) -> int:
    password = getpass("  Password: ")
    account = svc.lifecycle.authenticate(args.email, password, svc.settings.pepper)
    if account is None:
        print("  [!] Username (= e-mail) or password doesn't match.")
        return 1
    print(f"  Logged in as user {account.id}.")
    return 0


def cmd_deactivate(svc: _Services, args: argparse.Namespace) -> int:
    account = svc.account_by_email(args.email)
    if account is None:
        return 1
    svc.lifecycle.deactivate(account.id)
    print(f"  Deactivated user {account.id}. Study history was kept.")
    return 0


def cmd_rm(svc: _Services, args: argparse.Namespace) -> int:
    print(f"  Removing user with e-mail {args.email}")
    removed = svc.lifecycle.remove_by_email(args.email)
    print(f"  Success! User {removed.id} removed.")
    return 0


def cmd_groups(svc: _Services, args: argparse.Namespace) -> int:
    for group in svc.groups.all_groups():
        members = svc.groups.get_users_by_group(group.id)
        flag = " (anonymous)" if group.anonymous else ""
        print(f"  {group.id:>3}  {group.group_name:<20} {len(members)} member(s){flag}")
    return 0


def cmd_join(svc: _Services, args: argparse.Namespace) -> int:
    account = svc.account_by_email(args.email)
    if account is None:
        return 1
    if svc.groups.join_user_group_by_name(account.id, args.group):
        print(f"  {args.email} joined {args.group}.")
    else:
        print(f"  {args.email} already belongs to {args.group}.")
    return 0


def cmd_leave(svc: _Services, args: argparse.Namespace) -> int:
    account = svc.account_by_email(args.email)
    if account is None:
        return 1
    group = svc.groups.get_group(args.group)
    if group is None or not svc.groups.remove_user_group_by_id(account.id, group.id):
        print(f"  [!] {args.email} isn't a member of {args.group}.")
        return 1
    print(f"  {args.email} left {args.group}.")
    return 0


def cmd_seed_groups(svc: _Services, args: argparse.Namespace) -> int:
    created = svc.groups.ensure_groups()
    print(f"  {len(created)} group(s) created.")
    return 0


def cmd_clean_pendings(svc: _Services, args: argparse.Namespace) -> int:
    days = args.days if args.days is not None else svc.settings.pending_confirm_max_age_days
    removed = svc.secrets.clean_old_pendings(timedelta(days=days))
    print(f"  Removed {removed} invitation(s) older than {days} day(s).")
    return 0


def cmd_nag(svc: _Services, args: argparse.Namespace) -> int:
    nagged = svc.mailer.send_nag_emails(
        svc.lifecycle,
        inactive_for=timedelta(days=svc.settings.nag_inactive_days),
        grace_period=timedelta(days=svc.settings.nag_grace_days),
    )
    print(f"  Sent {len(nagged)} reminder email(s).")
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hanashi-user",
        description="Hanashi user control.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    def with_email(name: str, handler, help_text: str) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help_text)
        p.add_argument("email")
        p.set_defaults(handler=handler)
        return p

    sub.add_parser("ls", help="List all users").set_defaults(handler=cmd_ls)
    add = with_email("add", cmd_add, "Invite a new user (sends a confirmation email)")
    add.add_argument("--group", action="append", default=[], metavar="NAME", help="Group to join on confirmation")
    with_email("force_add", cmd_force_add, "Add a new user without email confirmation")
    with_email("passwd", cmd_passwd, "Set the password of a user that has none")
    with_email("login", cmd_login, "Check a user's credentials")
    with_email("deactivate", cmd_deactivate, "Clear a user's email and password, keeping history")
    with_email("rm", cmd_rm, "Remove a user and all their data")
    sub.add_parser("groups", help="List groups").set_defaults(handler=cmd_groups)
    join = with_email("join", cmd_join, "Add a user to a group")
    join.add_argument("group")
    leave = with_email("leave", cmd_leave, "Remove a user from a group")
    leave.add_argument("group")
    sub.add_parser("seed-groups", help="Create the well-known groups").set_defaults(handler=cmd_seed_groups)
    clean = sub.add_parser("clean-pendings", help="Drop old unconfirmed invitations")
    clean.add_argument("--days", type=int, default=None, help="Age limit (default: from settings)")
    clean.set_defaults(handler=cmd_clean_pendings)
    sub.add_parser("nag", help="Email reminders to inactive users").set_defaults(handler=cmd_nag)
    return parser


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    args = build_parser().parse_args(argv)
    svc = _Services(get_settings())
    try:
        return args.handler(svc, args)
    except HanashiError as exc:
        print(f"  [!] Error: {exc.message}")
        return 1
    except InfrastructureError as exc:
        logger.error("%s", exc, exc_info=exc)
        print(f"  [!] {exc}")
        return 2
    finally:
        svc.store.close()


if __name__ == "__main__":
    sys.exit(main())
