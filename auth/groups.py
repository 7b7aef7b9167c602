"""
auth/groups.py -- Group-based authorization.

Well-known groups form a closed set (Group). Their ids are cached when the
checker is built, so the common "is this account an admin" question costs a
single membership lookup. Any other name is a custom group and is resolved
against the store on every call.

Semantics of check_user_group():
  ""                     -> True (no restriction)
  unknown group name     -> NoneResult
  known group, no member -> False

"Group doesn't exist" and "not a member" are deliberately different outcomes:
a typo in a route's required group must fail loudly, not silently deny.

Layer rule: no imports from api/, notify/, or core/.
"""

from __future__ import annotations

import logging
from enum import Enum

from sqlalchemy.engine import Connection

from auth.errors import NoneResult
from auth.models import Account, GroupMembership, UserGroup
from auth.store import IdentityStore

logger = logging.getLogger("hanashi.auth")


class Group(str, Enum):
    ADMINS = "admins"
    EDITORS = "editors"
    BETATESTERS = "betatesters"
    SUBJECTS = "subjects"
    INPUT_GROUP = "input_group"
    OUTPUT_GROUP = "output_group"
    SHOW_ACCENT = "show_accent"
    NAG_EMAILS = "nag_emails"

    @classmethod
    def parse(cls, name: str) -> "Group | str":
        """The matching well-known member, or the name itself for a custom group."""
        try:
            return cls(name)
        except ValueError:
            return name


# Anonymous groups hide member identities behind per-group aliases.
_ANONYMOUS_GROUPS = frozenset({Group.SUBJECTS, Group.INPUT_GROUP, Group.OUTPUT_GROUP})


class GroupChecker:
    def __init__(self, store: IdentityStore) -> None:
        self.store = store
        self._ids: dict[Group, int] = {}
        self.reload()

    def reload(self) -> None:
        """Re-read the ids of the well-known groups from the store."""
        self._ids = {}
        for group in self.store.list_groups():
            parsed = Group.parse(group.group_name)
            if isinstance(parsed, Group):
                self._ids[parsed] = group.id

    def group_id(self, group: Group | str, conn: Connection | None = None) -> int | None:
        name = group.value if isinstance(group, Group) else group
        parsed = Group.parse(name)
        if isinstance(parsed, Group) and parsed in self._ids:
            return self._ids[parsed]
        # Custom group, or a well-known one created after the last reload().
        found = self.store.get_group_by_name(name, conn=conn)
        if found is None:
            return None
        if isinstance(parsed, Group):
            self._ids[parsed] = found.id
        return found.id

    def check_user_group(self, account_id: int, group: Group | str) -> bool:
        name = group.value if isinstance(group, Group) else group
        if name == "":
            return True
        group_id = self.group_id(name)
        if group_id is None:
            raise NoneResult(name)
        return self.store.has_membership(account_id, group_id)

    # ------------------------------------------------------------------
    # Membership management
    # ------------------------------------------------------------------

    def join_user_group_by_id(
        self,
        account_id: int,
        group_id: int,
        anonymous: bool = False,
        conn: Connection | None = None,
    ) -> bool:
        """Add the account to the group. Returns False if it already was a member."""
        if self.store.get_group(group_id, conn=conn) is None:
            raise NoneResult(str(group_id))
        if self.store.has_membership(account_id, group_id, conn=conn):
            return False
        self.store.insert_membership(
            GroupMembership(account_id=account_id, group_id=group_id, anonymous=anonymous),
            conn=conn,
        )
        logger.info("Account %d joined group %d", account_id, group_id)
        return True

    def join_user_group_by_name(self, account_id: int, group: Group | str, anonymous: bool = False) -> bool:
        name = group.value if isinstance(group, Group) else group
        group_id = self.group_id(name)
        if group_id is None:
            raise NoneResult(name)
        return self.join_user_group_by_id(account_id, group_id, anonymous=anonymous)

    def remove_user_group_by_id(self, account_id: int, group_id: int) -> bool:
        removed = self.store.delete_membership(account_id, group_id)
        if removed:
            logger.info("Account %d left group %d", account_id, group_id)
        return removed > 0

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_users_by_group(self, group_id: int) -> list[tuple[Account, GroupMembership]]:
        return self.store.members_of(group_id)

    def get_group(self, group: Group | str) -> UserGroup | None:
        name = group.value if isinstance(group, Group) else group
        return self.store.get_group_by_name(name)

    def all_groups(self) -> list[UserGroup]:
        return self.store.list_groups()

    def groups_of(self, account_id: int) -> list[UserGroup]:
        by_id = {g.id: g for g in self.store.list_groups()}
        return [by_id[m.group_id] for m in self.store.memberships_of(account_id) if m.group_id in by_id]

    def ensure_groups(self) -> list[UserGroup]:
        """Create any missing well-known group. Returns the groups it created."""
        created = []
        with self.store.transaction() as conn:
            for group in Group:
                if self.store.get_group_by_name(group.value, conn=conn) is None:
                    created.append(
                        self.store.insert_group(group.value, anonymous=group in _ANONYMOUS_GROUPS, conn=conn)
                    )
        if created:
            logger.info("Created groups: %s", ", ".join(g.group_name for g in created))
        self.reload()
        return created
