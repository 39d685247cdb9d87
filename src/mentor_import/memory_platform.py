"""mentor_import.memory_platform

In-memory implementation of the account store and course gateway.

Used by unit tests; from_fixture() seeds it from a JSON file.
Behaves like PgPlatform: e-mail and username comparisons are
case-insensitive, memberships and enrolments are sets (idempotent inserts).
"""

from __future__ import annotations

import contextlib
import itertools
import json
from collections import Counter
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Iterator

from mentor_import.courses import Role
from mentor_import.directory import Account, Entity, NewAccount
from mentor_import.shared import AmbiguousMatchError

DEFAULT_ROLES = (
    Role(id=5, shortname="participant", name="Participant", localname="Participant"),
    Role(id=4, shortname="tuteur", name="Tuteur", localname="Tuteur"),
    Role(id=3, shortname="formateur", name="Formateur", localname="Formateur"),
    Role(id=1, shortname="manager", name="Manager", localname="Gestionnaire"),
)


@dataclass
class InMemoryPlatform:
    accounts: dict[int, Account] = field(default_factory=dict)
    credentials: dict[int, str] = field(default_factory=dict)
    entities: dict[int, Entity] = field(default_factory=dict)
    main_entity: dict[int, int] = field(default_factory=dict)
    secondary_entities: dict[int, list[str]] = field(default_factory=dict)
    platform_roles: dict[int, str] = field(default_factory=dict)
    courses: set[int] = field(default_factory=set)
    roles: list[Role] = field(default_factory=lambda: list(DEFAULT_ROLES))
    groups: dict[int, tuple[int, str]] = field(default_factory=dict)
    group_members: set[tuple[int, int]] = field(default_factory=set)
    enrolments: set[tuple[int, int]] = field(default_factory=set)
    role_assignments: set[tuple[int, int, int]] = field(default_factory=set)
    calls: Counter = field(default_factory=Counter)
    _ids: Any = field(default_factory=lambda: itertools.count(1000), repr=False)

    # -- seeding -------------------------------------------------------------

    def add_account(
        self,
        email: str,
        username: str | None = None,
        suspended: bool = False,
        firstname: str = "",
        lastname: str = "",
        account_id: int | None = None,
    ) -> Account:
        aid = account_id if account_id is not None else next(self._ids)
        acc = Account(
            id=aid,
            email=email,
            username=username or email.lower(),
            suspended=suspended,
            firstname=firstname,
            lastname=lastname,
        )
        self.accounts[aid] = acc
        return acc

    def add_course(self, course_id: int) -> int:
        self.courses.add(course_id)
        return course_id

    @classmethod
    def from_fixture(cls, path: Path) -> InMemoryPlatform:
        """Seed from a JSON file: {"accounts": [...], "courses": [...], ...}."""
        data = json.loads(path.read_text(encoding="utf-8"))
        platform = cls()
        for acc in data.get("accounts", []):
            platform.add_account(
                email=acc["email"],
                username=acc.get("username"),
                suspended=bool(acc.get("suspended", False)),
                firstname=acc.get("firstname", ""),
                lastname=acc.get("lastname", ""),
                account_id=acc.get("id"),
            )
        for course_id in data.get("courses", []):
            platform.add_course(int(course_id))
        for ent in data.get("entities", []):
            platform.entities[int(ent["id"])] = Entity(
                id=int(ent["id"]),
                name=ent["name"],
                can_be_main_entity=bool(ent.get("can_be_main_entity", True)),
            )
        return platform

    # -- IdentityDirectory ---------------------------------------------------

    def find_by_emails(self, emails: set[str]) -> list[Account]:
        self.calls["find_by_emails"] += 1
        wanted = {e.lower() for e in emails}
        return [a for a in self.accounts.values() if a.email.lower() in wanted]

    def find_by_usernames(self, usernames: set[str]) -> list[Account]:
        self.calls["find_by_usernames"] += 1
        wanted = {u.lower() for u in usernames}
        return [a for a in self.accounts.values() if a.username.lower() in wanted]

    def username_exists(self, username: str) -> bool:
        self.calls["username_exists"] += 1
        return any(a.username.lower() == username.lower() for a in self.accounts.values())

    def get_by_email(self, email: str) -> Account | None:
        self.calls["get_by_email"] += 1
        rows = [a for a in self.accounts.values() if a.email.lower() == email.lower()]
        if len(rows) > 1:
            raise AmbiguousMatchError(f"ambiguous_email_match: email={email!r}")
        return rows[0] if rows else None

    def get_by_id(self, account_id: int) -> Account | None:
        return self.accounts.get(account_id)

    # -- AccountStore --------------------------------------------------------

    @contextlib.contextmanager
    def row_scope(self, name: str) -> Iterator[None]:
        yield

    def create_account(self, new: NewAccount) -> Account:
        if self.username_exists(new.username):
            raise ValueError(f"username already taken: {new.username!r}")
        acc = self.add_account(
            email=new.email,
            username=new.username,
            firstname=new.firstname,
            lastname=new.lastname,
        )
        self.credentials[acc.id] = new.credential
        if new.main_entity_id is not None:
            self.main_entity[acc.id] = new.main_entity_id
        return acc

    def reactivate(self, account_id: int) -> None:
        self.accounts[account_id] = replace(self.accounts[account_id], suspended=False)

    def suspend(self, account_id: int) -> None:
        self.accounts[account_id] = replace(self.accounts[account_id], suspended=True)

    def get_entity(self, entity_id: int) -> Entity | None:
        return self.entities.get(entity_id)

    def get_main_entity(self, account_id: int) -> Entity | None:
        eid = self.main_entity.get(account_id)
        return self.entities.get(eid) if eid is not None else None

    def get_highest_role(self, account_id: int) -> str | None:
        return self.platform_roles.get(account_id)

    def set_secondary_entities(self, account_id: int, entity_names: list[str]) -> None:
        self.secondary_entities[account_id] = list(entity_names)

    # -- CourseGateway -------------------------------------------------------

    def course_exists(self, course_id: int) -> bool:
        return course_id in self.courses

    def get_course_roles_catalog(self, course_id: int) -> list[Role]:
        return list(self.roles)

    def find_group_by_name(self, course_id: int, name: str) -> int | None:
        for gid, (cid, gname) in self.groups.items():
            if cid == course_id and gname == name:
                return gid
        return None

    def create_group(self, course_id: int, name: str) -> int:
        gid = next(self._ids)
        self.groups[gid] = (course_id, name)
        return gid

    def add_group_member(self, group_id: int, account_id: int) -> bool:
        key = (group_id, account_id)
        if key in self.group_members:
            return False
        self.group_members.add(key)
        return True

    def get_user_course_roles(self, account_id: int, course_id: int) -> dict[int, Role]:
        by_id = {r.id: r for r in self.roles}
        return {
            rid: by_id[rid]
            for (cid, aid, rid) in sorted(self.role_assignments)
            if cid == course_id and aid == account_id and rid in by_id
        }

    def is_enrolled(self, account_id: int, course_id: int) -> bool:
        return (course_id, account_id) in self.enrolments

    def enrol(self, course_id: int, account_id: int, role_id: int) -> bool:
        self.enrolments.add((course_id, account_id))
        self.role_assignments.add((course_id, account_id, role_id))
        return True

    def unassign_all_roles(self, account_id: int, course_id: int) -> None:
        self.role_assignments = {
            t for t in self.role_assignments if not (t[0] == course_id and t[1] == account_id)
        }

    def assign_role(self, course_id: int, account_id: int, role_id: int) -> None:
        self.role_assignments.add((course_id, account_id, role_id))
