"""mentor_import.courses

Course collaborator boundary: allowed roles, groups and enrolments of one
course (a training session). Only the operations the import pipeline needs
are exposed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Protocol

from mentor_import.normalize import casefold_key


@dataclass(frozen=True)
class Role:
    id: int
    shortname: str
    name: str
    localname: str

    def matches(self, text: str | None) -> bool:
        key = casefold_key(text)
        return bool(key) and key in (casefold_key(self.localname), casefold_key(self.name))


class CourseGateway(Protocol):
    def course_exists(self, course_id: int) -> bool:
        ...

    def get_course_roles_catalog(self, course_id: int) -> list[Role]:
        """Every role usable in the course context, with local names."""
        ...

    def find_group_by_name(self, course_id: int, name: str) -> int | None:
        ...

    def create_group(self, course_id: int, name: str) -> int:
        ...

    def add_group_member(self, group_id: int, account_id: int) -> bool:
        """Return True when a membership was inserted, False if already present."""
        ...

    def get_user_course_roles(self, account_id: int, course_id: int) -> dict[int, Role]:
        ...

    def is_enrolled(self, account_id: int, course_id: int) -> bool:
        ...

    def enrol(self, course_id: int, account_id: int, role_id: int) -> bool:
        ...

    def unassign_all_roles(self, account_id: int, course_id: int) -> None:
        ...

    def assign_role(self, course_id: int, account_id: int, role_id: int) -> None:
        ...


# ---------------------------------------------------------------------------
# CourseContext
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CourseContext:
    """Roles the import may assign in one course, resolved once per batch."""

    course_id: int
    allowed_roles: dict[str, Role]
    lowest_role: str

    @property
    def default_role(self) -> Role:
        return self.allowed_roles[self.lowest_role]

    def match_role(self, text: str | None) -> Role | None:
        for role in self.allowed_roles.values():
            if role.matches(text):
                return role
        return None

    def display_names(self, roles: Iterable[Role]) -> str:
        """Comma-joined local names, using the allowed-role naming when known."""
        names = []
        for role in roles:
            known = self.allowed_roles.get(role.shortname)
            names.append((known or role).localname)
        return ",".join(names)


def build_course_context(
    gateway: CourseGateway,
    course_id: int,
    allowed_shortnames: Iterable[str],
    lowest_role: str,
) -> CourseContext:
    allowed = set(allowed_shortnames)
    roles = {
        r.shortname: r
        for r in gateway.get_course_roles_catalog(course_id)
        if r.shortname in allowed
    }
    if lowest_role not in roles:
        raise ValueError(
            f"course {course_id} does not offer the default role {lowest_role!r}"
        )
    return CourseContext(course_id=course_id, allowed_roles=roles, lowest_role=lowest_role)
