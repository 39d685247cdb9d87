"""mentor_import.policy

Role-Transition Policy for identities already enrolled in the course.

Pure function over in-memory data: no lookups, no side effects.
"""

from __future__ import annotations

from dataclasses import dataclass

from mentor_import.courses import Role

ACCEPT = "accept"
REJECT_SELF_DEMOTION = "reject_self_demotion"


@dataclass(frozen=True)
class RoleTransition:
    acting_id: int | None
    subject_id: int
    current_roles: dict[int, Role]
    requested: Role
    current_display: str

    @property
    def is_change(self) -> bool:
        return bool(self.current_roles) and self.requested.id not in self.current_roles


def evaluate_role_transition(
    transition: RoleTransition,
    lowest_role: str,
    guarded_role: str,
) -> str:
    """Return ACCEPT or REJECT_SELF_DEMOTION.

    The only refusal: the importer is reassigning itself to the lowest role
    while holding exactly the guarded role (and nothing else) in the course.
    """
    if transition.acting_id is None or transition.acting_id != transition.subject_id:
        return ACCEPT
    if transition.requested.shortname != lowest_role:
        return ACCEPT
    held = {r.shortname for r in transition.current_roles.values()}
    if held == {guarded_role}:
        return REJECT_SELF_DEMOTION
    return ACCEPT
