"""mentor_import.resolve

Duplicate & Identity Resolver.

Classifies each ValidatedRow against one IdentitySnapshot taken for the
whole batch, so two rows naming the same e-mail always get the same
directory answer. The only live lookups made here are course-role reads for
existing accounts when a target role is requested.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from mentor_import.courses import CourseContext, CourseGateway
from mentor_import.directory import Account, IdentitySnapshot
from mentor_import.policy import REJECT_SELF_DEMOTION, RoleTransition, evaluate_role_transition
from mentor_import.shared import (
    MSG_EMAIL_ALREADY_USED,
    MSG_LOSE_PRIVILEGE,
    MSG_REACTIVATE,
    MSG_ROLE_CHANGE,
    MSG_USER_ALREADY_EXISTS,
    MSG_WILL_BE_CREATED,
    Diagnostic,
    Severity,
)
from mentor_import.validate import ValidatedRow


class RowClassification(str, Enum):
    NEW_ACCOUNT = "new_account"
    EXISTING_ACTIVE_NO_CHANGE = "existing_active_no_change"
    EXISTING_ACTIVE_ROLE_CHANGE = "existing_active_role_change"
    EXISTING_SUSPENDED_REACTIVATE = "existing_suspended_reactivate"
    AMBIGUOUS_DUPLICATE = "ambiguous_duplicate"
    REJECTED = "rejected"


EXCLUDED = frozenset({RowClassification.AMBIGUOUS_DUPLICATE, RowClassification.REJECTED})


@dataclass(frozen=True)
class ResolvedRow:
    row: ValidatedRow
    classification: RowClassification
    account: Account | None = None
    transition: RoleTransition | None = None

    @property
    def eligible(self) -> bool:
        return self.classification not in EXCLUDED


@dataclass
class ResolutionBatch:
    """Per-batch resolution state.

    creation_emails holds distinct e-mails, so validForCreation counts
    accounts to create, not lines: two lines for one new address count once.
    Deliberately not a per-line count: a line counter would announce more
    accounts than the commit pass creates.
    """

    resolved: list[ResolvedRow] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    reactivations: dict[str, Account] = field(default_factory=dict)
    creation_emails: set[str] = field(default_factory=set)

    @property
    def eligible_rows(self) -> list[ValidatedRow]:
        return [r.row for r in self.resolved if r.eligible]

    def _note(self, line: int, severity: Severity, message: str) -> None:
        self.diagnostics.append(Diagnostic(line, severity, message))


@dataclass
class IdentityResolver:
    snapshot: IdentitySnapshot
    course: CourseContext | None = None
    course_gateway: CourseGateway | None = None
    acting_id: int | None = None
    lowest_role: str = "participant"
    guarded_role: str = "formateur"

    def resolve(self, rows: list[ValidatedRow]) -> ResolutionBatch:
        batch = ResolutionBatch()
        warned_existing: set[str] = set()
        for row in rows:
            batch.resolved.append(self._resolve_row(row, batch, warned_existing))
        return batch

    # -- per row -------------------------------------------------------------

    def _resolve_row(
        self,
        row: ValidatedRow,
        batch: ResolutionBatch,
        warned_existing: set[str],
    ) -> ResolvedRow:
        line, email = row.line_number, row.email
        matches = self.snapshot.matches_for_email(email)

        if len(matches) > 1 or (matches and len(self.snapshot.claimants(email)) > 1):
            batch._note(line, Severity.WARNING, MSG_EMAIL_ALREADY_USED)
            return ResolvedRow(row, RowClassification.AMBIGUOUS_DUPLICATE)

        if not matches:
            if email not in batch.reactivations:
                batch.creation_emails.add(email)
                batch._note(line, Severity.INFO, MSG_WILL_BE_CREATED.format(email=email))
            return ResolvedRow(row, RowClassification.NEW_ACCOUNT)

        account = matches[0]
        classification = RowClassification.EXISTING_ACTIVE_NO_CHANGE
        pending_change = False

        if account.suspended:
            batch.reactivations.setdefault(email, account)
            batch._note(line, Severity.WARNING, MSG_REACTIVATE)
            classification = RowClassification.EXISTING_SUSPENDED_REACTIVATE
            pending_change = True

        transition = None
        if self.course is not None and self.course_gateway is not None and row.role is not None:
            current = self.course_gateway.get_user_course_roles(account.id, self.course.course_id)
            transition = RoleTransition(
                acting_id=self.acting_id,
                subject_id=account.id,
                current_roles=current,
                requested=row.role,
                current_display=self.course.display_names(current.values()),
            )
            if transition.is_change:
                decision = evaluate_role_transition(transition, self.lowest_role, self.guarded_role)
                if decision == REJECT_SELF_DEMOTION:
                    batch._note(line, Severity.ERROR, MSG_LOSE_PRIVILEGE)
                    return ResolvedRow(row, RowClassification.REJECTED, account, transition)
                batch._note(line, Severity.WARNING, MSG_ROLE_CHANGE.format(
                    old=transition.current_display,
                    new=self.course.allowed_roles[row.role.shortname].localname,
                ))
                if not account.suspended:
                    classification = RowClassification.EXISTING_ACTIVE_ROLE_CHANGE
                pending_change = True

        if (
            self.course is None
            and not pending_change
            and email not in batch.reactivations
            and email not in warned_existing
        ):
            warned_existing.add(email)
            batch._note(line, Severity.WARNING, MSG_USER_ALREADY_EXISTS.format(email=email))

        return ResolvedRow(row, classification, account, transition)
