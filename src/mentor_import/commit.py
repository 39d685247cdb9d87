"""mentor_import.commit

Commit Engine: applies the mutations a preview approved, one row at a time.

Per-row order (course import):
  1. Reactivate the row's account if its e-mail is pending reactivation.
  2. Live lookup by e-mail; create the account when absent (derived
     username, unusable placeholder credential).
  3. Enrol when not enrolled; otherwise, when the row names a role the
     account does not hold, unassign every role and assign exactly that one.
  4. Add to the named group, creating the group first when needed.

Every step is safe to re-run: a second pass over the same rows finds the
account, the enrolment and the membership already there. A row whose
mutation raises is reported as failed and the engine moves on; earlier rows
stay committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from mentor_import.courses import CourseContext, CourseGateway
from mentor_import.directory import (
    Account,
    AccountStore,
    Entity,
    NewAccount,
    PendingNameReservation,
    derive_username,
    secondary_entities_for,
)
from mentor_import.shared import (
    ALREADY_EXISTS,
    CREATED,
    CREATED_AND_ENROLLED,
    ENROLLED,
    REACTIVATED,
    REACTIVATED_AND_ENROLLED,
    ImportCounters,
    failed_outcome,
)
from mentor_import.validate import ValidatedRow

log = logging.getLogger(__name__)


@dataclass
class _BatchState:
    pending_reactivation: set[str] = field(default_factory=set)
    reactivated_unreported: set[str] = field(default_factory=set)
    created_unreported: set[str] = field(default_factory=set)
    seen_emails: set[str] = field(default_factory=set)
    outcomes: dict[int, str] = field(default_factory=dict)


class CommitEngine:
    def __init__(
        self,
        store: AccountStore,
        courses: CourseGateway | None = None,
        counters: ImportCounters | None = None,
        reservations: PendingNameReservation | None = None,
        run_id: str = "",
    ) -> None:
        self._store = store
        self._courses = courses
        self._reservations = reservations
        self.counters = counters or ImportCounters()
        self._run_id = run_id

    # -- shared steps --------------------------------------------------------

    def _begin_batch(self, users_to_reactivate: Iterable[str]) -> _BatchState:
        if self._reservations is not None:
            self._reservations.refresh()
        return _BatchState(pending_reactivation=set(users_to_reactivate))

    def _reactivate(self, email: str, state: _BatchState) -> bool:
        state.pending_reactivation.discard(email)
        account = self._store.get_by_email(email)
        if account is None or not account.suspended:
            return False
        self._store.reactivate(account.id)
        state.reactivated_unreported.add(email)
        self.counters.accounts_reactivated += 1
        return True

    def _find_or_create(
        self,
        row: ValidatedRow,
        state: _BatchState,
        entity: Entity | None,
    ) -> tuple[Account, bool]:
        account = self._store.get_by_email(row.email)
        if account is not None:
            self.counters.accounts_matched_existing += 1
            return account, False
        main_entity_id = entity.id if entity is not None and entity.can_be_main_entity else None
        account = self._store.create_account(NewAccount(
            email=row.email,
            username=derive_username(self._store, row.email, self._reservations),
            firstname=row.firstname,
            lastname=row.lastname,
            main_entity_id=main_entity_id,
        ))
        state.created_unreported.add(row.email)
        self.counters.accounts_created += 1
        return account, True

    def _sync_entities(self, account: Account, entity: Entity | None) -> None:
        if entity is None:
            return
        main = self._store.get_main_entity(account.id)
        names = secondary_entities_for(entity, main.id if main is not None else None)
        self._store.set_secondary_entities(account.id, names)

    def _fail(self, row: ValidatedRow, exc: Exception, state: _BatchState) -> None:
        log.warning("line %s (%s): commit failed: %s", row.line_number, row.email, exc)
        self.counters.commit_errors += 1
        self.counters.warnings.append(
            f"[{self._run_id}] line {row.line_number} {type(exc).__name__}: {exc}"
        )
        state.outcomes[row.line_number] = failed_outcome(str(exc))

    def _run(self, rows: Iterable[ValidatedRow], state: _BatchState, step) -> dict[int, str]:
        for row in rows:
            try:
                with self._store.row_scope(f"line_{row.line_number}"):
                    state.outcomes[row.line_number] = step(row, state)
            except Exception as exc:  # noqa: BLE001
                self._fail(row, exc, state)
        return state.outcomes

    def _reactivate_orphans(self, rows: list[ValidatedRow], state: _BatchState) -> None:
        """Reactivate pending e-mails that no committed row will reach."""
        row_emails = {r.email for r in rows}
        for email in sorted(state.pending_reactivation - row_emails):
            try:
                with self._store.row_scope("reactivate_orphan"):
                    self._reactivate(email, state)
            except Exception as exc:  # noqa: BLE001
                log.warning("reactivation of %s failed: %s", email, exc)
                self.counters.commit_errors += 1
                self.counters.warnings.append(f"[{self._run_id}] reactivate {email}: {exc}")

    # -- course import -------------------------------------------------------

    def commit_enrolments(
        self,
        course: CourseContext,
        rows: list[ValidatedRow],
        users_to_reactivate: Iterable[str] = (),
        entity: Entity | None = None,
    ) -> dict[int, str]:
        courses = self._courses
        if courses is None:
            raise ValueError("course import requires a course gateway")
        state = self._begin_batch(users_to_reactivate)
        self._reactivate_orphans(rows, state)

        def step(row: ValidatedRow, st: _BatchState) -> str:
            return self._enrol_row(courses, course, row, st, entity)

        return self._run(rows, state, step)

    def _enrolled_status(self, email: str, state: _BatchState) -> str:
        if email in state.reactivated_unreported:
            state.reactivated_unreported.discard(email)
            return REACTIVATED_AND_ENROLLED
        if email in state.created_unreported:
            state.created_unreported.discard(email)
            return CREATED_AND_ENROLLED
        return ENROLLED

    def _enrol_row(
        self,
        courses: CourseGateway,
        course: CourseContext,
        row: ValidatedRow,
        state: _BatchState,
        entity: Entity | None,
    ) -> str:
        if row.email in state.pending_reactivation:
            self._reactivate(row.email, state)

        account, created = self._find_or_create(row, state, entity)
        if not created:
            self._sync_entities(account, entity)

        role = row.role or course.default_role
        outcome = None
        if not courses.is_enrolled(account.id, course.course_id):
            if courses.enrol(course.course_id, account.id, role.id):
                courses.assign_role(course.course_id, account.id, role.id)
                self.counters.enrolments_inserted += 1
                outcome = self._enrolled_status(row.email, state)
        elif row.role is not None:
            current = courses.get_user_course_roles(account.id, course.course_id)
            if role.id not in current:
                courses.unassign_all_roles(account.id, course.course_id)
                courses.assign_role(course.course_id, account.id, role.id)
                self.counters.roles_updated += 1
                outcome = self._enrolled_status(row.email, state)

        if row.group:
            group_id = courses.find_group_by_name(course.course_id, row.group)
            if group_id is None:
                group_id = courses.create_group(course.course_id, row.group)
                self.counters.groups_created += 1
            if courses.add_group_member(group_id, account.id):
                self.counters.group_members_added += 1

        if outcome is not None:
            return outcome
        if row.email in state.reactivated_unreported:
            state.reactivated_unreported.discard(row.email)
            return REACTIVATED
        return ALREADY_EXISTS

    # -- user import ---------------------------------------------------------

    def commit_users(
        self,
        rows: list[ValidatedRow],
        users_to_reactivate: Iterable[str] = (),
        entity: Entity | None = None,
    ) -> dict[int, str]:
        state = self._begin_batch(users_to_reactivate)
        self._reactivate_orphans(rows, state)

        def step(row: ValidatedRow, st: _BatchState) -> str:
            return self._create_row(row, st, entity)

        return self._run(rows, state, step)

    def _create_row(self, row: ValidatedRow, state: _BatchState, entity: Entity | None) -> str:
        email = row.email
        if email in state.pending_reactivation:
            self._reactivate(email, state)

        account, created = self._find_or_create(row, state, entity)
        self._sync_entities(account, entity)

        first_time = email not in state.seen_emails
        state.seen_emails.add(email)
        if created:
            state.created_unreported.discard(email)
            return CREATED
        if first_time and email in state.reactivated_unreported:
            state.reactivated_unreported.discard(email)
            return REACTIVATED
        return ALREADY_EXISTS
