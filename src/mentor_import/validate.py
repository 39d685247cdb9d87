"""mentor_import.validate

Row Validator.

validate_row() is pure: it receives one RawRow plus everything it needs to
know about the batch (ColumnMap, optional CourseContext, which group names
exist) and returns a ValidationResult. validate_rows() merges the per-row
results in file order and owns the batch-scoped state (first-seen unknown
group warnings).

Checks, in order; the first Error ends the row:
  1. column count below minimum            -> Error "missing field"
  2. email / lastname / firstname empty    -> Error "missing field"
  3. deny-listed characters                -> Error "special characters"
  4. e-mail syntax                         -> Error "invalid email"
  5. group unknown in course               -> Warning (first time per name)
  6. role not allowed in course            -> Error "invalid role"
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from mentor_import.courses import CourseContext, CourseGateway, Role
from mentor_import.normalize import (
    has_forbidden_email_chars,
    has_forbidden_name_chars,
    is_valid_email,
    normalize_email,
)
from mentor_import.parse import ColumnMap, RawRow
from mentor_import.shared import (
    MSG_INVALID_EMAIL,
    MSG_INVALID_ROLE,
    MSG_MISSING_FIELD,
    MSG_SPECIAL_CHARS,
    MSG_UNKNOWN_GROUP,
    Diagnostic,
    Severity,
)

MIN_COLUMNS = 3
MIN_COLUMNS_WITH_COURSE_COLUMNS = 5


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ValidatedRow:
    line_number: int
    email: str
    lastname: str
    firstname: str
    role: Role | None = None
    group: str | None = None

    def to_payload(self) -> dict[str, object]:
        return {
            "linenumber": self.line_number,
            "email": self.email,
            "lastname": self.lastname,
            "firstname": self.firstname,
            "role": self.role.shortname if self.role else None,
            "groupname": self.group,
        }


@dataclass
class ValidationResult:
    line_number: int
    row: ValidatedRow | None = None
    diagnostics: list[Diagnostic] = field(default_factory=list)
    unknown_group: str | None = None

    @property
    def ignored(self) -> bool:
        return self.row is None


@dataclass
class BatchValidation:
    results: list[ValidationResult] = field(default_factory=list)

    @property
    def rows(self) -> list[ValidatedRow]:
        return [r.row for r in self.results if r.row is not None]

    @property
    def diagnostics(self) -> list[Diagnostic]:
        return [d for r in self.results for d in r.diagnostics]


# ---------------------------------------------------------------------------
# Per-row validation
# ---------------------------------------------------------------------------

def minimum_columns(columns: ColumnMap, course: CourseContext | None) -> int:
    if course is not None and columns.has_course_columns:
        return MIN_COLUMNS_WITH_COURSE_COLUMNS
    return MIN_COLUMNS


def _error(result: ValidationResult, message: str) -> ValidationResult:
    result.diagnostics.append(Diagnostic(result.line_number, Severity.ERROR, message))
    return result


def validate_row(
    raw: RawRow,
    columns: ColumnMap,
    course: CourseContext | None = None,
    group_exists: Callable[[str], bool] | None = None,
) -> ValidationResult:
    result = ValidationResult(line_number=raw.line_number)

    # Step 1: structural shape
    if len(raw.cells) < minimum_columns(columns, course):
        return _error(result, MSG_MISSING_FIELD)

    email_raw = columns.get(raw, "email")
    lastname = columns.get(raw, "lastname")
    firstname = columns.get(raw, "firstname")

    # Step 2: required values
    if "" in (email_raw, lastname, firstname):
        return _error(result, MSG_MISSING_FIELD)

    # Step 3: deny-listed characters
    if has_forbidden_name_chars(lastname, firstname) or has_forbidden_email_chars(email_raw):
        return _error(result, MSG_SPECIAL_CHARS)

    # Step 4: e-mail syntax
    if not is_valid_email(email_raw):
        return _error(result, MSG_INVALID_EMAIL)

    group: str | None = None
    role: Role | None = None
    if course is not None:
        # Step 5: group (unknown groups are created at commit time)
        group_cell = columns.get(raw, "group")
        if group_cell:
            if group_exists is not None and not group_exists(group_cell):
                result.unknown_group = group_cell
            group = group_cell

        # Step 6: role
        role_cell = columns.get(raw, "role")
        if role_cell:
            role = course.match_role(role_cell)
            if role is None:
                return _error(result, MSG_INVALID_ROLE.format(role=role_cell))

    result.row = ValidatedRow(
        line_number=raw.line_number,
        email=normalize_email(email_raw) or "",
        lastname=lastname,
        firstname=firstname,
        role=role,
        group=group,
    )
    return result


# ---------------------------------------------------------------------------
# Batch merge
# ---------------------------------------------------------------------------

def existing_group_names(
    rows: list[RawRow],
    columns: ColumnMap,
    course: CourseContext | None,
    gateway: CourseGateway | None,
) -> set[str]:
    """Look up each distinct group name once; return the ones that exist."""
    if course is None or gateway is None or columns.group is None:
        return set()
    names = {columns.get(r, "group") for r in rows} - {""}
    return {n for n in names if gateway.find_group_by_name(course.course_id, n) is not None}


def validate_rows(
    rows: list[RawRow],
    columns: ColumnMap,
    course: CourseContext | None = None,
    existing_groups: set[str] | None = None,
) -> BatchValidation:
    batch = BatchValidation()
    existing = existing_groups or set()
    warned_groups: set[str] = set()

    for raw in rows:
        result = validate_row(raw, columns, course, group_exists=existing.__contains__)
        if result.unknown_group and result.unknown_group not in warned_groups:
            warned_groups.add(result.unknown_group)
            result.diagnostics.insert(0, Diagnostic(
                raw.line_number,
                Severity.WARNING,
                MSG_UNKNOWN_GROUP.format(group=result.unknown_group),
            ))
        batch.results.append(result)
    return batch
