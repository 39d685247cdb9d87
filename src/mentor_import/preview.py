"""mentor_import.preview

Preview pass: parse -> validate -> snapshot -> resolve, no mutation.

The PreviewResult is built once and read by the caller to decide whether to
commit. It also carries, per excluded line, the diagnostic that excluded it
so the report can pass it through.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from mentor_import.courses import CourseContext, CourseGateway
from mentor_import.directory import Account, IdentityDirectory, fetch_snapshot
from mentor_import.parse import ParsedFile, parse_users_file
from mentor_import.resolve import IdentityResolver, ResolvedRow
from mentor_import.shared import NO_VALID_ROWS, Diagnostic, FatalImportError, Severity
from mentor_import.validate import ValidatedRow, existing_group_names, validate_rows


@dataclass
class PreviewResult:
    mode: str
    parsed: ParsedFile
    accepted: list[ValidatedRow] = field(default_factory=list)
    resolved: list[ResolvedRow] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    valid_for_creation: int = 0
    valid_for_reactivation: dict[str, Account] = field(default_factory=dict)
    valid_for_suspension: int = 0
    course_id: int | None = None
    entity_id: int | None = None
    acting_id: int | None = None

    @property
    def valid_lines(self) -> int:
        return len(self.accepted)

    @property
    def rejected_outcomes(self) -> dict[int, str]:
        """line -> message of the diagnostic that excluded the line."""
        accepted_lines = {r.line_number for r in self.accepted}
        out: dict[int, str] = {}
        for severity in (Severity.ERROR, Severity.WARNING):
            for diag in self.diagnostics:
                if diag.severity == severity and diag.line not in accepted_lines:
                    out.setdefault(diag.line, diag.message)
        return out

    def diagnostics_by_severity(self, severity: Severity) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == severity]

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "validLines": self.valid_lines,
            "validForCreation": self.valid_for_creation,
            "validForReactivation": {
                email: {"id": a.id, "username": a.username}
                for email, a in self.valid_for_reactivation.items()
            },
            "validForSuspension": self.valid_for_suspension,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


def _ordered(diagnostics: list[Diagnostic]) -> list[Diagnostic]:
    # Stable: keeps per-line emission order.
    return sorted(diagnostics, key=lambda d: d.line)


def preview_users(
    data: bytes | str,
    delimiter_name: str,
    directory: IdentityDirectory,
    course: CourseContext | None = None,
    course_gateway: CourseGateway | None = None,
    acting_id: int | None = None,
    entity_id: int | None = None,
    max_data_rows: int = 5000,
    lowest_role: str = "participant",
    guarded_role: str = "formateur",
) -> PreviewResult:
    """Run the read-only pass for a user or course import.

    Raises FatalImportError for batch-level failures (headers, ceiling, no
    eligible rows).
    """
    parsed = parse_users_file(data, delimiter_name, max_data_rows)
    columns = parsed.columns
    if columns is None:
        raise ValueError("parsed file carries no column map")

    existing = existing_group_names(parsed.rows, columns, course, course_gateway)
    validation = validate_rows(parsed.rows, columns, course, existing)

    snapshot = fetch_snapshot(directory, [r.email for r in validation.rows])
    resolver = IdentityResolver(
        snapshot=snapshot,
        course=course,
        course_gateway=course_gateway,
        acting_id=acting_id,
        lowest_role=lowest_role,
        guarded_role=guarded_role,
    )
    resolution = resolver.resolve(validation.rows)

    result = PreviewResult(
        mode="enrol_users" if course is not None else "create_users",
        parsed=parsed,
        accepted=resolution.eligible_rows,
        resolved=resolution.resolved,
        diagnostics=_ordered(validation.diagnostics + resolution.diagnostics),
        valid_for_creation=len(resolution.creation_emails),
        valid_for_reactivation=dict(resolution.reactivations),
        course_id=course.course_id if course is not None else None,
        entity_id=entity_id,
        acting_id=acting_id,
    )

    if not result.accepted and not result.valid_for_reactivation:
        raise FatalImportError(
            NO_VALID_ROWS,
            "no valid rows: every line of the file was rejected",
            diagnostics=result.diagnostics,
        )
    return result
