"""mentor_import.shared

Shared types used by every import mode: severities, diagnostics, outcome
vocabulary, exceptions, run counters and the JSON run-report writer.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class FatalImportError(Exception):
    """Raised when a batch must be aborted before any mutation."""

    def __init__(self, code: str, message: str, diagnostics: list[Diagnostic] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.diagnostics = diagnostics or []


class AmbiguousMatchError(Exception):
    """Raised when an account lookup expected one match and found several."""


# ---------------------------------------------------------------------------
# Severity + diagnostics
# ---------------------------------------------------------------------------

class Severity(str, Enum):
    FATAL = "fatal"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass(frozen=True)
class Diagnostic:
    line: int
    severity: Severity
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"line": self.line, "severity": self.severity.value, "message": self.message}


# Fatal codes
MISSING_HEADERS = "missing_headers"
MISSING_DATA = "missing_data"
TOO_MANY_LINES = "too_many_lines"
NO_VALID_ROWS = "no_valid_rows"
INVALID_HEADER = "invalid_header"

# Row diagnostics
MSG_MISSING_FIELD = "missing field"
MSG_SPECIAL_CHARS = "special characters"
MSG_INVALID_EMAIL = "invalid email"
MSG_INVALID_ROLE = "invalid role: {role}"
MSG_UNKNOWN_GROUP = "group {group} not found, it will be created"
MSG_EMAIL_ALREADY_USED = "email already used"
MSG_USER_ALREADY_EXISTS = "user already exists: {email}"
MSG_LOSE_PRIVILEGE = "would lose privilege"
MSG_ROLE_CHANGE = "role change: {old} -> {new}"
MSG_REACTIVATE = "account suspended, it will be reactivated"
MSG_WILL_BE_CREATED = "account will be created: {email}"
MSG_NOT_FOUND = "no account found for this email"
MSG_ALREADY_SUSPENDED = "account already suspended"
MSG_WRONG_ENTITY = "account is not attached to entity {entity}"
MSG_ELEVATED_ROLE = "account holds an elevated platform role"

# Report outcomes
CREATED = "Created"
REACTIVATED = "Reactivated"
ENROLLED = "Enrolled"
CREATED_AND_ENROLLED = "CreatedAndEnrolled"
REACTIVATED_AND_ENROLLED = "ReactivatedAndEnrolled"
ALREADY_EXISTS = "AlreadyExists"
SUSPENDED = "Suspended"
ALREADY_SUSPENDED = "AlreadySuspended"
NOT_PROCESSED = "NotProcessed"
FAILED = "Failed"


def failed_outcome(reason: str) -> str:
    return f"{FAILED}: {reason}"


# ---------------------------------------------------------------------------
# ImportCounters
# ---------------------------------------------------------------------------

@dataclass
class ImportCounters:
    # Preview
    rows_read: int = 0
    rows_accepted: int = 0
    rows_rejected: int = 0
    # Commit
    accounts_created: int = 0
    accounts_reactivated: int = 0
    accounts_suspended: int = 0
    accounts_matched_existing: int = 0
    enrolments_inserted: int = 0
    roles_updated: int = 0
    groups_created: int = 0
    group_members_added: int = 0
    commit_errors: int = 0
    # Delivery
    reports_written: int = 0
    notifications_sent: int = 0
    notification_errors: int = 0
    report_errors: int = 0
    archive_errors: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: ImportCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
