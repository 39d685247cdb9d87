"""mentor_import.jobs

Deferred commit jobs.

A preview approved by the importer can be spooled as a JSON payload and
committed later by `--mode run_job`. While a job waits in the spool, the
login names its new accounts will derive are reserved: SpoolReservations
answers PendingNameReservation queries from the queued payloads.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from mentor_import.courses import CourseContext
from mentor_import.normalize import email_to_username_base
from mentor_import.preview import PreviewResult
from mentor_import.validate import ValidatedRow

log = logging.getLogger(__name__)

REQUIRED_FIELDS = (
    "course_id",
    "users",
    "users_to_reactivate",
    "csv_content",
    "delimiter_name",
    "filename",
    "importer_id",
)


class JobPayloadError(ValueError):
    """Raised when a job payload lacks a required field."""


@dataclass
class ImportJob:
    course_id: int | None
    users: list[dict[str, Any]]
    users_to_reactivate: list[dict[str, Any]]
    csv_content: str
    delimiter_name: str
    filename: str
    importer_id: int | None
    entity_id: int | None = None
    rejected: dict[int, str] = field(default_factory=dict)
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def from_preview(
        cls,
        preview: PreviewResult,
        csv_content: str,
        delimiter_name: str,
        filename: str,
    ) -> ImportJob:
        return cls(
            course_id=preview.course_id,
            users=[r.to_payload() for r in preview.accepted],
            users_to_reactivate=[{"email": e} for e in preview.valid_for_reactivation],
            csv_content=csv_content,
            delimiter_name=delimiter_name,
            filename=filename,
            importer_id=preview.acting_id,
            entity_id=preview.entity_id,
            rejected=preview.rejected_outcomes,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImportJob:
        missing = [f for f in REQUIRED_FIELDS if f not in data]
        if missing:
            raise JobPayloadError(f"field {missing[0]} is missing in job payload")
        return cls(
            course_id=data["course_id"],
            users=list(data["users"]),
            users_to_reactivate=list(data["users_to_reactivate"]),
            csv_content=data["csv_content"],
            delimiter_name=data["delimiter_name"],
            filename=data["filename"],
            importer_id=data["importer_id"],
            entity_id=data.get("entity_id"),
            rejected={int(k): v for k, v in (data.get("rejected") or {}).items()},
            job_id=data.get("job_id") or str(uuid.uuid4()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "course_id": self.course_id,
            "users": self.users,
            "users_to_reactivate": self.users_to_reactivate,
            "csv_content": self.csv_content,
            "delimiter_name": self.delimiter_name,
            "filename": self.filename,
            "importer_id": self.importer_id,
            "entity_id": self.entity_id,
            "rejected": {str(k): v for k, v in self.rejected.items()},
        }

    @property
    def reactivation_emails(self) -> list[str]:
        return [u["email"] for u in self.users_to_reactivate]

    def rows(self, course: CourseContext | None) -> list[ValidatedRow]:
        out = []
        for u in self.users:
            role = None
            if course is not None and u.get("role"):
                role = course.allowed_roles.get(u["role"])
            out.append(ValidatedRow(
                line_number=int(u["linenumber"]),
                email=u["email"],
                lastname=u.get("lastname", ""),
                firstname=u.get("firstname", ""),
                role=role,
                group=u.get("groupname"),
            ))
        return out


# ---------------------------------------------------------------------------
# Spool
# ---------------------------------------------------------------------------

class JobSpool:
    """Directory of queued job payloads, one JSON file per job."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = base_dir

    def enqueue(self, job: ImportJob) -> Path:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        path = self.base_dir / f"{job.job_id}.json"
        path.write_text(json.dumps(job.to_dict(), indent=2), encoding="utf-8")
        return path

    def queued(self) -> list[Path]:
        if not self.base_dir.exists():
            return []
        return sorted(self.base_dir.glob("*.json"))

    def owns(self, path: Path) -> bool:
        """True for a queued payload file inside this spool."""
        return path.suffix == ".json" and path.resolve().parent == self.base_dir.resolve()

    def claim(self, path: Path) -> ImportJob:
        """Load a queued job and take it out of the queue."""
        job = load_job(path)
        path.rename(path.with_suffix(".running"))
        return job

    def complete(self, job: ImportJob) -> None:
        running = self.base_dir / f"{job.job_id}.running"
        if running.exists():
            running.unlink()


def load_job(path: Path) -> ImportJob:
    return ImportJob.from_dict(json.loads(path.read_text(encoding="utf-8")))


class SpoolReservations:
    """Login names that queued jobs will claim when they run.

    The queued payloads are read once per commit batch, on refresh() or on
    the first lookup, not once per candidate name.
    """

    def __init__(self, spool: JobSpool) -> None:
        self._spool = spool
        self._names: set[str] | None = None

    def reserved_names(self) -> set[str]:
        names: set[str] = set()
        for path in self._spool.queued():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                log.warning("Unreadable job payload %s (%s); ignored.", path, exc)
                continue
            for user in data.get("users") or []:
                base = email_to_username_base(user.get("email"))
                if base:
                    names.add(base)
        return names

    def refresh(self) -> None:
        self._names = self.reserved_names()

    def is_reserved(self, name: str) -> bool:
        if self._names is None:
            self._names = self.reserved_names()
        return name in self._names
