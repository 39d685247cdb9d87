"""mentor_import.pipeline

ImportPipeline wires the passes together around injected collaborators:

    preview()  -> PreviewResult          read-only, may raise FatalImportError
    commit()   -> {line: outcome}        mutation pass over the preview
    deliver()  -> report Path            report file, archive, notification
    run_job()  -> {line: outcome}        commit + deliver for a spooled job

The directory snapshot taken by preview() is not re-validated by commit():
another process may change accounts in between. The commit pass relies on
live per-row lookups, so a stale preview yields a different outcome in the
report, never a duplicate account.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from mentor_import.commit import CommitEngine
from mentor_import.config import ImportSettings
from mentor_import.courses import CourseContext, CourseGateway, build_course_context
from mentor_import.directory import AccountStore, Entity, PendingNameReservation
from mentor_import.jobs import ImportJob
from mentor_import.notify import NotificationError, Notifier, NullNotifier, compose_report_message
from mentor_import.parse import ParsedFile, read_rows
from mentor_import.preview import PreviewResult, preview_users
from mentor_import.report import (
    NullReportArchiver,
    ReportArchiver,
    merge_outcomes,
    render_report,
    write_report_file,
)
from mentor_import.shared import FatalImportError, ImportCounters, Severity
from mentor_import.suspend import commit_suspensions, preview_suspensions

log = logging.getLogger(__name__)


class ImportPipeline:
    def __init__(
        self,
        store: AccountStore,
        courses: CourseGateway | None = None,
        settings: ImportSettings | None = None,
        reservations: PendingNameReservation | None = None,
        notifier: Notifier | None = None,
        archiver: ReportArchiver | None = None,
        counters: ImportCounters | None = None,
        run_id: str = "",
    ) -> None:
        self.store = store
        self.courses = courses
        self.settings = settings or ImportSettings()
        self.reservations = reservations
        self.notifier = notifier or NullNotifier()
        self.archiver = archiver or NullReportArchiver()
        self.counters = counters or ImportCounters()
        self.run_id = run_id

    # -- context -------------------------------------------------------------

    def course_context(self, course_id: int) -> CourseContext:
        if self.courses is None or not self.courses.course_exists(course_id):
            raise FatalImportError("unknown_course", f"unknown course: {course_id}")
        return build_course_context(
            self.courses,
            course_id,
            self.settings.allowed_roles,
            self.settings.lowest_role,
        )

    def entity(self, entity_id: int | None) -> Entity | None:
        if entity_id is None:
            return None
        entity = self.store.get_entity(entity_id)
        if entity is None:
            raise FatalImportError("unknown_entity", f"unknown entity: {entity_id}")
        return entity

    # -- preview -------------------------------------------------------------

    def _count_preview(self, preview: PreviewResult) -> None:
        self.counters.rows_read += len(preview.parsed.rows)
        self.counters.rows_accepted += preview.valid_lines
        self.counters.rows_rejected += len(preview.parsed.rows) - preview.valid_lines

    def preview(
        self,
        data: bytes | str,
        delimiter_name: str,
        course_id: int | None = None,
        entity_id: int | None = None,
        acting_id: int | None = None,
    ) -> PreviewResult:
        course = self.course_context(course_id) if course_id is not None else None
        if entity_id is not None:
            self.entity(entity_id)
        result = preview_users(
            data,
            delimiter_name,
            self.store,
            course=course,
            course_gateway=self.courses if course is not None else None,
            acting_id=acting_id,
            entity_id=entity_id,
            max_data_rows=self.settings.max_data_rows,
            lowest_role=self.settings.lowest_role,
            guarded_role=self.settings.guarded_role,
        )
        self._count_preview(result)
        return result

    def preview_suspensions(
        self,
        data: bytes | str,
        delimiter_name: str,
        entity_id: int,
    ) -> PreviewResult:
        entity = self.entity(entity_id)
        if entity is None:
            raise FatalImportError("unknown_entity", "suspension import requires an entity")
        result = preview_suspensions(
            data,
            delimiter_name,
            self.store,
            entity,
            self.settings.non_elevated_roles,
            max_data_rows=self.settings.max_data_rows,
        )
        self._count_preview(result)
        return result

    # -- commit --------------------------------------------------------------

    def _engine(self) -> CommitEngine:
        return CommitEngine(
            self.store,
            self.courses,
            counters=self.counters,
            reservations=self.reservations,
            run_id=self.run_id,
        )

    def commit(self, preview: PreviewResult) -> dict[int, str]:
        """Apply the preview; returns line -> outcome for every reached line."""
        if preview.mode == "suspend_users":
            committed = commit_suspensions(self.store, preview.accepted, self.counters, self.run_id)
        elif preview.course_id is not None:
            committed = self._engine().commit_enrolments(
                self.course_context(preview.course_id),
                preview.accepted,
                preview.valid_for_reactivation.keys(),
                entity=self.entity(preview.entity_id),
            )
        else:
            committed = self._engine().commit_users(
                preview.accepted,
                preview.valid_for_reactivation.keys(),
                entity=self.entity(preview.entity_id),
            )
        return merge_outcomes(preview.rejected_outcomes, committed)

    # -- delivery ------------------------------------------------------------

    def deliver(
        self,
        parsed: ParsedFile,
        outcomes: dict[int, str],
        filename: str,
        importer_id: int | None,
        course_id: int | None = None,
    ) -> Path | None:
        """Write, archive and send the report.

        Delivery failure is not fatal: the commit has already happened, so
        every failure here lands in counters.warnings and the run goes on.
        Returns None when the report file could not be written.
        """
        try:
            path = write_report_file(self.settings.report_dir, filename, render_report(parsed, outcomes))
            self.counters.reports_written += 1
        except Exception as exc:
            log.warning("report write failed: %s", exc)
            self.counters.report_errors += 1
            self.counters.warnings.append(f"[{self.run_id}] report write failed for {filename}: {exc}")
            return None

        try:
            self.archiver.archive(self.run_id, path)
        except Exception as exc:
            log.warning("report archive failed: %s", exc)
            self.counters.archive_errors += 1
            self.counters.warnings.append(f"[{self.run_id}] report archive failed for {path.name}: {exc}")

        importer = self.store.get_by_id(importer_id) if importer_id is not None else None
        if importer is None:
            self.counters.warnings.append(
                f"[{self.run_id}] report not sent: unknown importer {importer_id}"
            )
            return path
        message = compose_report_message(
            importer.email, path, course_id=course_id, base_url=self.settings.platform_base_url
        )
        try:
            self.notifier.send(message)
            self.counters.notifications_sent += 1
        except NotificationError as exc:
            log.warning("report notification failed: %s", exc)
            self.counters.notification_errors += 1
            self.counters.warnings.append(f"[{self.run_id}] {exc}")
        return path

    # -- jobs ----------------------------------------------------------------

    def run_job(
        self,
        job: ImportJob,
        on_committed: Callable[[], None] | None = None,
    ) -> dict[int, str]:
        """Commit a spooled job, then deliver its report.

        on_committed runs between the two, so the caller can make the
        mutations durable before delivery is attempted.
        """
        course = self.course_context(job.course_id) if job.course_id is not None else None
        entity = self.entity(job.entity_id)
        parsed = read_rows(job.csv_content, job.delimiter_name, self.settings.max_data_rows)
        rows = job.rows(course)
        engine = self._engine()
        if course is not None:
            committed = engine.commit_enrolments(course, rows, job.reactivation_emails, entity=entity)
        else:
            committed = engine.commit_users(rows, job.reactivation_emails, entity=entity)
        if on_committed is not None:
            on_committed()

        outcomes = merge_outcomes(job.rejected, committed)
        self.deliver(parsed, outcomes, job.filename, job.importer_id, job.course_id)
        return outcomes


def summarize(preview: PreviewResult) -> str:
    errors = len(preview.diagnostics_by_severity(Severity.ERROR))
    warnings = len(preview.diagnostics_by_severity(Severity.WARNING))
    return (
        f"{preview.valid_lines} valid lines, "
        f"{preview.valid_for_creation} to create, "
        f"{len(preview.valid_for_reactivation)} to reactivate, "
        f"{preview.valid_for_suspension} to suspend, "
        f"{errors} errors, {warnings} warnings"
    )
