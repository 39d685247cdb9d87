"""mentor_import.cli

Bulk user import CLI.

Modes (--mode):
  enrol_users    : create/reactivate accounts and enrol them in a course (default)
  create_users   : create/reactivate accounts, optionally attached to an entity
  suspend_users  : suspend the accounts listed in a one-column "email" file
  run_job        : commit spooled jobs (one --job-path, or every queued job)

Usage (enrol_users):
    mentor-import \\
        --mode enrol_users \\
        --db-dsn "$DB_DSN" \\
        --csv-path "uploads/session_42.csv" \\
        --delimiter semicolon \\
        --course-id 42 \\
        --importer-id 7

Usage (preview only):
    mentor-import --mode create_users --db-dsn "$DB_DSN" \\
        --csv-path "uploads/users.csv" --entity-id 3 --dry-run

Usage (deferred commit):
    mentor-import --mode enrol_users ... --defer --spool-dir artifacts/spool
    mentor-import --mode run_job --db-dsn "$DB_DSN" --spool-dir artifacts/spool
"""

from __future__ import annotations

import sys
import uuid
from datetime import datetime
from pathlib import Path

import click
import psycopg

from mentor_import.config import ImportSettings, SettingsValidationError, load_settings
from mentor_import.jobs import ImportJob, JobPayloadError, JobSpool, SpoolReservations, load_job
from mentor_import.notify import Notifier, NullNotifier, OutboxNotifier, RelayNotifier
from mentor_import.parse import DELIMITERS, decode_content
from mentor_import.pg_platform import PgPlatform
from mentor_import.pipeline import ImportPipeline, summarize
from mentor_import.preview import PreviewResult
from mentor_import.report import (
    GcsReportArchiver,
    LocalReportArchiver,
    NullReportArchiver,
    ReportArchiver,
)
from mentor_import.shared import FatalImportError, ImportCounters, write_run_report

PREVIEW_MODES = ("enrol_users", "create_users", "suspend_users")


# ---------------------------------------------------------------------------
# Flag checks + collaborator selection
# ---------------------------------------------------------------------------

def _fail(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] ERROR: {message}", err=True)
    sys.exit(1)


def _validate_flags(
    mode: str,
    run_id: str,
    csv_path: str | None,
    course_id: int | None,
    entity_id: int | None,
    dry_run: bool,
    defer: bool,
) -> None:
    if mode in PREVIEW_MODES and not csv_path:
        _fail(run_id, f"--csv-path is required for --mode {mode}")
    if mode == "enrol_users" and course_id is None:
        _fail(run_id, "--course-id is required for --mode enrol_users")
    if mode == "suspend_users" and entity_id is None:
        _fail(run_id, "--entity-id is required for --mode suspend_users")
    if mode == "suspend_users" and defer:
        _fail(run_id, "--defer is not supported for --mode suspend_users")
    if dry_run and defer:
        _fail(run_id, "--dry-run and --defer are mutually exclusive")


def _select_archiver(archive_local_dir: str | None, gcs_bucket: str | None, gcs_prefix: str | None) -> ReportArchiver:
    if archive_local_dir:
        return LocalReportArchiver(base_dir=Path(archive_local_dir))
    if gcs_bucket and gcs_prefix:
        return GcsReportArchiver(bucket_name=gcs_bucket, prefix=gcs_prefix)
    return NullReportArchiver()


def _select_notifier(settings: ImportSettings, notify: bool) -> Notifier:
    if not notify:
        return NullNotifier()
    if settings.mail_relay_url:
        return RelayNotifier(relay_url=settings.mail_relay_url, sender=settings.mail_sender)
    return OutboxNotifier(base_dir=settings.report_dir / "outbox")


def _echo_preview(run_id: str, preview: PreviewResult) -> None:
    click.echo(f"[{run_id}] Preview: {summarize(preview)}")
    for diag in preview.diagnostics:
        click.echo(f"[{run_id}]   line {diag.line} {diag.severity.value}: {diag.message}")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="enrol_users",
    type=click.Choice([*PREVIEW_MODES, "run_job"]),
    show_default=True,
    help="Import mode",
)
@click.option("--db-dsn", required=True, help="PostgreSQL DSN")
@click.option("--csv-path", default=None, type=click.Path(), help="[enrol_users|create_users|suspend_users] Input file")
@click.option(
    "--delimiter",
    default="semicolon",
    type=click.Choice(sorted(DELIMITERS)),
    show_default=True,
    help="Field delimiter of the input file",
)
@click.option("--course-id", default=None, type=int, help="[enrol_users] Target course")
@click.option("--entity-id", default=None, type=int, help="[create_users|suspend_users] Entity")
@click.option("--importer-id", default=None, type=int, help="Account id of the importing user")
@click.option("--settings", "settings_path", default=None, type=click.Path(), help="YAML settings file")
@click.option("--dry-run", is_flag=True, default=False, help="Preview only; nothing is written")
@click.option("--defer", is_flag=True, default=False, help="Spool a job instead of committing now")
@click.option("--spool-dir", default="./artifacts/spool", show_default=True, type=click.Path())
@click.option("--job-path", default=None, type=click.Path(), help="[run_job] Run one job payload")
@click.option("--report-dir", default=None, type=click.Path(), help="Override settings report_dir")
@click.option("--archive-local-dir", default=None, type=click.Path(), help="Archive reports to a local dir")
@click.option("--gcs-bucket", default=None, help="Archive reports to this GCS bucket")
@click.option("--gcs-prefix", default=None, help="GCS object prefix for archived reports")
@click.option("--notify/--no-notify", default=True, show_default=True, help="Send the report to the importer")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
def main(
    mode: str,
    db_dsn: str,
    csv_path: str | None,
    delimiter: str,
    course_id: int | None,
    entity_id: int | None,
    importer_id: int | None,
    settings_path: str | None,
    dry_run: bool,
    defer: bool,
    spool_dir: str,
    job_path: str | None,
    report_dir: str | None,
    archive_local_dir: str | None,
    gcs_bucket: str | None,
    gcs_prefix: str | None,
    notify: bool,
    run_id: str | None,
) -> None:
    """Bulk user import CLI."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    counters = ImportCounters()

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")
    _validate_flags(mode, run_id, csv_path, course_id, entity_id, dry_run, defer)

    try:
        settings = load_settings(Path(settings_path) if settings_path else None)
    except (SettingsValidationError, FileNotFoundError) as exc:
        click.echo(f"[{run_id}] FATAL: settings: {exc}", err=True)
        sys.exit(1)
    if report_dir:
        settings.report_dir = Path(report_dir)

    spool = JobSpool(Path(spool_dir))
    conn = psycopg.connect(db_dsn)
    platform = PgPlatform(conn)
    pipeline = ImportPipeline(
        store=platform,
        courses=platform,
        settings=settings,
        reservations=SpoolReservations(spool),
        notifier=_select_notifier(settings, notify),
        archiver=_select_archiver(archive_local_dir, gcs_bucket, gcs_prefix),
        counters=counters,
        run_id=run_id,
    )

    source_paths = {"csv_path": str(csv_path), "settings_yaml_hash": settings.yaml_hash}
    job_failures = 0
    try:
        if mode == "run_job":
            job_failures = _run_jobs(pipeline, conn, spool, job_path, run_id)
            source_paths = {"job_path": str(job_path), "spool_dir": spool_dir}
        else:
            data = Path(csv_path).read_bytes()  # type: ignore[arg-type]
            try:
                if mode == "suspend_users":
                    preview = pipeline.preview_suspensions(data, delimiter, entity_id)  # type: ignore[arg-type]
                else:
                    preview = pipeline.preview(
                        data,
                        delimiter,
                        course_id=course_id if mode == "enrol_users" else None,
                        entity_id=entity_id,
                        acting_id=importer_id,
                    )
            except FatalImportError as exc:
                conn.rollback()
                click.echo(f"[{run_id}] FATAL: {exc.code}: {exc.message}", err=True)
                for diag in exc.diagnostics:
                    click.echo(f"[{run_id}]   line {diag.line} {diag.severity.value}: {diag.message}", err=True)
                sys.exit(1)

            _echo_preview(run_id, preview)
            if dry_run:
                conn.rollback()
                click.echo(f"[{run_id}] [dry-run] Nothing written.")
            elif defer:
                conn.rollback()
                job = ImportJob.from_preview(
                    preview,
                    csv_content=decode_content(data),
                    delimiter_name=delimiter,
                    filename=Path(csv_path).name,  # type: ignore[arg-type]
                )
                click.echo(f"[{run_id}] Job spooled: {spool.enqueue(job)}")
            else:
                outcomes = pipeline.commit(preview)
                conn.commit()
                report_path = pipeline.deliver(
                    preview.parsed,
                    outcomes,
                    Path(csv_path).name,  # type: ignore[arg-type]
                    importer_id,
                    preview.course_id,
                )
                if report_path is not None:
                    click.echo(f"[{run_id}] Import report: {report_path}")
    finally:
        conn.close()

    click.echo(
        f"[{run_id}] Done: created={counters.accounts_created} "
        f"reactivated={counters.accounts_reactivated} "
        f"enrolled={counters.enrolments_inserted} "
        f"suspended={counters.accounts_suspended} "
        f"commit_errors={counters.commit_errors}"
    )
    run_report = write_run_report(run_id, started_at, mode, dry_run, source_paths, counters)
    click.echo(f"[{run_id}] Run report: {run_report}")

    if counters.commit_errors > 0 or job_failures > 0:
        click.echo(
            f"[{run_id}] {counters.commit_errors} commit errors, "
            f"{job_failures} failed jobs; exiting non-zero",
            err=True,
        )
        sys.exit(1)


def _run_jobs(
    pipeline: ImportPipeline,
    conn: psycopg.Connection,
    spool: JobSpool,
    job_path: str | None,
    run_id: str,
) -> int:
    """Commit one explicit job or every queued job; returns the failure count."""
    failures = 0
    paths = [Path(job_path)] if job_path else spool.queued()
    if not paths:
        click.echo(f"[{run_id}] No queued jobs in {spool.base_dir}")
    for path in paths:
        claimed = not job_path or spool.owns(path)
        try:
            job = spool.claim(path) if claimed else load_job(path)
            outcomes = pipeline.run_job(job, on_committed=conn.commit)
        except (JobPayloadError, FatalImportError, ValueError) as exc:
            conn.rollback()
            failures += 1
            click.echo(f"[{run_id}] ERROR: job {path.name}: {exc}", err=True)
            continue
        if claimed:
            spool.complete(job)
        click.echo(f"[{run_id}] Job {job.job_id}: {len(outcomes)} lines committed")
    return failures


if __name__ == "__main__":
    main()
