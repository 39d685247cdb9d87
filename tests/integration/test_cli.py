"""Integration tests for the mentor-import CLI (click CliRunner + PostgreSQL)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from mentor_import.cli import main

ENROL_CSV = (
    "email;lastname;firstname;role;group\n"
    "new@example.com;New;Nina;;G1\n"
    "sus@example.com;Sus;Sam;Tuteur;\n"
    "bad;Bad;Bob;;\n"
)


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def platform_seeded(db_conn, seed):
    conn, dsn = db_conn
    seed.course(42)
    importer = seed.account("me@example.com")
    seed.account("sus@example.com", suspended=True)
    conn.commit()
    return conn, dsn, importer


def _invoke(dsn: str, *args: str):
    return CliRunner().invoke(main, ["--db-dsn", dsn, "--no-notify", *args])


def _count(conn, sql: str) -> int:
    return conn.execute(sql).fetchone()[0]


class TestEnrolUsers:
    def test_commit_run(self, platform_seeded, workdir):
        conn, dsn, importer = platform_seeded
        csv_path = workdir / "session.csv"
        csv_path.write_text(ENROL_CSV, encoding="utf-8")

        result = _invoke(
            dsn,
            "--mode", "enrol_users",
            "--csv-path", str(csv_path),
            "--course-id", "42",
            "--importer-id", str(importer),
            "--report-dir", str(workdir / "reports"),
            "--run-id", "cli-run",
        )
        assert result.exit_code == 0, result.output
        assert "2 valid lines, 1 to create, 1 to reactivate" in result.output

        assert _count(conn, "SELECT count(*) FROM app_user") == 3
        assert _count(conn, "SELECT count(*) FROM app_user WHERE suspended") == 0
        assert _count(conn, "SELECT count(*) FROM enrolment WHERE course_id = 42") == 2

        report = (workdir / "reports" / "Rapport_session.csv").read_text(encoding="utf-8")
        assert report.lstrip("\ufeff").splitlines()[1:] == [
            "new@example.com;New;Nina;;G1;CreatedAndEnrolled",
            "sus@example.com;Sus;Sam;Tuteur;;ReactivatedAndEnrolled",
            "bad;Bad;Bob;;;invalid email",
        ]

        run_report = json.loads((workdir / "artifacts" / "reports" / "cli-run.json").read_text())
        assert run_report["mode"] == "enrol_users"
        assert run_report["counters"]["accounts_created"] == 1
        assert run_report["counters"]["reports_written"] == 1

    def test_rerun_is_idempotent(self, platform_seeded, workdir):
        conn, dsn, _ = platform_seeded
        csv_path = workdir / "session.csv"
        csv_path.write_text(ENROL_CSV, encoding="utf-8")
        args = ("--csv-path", str(csv_path), "--course-id", "42", "--report-dir", str(workdir / "reports"))

        assert _invoke(dsn, *args).exit_code == 0
        users = _count(conn, "SELECT count(*) FROM app_user")
        enrolments = _count(conn, "SELECT count(*) FROM enrolment")
        members = _count(conn, "SELECT count(*) FROM group_member")

        result = _invoke(dsn, *args)
        assert result.exit_code == 0, result.output
        assert _count(conn, "SELECT count(*) FROM app_user") == users
        assert _count(conn, "SELECT count(*) FROM enrolment") == enrolments
        assert _count(conn, "SELECT count(*) FROM group_member") == members

    def test_dry_run_writes_nothing(self, platform_seeded, workdir):
        conn, dsn, _ = platform_seeded
        csv_path = workdir / "session.csv"
        csv_path.write_text(ENROL_CSV, encoding="utf-8")

        result = _invoke(dsn, "--csv-path", str(csv_path), "--course-id", "42", "--dry-run")
        assert result.exit_code == 0, result.output
        assert "[dry-run] Nothing written." in result.output
        assert _count(conn, "SELECT count(*) FROM app_user") == 2
        assert _count(conn, "SELECT count(*) FROM enrolment") == 0

    def test_fatal_file_exits_non_zero(self, platform_seeded, workdir):
        _, dsn, _ = platform_seeded
        csv_path = workdir / "bad.csv"
        csv_path.write_text("mail;nom;prenom\na@example.com;A;A\n", encoding="utf-8")

        result = _invoke(dsn, "--csv-path", str(csv_path), "--course-id", "42")
        assert result.exit_code == 1
        assert "FATAL: missing_headers" in result.output
        assert not (workdir / "artifacts").exists()

    def test_unknown_course_exits_non_zero(self, platform_seeded, workdir):
        _, dsn, _ = platform_seeded
        csv_path = workdir / "session.csv"
        csv_path.write_text(ENROL_CSV, encoding="utf-8")
        result = _invoke(dsn, "--csv-path", str(csv_path), "--course-id", "999")
        assert result.exit_code == 1
        assert "FATAL: unknown_course" in result.output

    def test_course_id_required(self, platform_seeded, workdir):
        _, dsn, _ = platform_seeded
        result = _invoke(dsn, "--csv-path", "x.csv")
        assert result.exit_code == 1
        assert "--course-id is required" in result.output


class TestDeferredJobs:
    def test_defer_then_run_job(self, platform_seeded, workdir):
        conn, dsn, importer = platform_seeded
        csv_path = workdir / "session.csv"
        csv_path.write_text(ENROL_CSV, encoding="utf-8")
        spool_dir = workdir / "spool"

        result = _invoke(
            dsn,
            "--csv-path", str(csv_path),
            "--course-id", "42",
            "--importer-id", str(importer),
            "--defer",
            "--spool-dir", str(spool_dir),
        )
        assert result.exit_code == 0, result.output
        assert "Job spooled" in result.output
        assert len(list(spool_dir.glob("*.json"))) == 1
        assert _count(conn, "SELECT count(*) FROM app_user") == 2

        result = _invoke(
            dsn,
            "--mode", "run_job",
            "--spool-dir", str(spool_dir),
            "--report-dir", str(workdir / "reports"),
        )
        assert result.exit_code == 0, result.output
        assert _count(conn, "SELECT count(*) FROM app_user") == 3
        assert _count(conn, "SELECT count(*) FROM enrolment") == 2
        assert list(spool_dir.iterdir()) == []
        assert (workdir / "reports" / "Rapport_session.csv").exists()

    def _spool_job(self, dsn, importer, workdir):
        csv_path = workdir / "session.csv"
        csv_path.write_text(ENROL_CSV, encoding="utf-8")
        spool_dir = workdir / "spool"
        result = _invoke(
            dsn,
            "--csv-path", str(csv_path),
            "--course-id", "42",
            "--importer-id", str(importer),
            "--defer",
            "--spool-dir", str(spool_dir),
        )
        assert result.exit_code == 0, result.output
        return spool_dir, next(spool_dir.glob("*.json"))

    def test_explicit_spooled_job_is_claimed(self, platform_seeded, workdir):
        conn, dsn, importer = platform_seeded
        spool_dir, job_file = self._spool_job(dsn, importer, workdir)

        result = _invoke(
            dsn,
            "--mode", "run_job",
            "--job-path", str(job_file),
            "--spool-dir", str(spool_dir),
            "--report-dir", str(workdir / "reports"),
        )
        assert result.exit_code == 0, result.output
        username = conn.execute(
            "SELECT username FROM app_user WHERE email = 'new@example.com'"
        ).fetchone()[0]
        assert username == "new@example_com"
        assert list(spool_dir.iterdir()) == []

        result = _invoke(dsn, "--mode", "run_job", "--spool-dir", str(spool_dir))
        assert "No queued jobs" in result.output

    def test_archive_failure_keeps_job_committed(self, platform_seeded, workdir):
        conn, dsn, importer = platform_seeded
        spool_dir, _ = self._spool_job(dsn, importer, workdir)
        blocker = workdir / "archive"
        blocker.write_text("", encoding="utf-8")

        result = _invoke(
            dsn,
            "--mode", "run_job",
            "--spool-dir", str(spool_dir),
            "--report-dir", str(workdir / "reports"),
            "--archive-local-dir", str(blocker),
            "--run-id", "archive-run",
        )
        assert result.exit_code == 0, result.output
        assert _count(conn, "SELECT count(*) FROM app_user") == 3
        assert list(spool_dir.iterdir()) == []
        run_report = json.loads((workdir / "artifacts" / "reports" / "archive-run.json").read_text())
        assert run_report["counters"]["archive_errors"] == 1

    def test_bad_payload_reported(self, platform_seeded, workdir):
        _, dsn, _ = platform_seeded
        job_path = workdir / "job.json"
        job_path.write_text(json.dumps({"course_id": 42}), encoding="utf-8")
        result = _invoke(dsn, "--mode", "run_job", "--job-path", str(job_path))
        assert result.exit_code == 1
        assert "field users is missing in job payload" in result.output


class TestSuspendUsers:
    def test_suspends_members_of_entity(self, db_conn, seed, workdir):
        conn, dsn = db_conn
        eid = seed.entity("Agency")
        uid = seed.account("leaver@example.com", main_entity_id=eid, platform_role="participant")
        seed.account("boss@example.com", main_entity_id=eid, platform_role="manager")
        conn.commit()
        csv_path = workdir / "leavers.csv"
        csv_path.write_text("email\nleaver@example.com\nboss@example.com\n", encoding="utf-8")

        result = _invoke(
            dsn,
            "--mode", "suspend_users",
            "--csv-path", str(csv_path),
            "--entity-id", str(eid),
            "--report-dir", str(workdir / "reports"),
        )
        assert result.exit_code == 0, result.output
        assert conn.execute("SELECT suspended FROM app_user WHERE id = %s", (uid,)).fetchone()[0] is True
        assert _count(conn, "SELECT count(*) FROM app_user WHERE suspended") == 1
        report = (workdir / "reports" / "Rapport_leavers.csv").read_text(encoding="utf-8")
        assert "boss@example.com;account holds an elevated platform role" in report
