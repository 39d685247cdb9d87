"""Integration tests for mentor_import.pg_platform.PgPlatform."""

from __future__ import annotations

import psycopg
import pytest

from mentor_import.commit import CommitEngine
from mentor_import.courses import build_course_context
from mentor_import.directory import NewAccount, fetch_snapshot
from mentor_import.pg_platform import PgPlatform
from mentor_import.preview import preview_users
from mentor_import.shared import AmbiguousMatchError, ImportCounters


@pytest.fixture
def platform(db_conn):
    conn, _ = db_conn
    return PgPlatform(conn)


# ---------------------------------------------------------------------------
# Directory reads
# ---------------------------------------------------------------------------

class TestDirectoryReads:
    def test_find_by_emails_case_insensitive(self, platform, seed):
        uid = seed.account("Jane@Example.com")
        found = platform.find_by_emails({"jane@example.com"})
        assert [a.id for a in found] == [uid]

    def test_find_by_usernames(self, platform, seed):
        uid = seed.account("other@example.com", username="jane@example.com")
        assert [a.id for a in platform.find_by_usernames({"JANE@example.com"})] == [uid]

    def test_empty_inputs(self, platform):
        assert platform.find_by_emails(set()) == []
        assert platform.find_by_usernames(set()) == []

    def test_get_by_email_ambiguous(self, platform, seed):
        seed.account("dup@example.com", username="d1")
        seed.account("dup@example.com", username="d2")
        with pytest.raises(AmbiguousMatchError):
            platform.get_by_email("dup@example.com")

    def test_snapshot_claimants_include_login_holders(self, platform, seed):
        owner = seed.account("jane@example.com", username="jdoe")
        squatter = seed.account("x@example.com", username="jane@example.com")
        snapshot = fetch_snapshot(platform, ["jane@example.com"])
        assert {a.id for a in snapshot.claimants("jane@example.com")} == {owner, squatter}


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

class TestMutations:
    def test_create_account(self, platform):
        acc = platform.create_account(NewAccount(
            email="new@example.com", username="new@example_com", firstname="N", lastname="New",
        ))
        assert platform.username_exists("NEW@example_com")
        assert platform.get_by_id(acc.id).email == "new@example.com"

    def test_row_scope_rolls_back_failed_row_only(self, platform, seed, db_conn):
        conn, _ = db_conn
        seed.account("taken@example.com", username="taken")
        with platform.row_scope("line_2"):
            platform.create_account(NewAccount(email="a@example.com", username="a", firstname="A", lastname="A"))
        with pytest.raises(psycopg.errors.UniqueViolation):
            with platform.row_scope("line_3"):
                platform.create_account(NewAccount(email="b@example.com", username="TAKEN", firstname="B", lastname="B"))
        assert platform.get_by_email("a@example.com") is not None
        assert platform.get_by_email("b@example.com") is None
        assert conn.execute("SELECT count(*) FROM app_user").fetchone()[0] == 2

    def test_suspend_and_reactivate(self, platform, seed):
        uid = seed.account("jane@example.com")
        platform.suspend(uid)
        assert platform.get_by_id(uid).suspended is True
        platform.reactivate(uid)
        assert platform.get_by_id(uid).suspended is False

    def test_entities(self, platform, seed):
        eid = seed.entity("Agency")
        uid = seed.account("jane@example.com", main_entity_id=eid, platform_role="participant")
        assert platform.get_entity(eid).name == "Agency"
        assert platform.get_main_entity(uid).id == eid
        assert platform.get_highest_role(uid) == "participant"
        platform.set_secondary_entities(uid, ["Network", "Network"])
        platform.set_secondary_entities(uid, ["Ministry"])
        rows = platform.conn.execute("SELECT entity_name FROM user_entity WHERE user_id = %s", (uid,)).fetchall()
        assert rows == [("Ministry",)]


# ---------------------------------------------------------------------------
# Course gateway
# ---------------------------------------------------------------------------

class TestCourseGateway:
    def test_role_catalog(self, platform, seed):
        seed.course(42)
        shortnames = {r.shortname for r in platform.get_course_roles_catalog(42)}
        assert {"participant", "tuteur", "formateur", "manager"} <= shortnames

    def test_enrol_is_idempotent(self, platform, seed):
        seed.course(42)
        uid = seed.account("jane@example.com")
        assert platform.enrol(42, uid, 5) is True
        assert platform.enrol(42, uid, 5) is False
        assert platform.is_enrolled(uid, 42)

    def test_roles_replace(self, platform, seed):
        seed.course(42)
        uid = seed.account("jane@example.com")
        seed.enrol(42, uid, 5)
        platform.unassign_all_roles(uid, 42)
        platform.assign_role(42, uid, 3)
        platform.assign_role(42, uid, 3)
        assert list(platform.get_user_course_roles(uid, 42)) == [3]

    def test_groups(self, platform, seed):
        seed.course(42)
        uid = seed.account("jane@example.com")
        gid = platform.create_group(42, "G1")
        assert platform.create_group(42, "G1") == gid
        assert platform.find_group_by_name(42, "G1") == gid
        assert platform.find_group_by_name(42, "G2") is None
        assert platform.add_group_member(gid, uid) is True
        assert platform.add_group_member(gid, uid) is False


# ---------------------------------------------------------------------------
# Preview + commit against PostgreSQL
# ---------------------------------------------------------------------------

class TestPipelineOnPostgres:
    def test_enrolment_batch(self, platform, seed, db_conn):
        conn, _ = db_conn
        seed.course(42)
        seed.account("sus@example.com", suspended=True)
        course = build_course_context(platform, 42, ("participant", "tuteur", "formateur"), "participant")
        data = (
            b"email;lastname;firstname;role;group\n"
            b"new@example.com;New;Nina;;G1\n"
            b"sus@example.com;Sus;Sam;formateur;G1\n"
        )
        preview = preview_users(data, "semicolon", platform, course=course, course_gateway=platform)
        counters = ImportCounters()
        outcomes = CommitEngine(platform, platform, counters).commit_enrolments(
            course, preview.accepted, preview.valid_for_reactivation
        )
        conn.commit()

        assert outcomes == {2: "CreatedAndEnrolled", 3: "ReactivatedAndEnrolled"}
        assert conn.execute("SELECT count(*) FROM enrolment WHERE course_id = 42").fetchone()[0] == 2
        assert conn.execute("SELECT count(*) FROM group_member").fetchone()[0] == 2
        assert counters.groups_created == 1
