"""Integration test fixtures.

Applies migrations/0001_platform.sql against an ephemeral PostgreSQL
database provided by pytest-postgresql before each integration test.
"""

from __future__ import annotations

from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_platform.sql",
]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (connection, dsn) with the schema applied.

    Function scope: every test starts from an empty platform.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        conn.autocommit = False
        yield conn, dsn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------

class PlatformSeeder:
    def __init__(self, conn) -> None:
        self.conn = conn

    def course(self, course_id: int = 42) -> int:
        self.conn.execute(
            "INSERT INTO course (id, fullname) VALUES (%s, %s)", (course_id, f"Session {course_id}")
        )
        return course_id

    def entity(self, name: str = "Agency", can_be_main_entity: bool = True) -> int:
        return self.conn.execute(
            "INSERT INTO entity (name, can_be_main_entity) VALUES (%s, %s) RETURNING id",
            (name, can_be_main_entity),
        ).fetchone()[0]

    def account(
        self,
        email: str,
        username: str | None = None,
        suspended: bool = False,
        main_entity_id: int | None = None,
        platform_role: str | None = None,
    ) -> int:
        return self.conn.execute(
            """
            INSERT INTO app_user (email, username, credential, suspended, main_entity_id, platform_role)
            VALUES (%s, %s, 'hashed', %s, %s, %s)
            RETURNING id
            """,
            (email, username or email.lower(), suspended, main_entity_id, platform_role),
        ).fetchone()[0]

    def enrol(self, course_id: int, user_id: int, role_id: int) -> None:
        self.conn.execute("INSERT INTO enrolment (course_id, user_id) VALUES (%s, %s)", (course_id, user_id))
        self.conn.execute(
            "INSERT INTO role_assignment (course_id, user_id, role_id) VALUES (%s, %s, %s)",
            (course_id, user_id, role_id),
        )


@pytest.fixture
def seed(db_conn):
    conn, _ = db_conn
    return PlatformSeeder(conn)
