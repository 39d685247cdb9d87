"""mentor_import.pg_platform

PostgreSQL implementation of the account store and course gateway
(schema: migrations/0001_platform.sql).

The caller owns the transaction: PgPlatform never commits. Each commit row
runs inside row_scope(), a SAVEPOINT released on success and rolled back on
error so one failing row leaves earlier rows intact.
"""

from __future__ import annotations

import contextlib
import logging
from typing import Iterator

import psycopg

from mentor_import.courses import Role
from mentor_import.directory import Account, Entity, NewAccount
from mentor_import.shared import AmbiguousMatchError

log = logging.getLogger(__name__)

_ACCOUNT_COLUMNS = "id, email, username, suspended, firstname, lastname"


def _account(row: tuple) -> Account:
    return Account(
        id=row[0],
        email=row[1],
        username=row[2],
        suspended=row[3],
        firstname=row[4],
        lastname=row[5],
    )


def _role(row: tuple) -> Role:
    return Role(id=row[0], shortname=row[1], name=row[2], localname=row[3])


class PgPlatform:
    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    # -- IdentityDirectory ---------------------------------------------------

    def find_by_emails(self, emails: set[str]) -> list[Account]:
        if not emails:
            return []
        rows = self.conn.execute(
            f"SELECT {_ACCOUNT_COLUMNS} FROM app_user WHERE lower(email) = ANY(%s) ORDER BY id",
            ([e.lower() for e in emails],),
        ).fetchall()
        return [_account(r) for r in rows]

    def find_by_usernames(self, usernames: set[str]) -> list[Account]:
        if not usernames:
            return []
        rows = self.conn.execute(
            f"SELECT {_ACCOUNT_COLUMNS} FROM app_user WHERE lower(username) = ANY(%s) ORDER BY id",
            ([u.lower() for u in usernames],),
        ).fetchall()
        return [_account(r) for r in rows]

    def username_exists(self, username: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM app_user WHERE lower(username) = lower(%s)", (username,)
        ).fetchone()
        return row is not None

    def get_by_email(self, email: str) -> Account | None:
        rows = self.conn.execute(
            f"SELECT {_ACCOUNT_COLUMNS} FROM app_user WHERE lower(email) = lower(%s) LIMIT 2",
            (email,),
        ).fetchall()
        if len(rows) > 1:
            raise AmbiguousMatchError(f"ambiguous_email_match: email={email!r}")
        return _account(rows[0]) if rows else None

    def get_by_id(self, account_id: int) -> Account | None:
        row = self.conn.execute(
            f"SELECT {_ACCOUNT_COLUMNS} FROM app_user WHERE id = %s", (account_id,)
        ).fetchone()
        return _account(row) if row else None

    # -- AccountStore --------------------------------------------------------

    @contextlib.contextmanager
    def row_scope(self, name: str) -> Iterator[None]:
        self.conn.execute(f"SAVEPOINT {name}")
        try:
            yield
        except Exception:
            self.conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            raise
        self.conn.execute(f"RELEASE SAVEPOINT {name}")

    def create_account(self, new: NewAccount) -> Account:
        row = self.conn.execute(
            f"""
            INSERT INTO app_user (email, username, firstname, lastname, credential, main_entity_id)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING {_ACCOUNT_COLUMNS}
            """,
            (new.email, new.username, new.firstname, new.lastname, new.credential, new.main_entity_id),
        ).fetchone()
        log.debug("created account %s (%s)", row[0], new.username)
        return _account(row)

    def reactivate(self, account_id: int) -> None:
        self.conn.execute(
            "UPDATE app_user SET suspended = false, updated_at = now() WHERE id = %s",
            (account_id,),
        )

    def suspend(self, account_id: int) -> None:
        self.conn.execute(
            "UPDATE app_user SET suspended = true, updated_at = now() WHERE id = %s",
            (account_id,),
        )

    def get_entity(self, entity_id: int) -> Entity | None:
        row = self.conn.execute(
            "SELECT id, name, can_be_main_entity FROM entity WHERE id = %s", (entity_id,)
        ).fetchone()
        return Entity(id=row[0], name=row[1], can_be_main_entity=row[2]) if row else None

    def get_main_entity(self, account_id: int) -> Entity | None:
        row = self.conn.execute(
            """
            SELECT e.id, e.name, e.can_be_main_entity
            FROM app_user u JOIN entity e ON e.id = u.main_entity_id
            WHERE u.id = %s
            """,
            (account_id,),
        ).fetchone()
        return Entity(id=row[0], name=row[1], can_be_main_entity=row[2]) if row else None

    def get_highest_role(self, account_id: int) -> str | None:
        row = self.conn.execute(
            "SELECT platform_role FROM app_user WHERE id = %s", (account_id,)
        ).fetchone()
        return row[0] if row else None

    def set_secondary_entities(self, account_id: int, entity_names: list[str]) -> None:
        self.conn.execute("DELETE FROM user_entity WHERE user_id = %s", (account_id,))
        for name in entity_names:
            self.conn.execute(
                """
                INSERT INTO user_entity (user_id, entity_name) VALUES (%s, %s)
                ON CONFLICT DO NOTHING
                """,
                (account_id, name),
            )

    # -- CourseGateway -------------------------------------------------------

    def course_exists(self, course_id: int) -> bool:
        return self.conn.execute(
            "SELECT 1 FROM course WHERE id = %s", (course_id,)
        ).fetchone() is not None

    def get_course_roles_catalog(self, course_id: int) -> list[Role]:
        rows = self.conn.execute(
            "SELECT id, shortname, name, localname FROM course_role ORDER BY id"
        ).fetchall()
        return [_role(r) for r in rows]

    def find_group_by_name(self, course_id: int, name: str) -> int | None:
        row = self.conn.execute(
            "SELECT id FROM course_group WHERE course_id = %s AND name = %s",
            (course_id, name),
        ).fetchone()
        return row[0] if row else None

    def create_group(self, course_id: int, name: str) -> int:
        row = self.conn.execute(
            """
            INSERT INTO course_group (course_id, name) VALUES (%s, %s)
            ON CONFLICT (course_id, name) DO UPDATE SET name = EXCLUDED.name
            RETURNING id
            """,
            (course_id, name),
        ).fetchone()
        return row[0]

    def add_group_member(self, group_id: int, account_id: int) -> bool:
        row = self.conn.execute(
            """
            INSERT INTO group_member (group_id, user_id) VALUES (%s, %s)
            ON CONFLICT DO NOTHING
            RETURNING group_id
            """,
            (group_id, account_id),
        ).fetchone()
        return row is not None

    def get_user_course_roles(self, account_id: int, course_id: int) -> dict[int, Role]:
        rows = self.conn.execute(
            """
            SELECT r.id, r.shortname, r.name, r.localname
            FROM role_assignment ra JOIN course_role r ON r.id = ra.role_id
            WHERE ra.user_id = %s AND ra.course_id = %s
            ORDER BY r.id
            """,
            (account_id, course_id),
        ).fetchall()
        return {r[0]: _role(r) for r in rows}

    def is_enrolled(self, account_id: int, course_id: int) -> bool:
        return self.conn.execute(
            "SELECT 1 FROM enrolment WHERE user_id = %s AND course_id = %s",
            (account_id, course_id),
        ).fetchone() is not None

    def enrol(self, course_id: int, account_id: int, role_id: int) -> bool:
        row = self.conn.execute(
            """
            INSERT INTO enrolment (course_id, user_id) VALUES (%s, %s)
            ON CONFLICT DO NOTHING
            RETURNING user_id
            """,
            (course_id, account_id),
        ).fetchone()
        return row is not None

    def unassign_all_roles(self, account_id: int, course_id: int) -> None:
        self.conn.execute(
            "DELETE FROM role_assignment WHERE user_id = %s AND course_id = %s",
            (account_id, course_id),
        )

    def assign_role(self, course_id: int, account_id: int, role_id: int) -> None:
        self.conn.execute(
            """
            INSERT INTO role_assignment (course_id, user_id, role_id) VALUES (%s, %s, %s)
            ON CONFLICT DO NOTHING
            """,
            (course_id, account_id, role_id),
        )
