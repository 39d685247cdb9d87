"""Unit tests for mentor_import.validate (no database required)."""

from __future__ import annotations

import pytest

from mentor_import.courses import build_course_context
from mentor_import.memory_platform import InMemoryPlatform
from mentor_import.parse import ColumnMap, RawRow
from mentor_import.shared import Severity
from mentor_import.validate import (
    existing_group_names,
    minimum_columns,
    validate_row,
    validate_rows,
)

COURSE_ID = 42
ENROL_COLUMNS = ColumnMap(email=0, lastname=1, firstname=2, role=3, group=4)
USER_COLUMNS = ColumnMap(email=0, lastname=1, firstname=2)


@pytest.fixture
def platform():
    p = InMemoryPlatform()
    p.add_course(COURSE_ID)
    return p


@pytest.fixture
def course(platform):
    return build_course_context(platform, COURSE_ID, ("participant", "tuteur", "formateur"), "participant")


def _row(line: int, *cells: str) -> RawRow:
    return RawRow(line_number=line, cells=list(cells))


def _messages(result) -> list[str]:
    return [d.message for d in result.diagnostics]


# ---------------------------------------------------------------------------
# validate_row
# ---------------------------------------------------------------------------

class TestValidateRow:
    def test_valid_enrolment_row(self, course):
        result = validate_row(_row(2, "Jane@Example.com", "Doe", "Jane", "", ""), ENROL_COLUMNS, course)
        assert not result.ignored
        assert result.diagnostics == []
        assert result.row.email == "jane@example.com"
        assert result.row.role is None
        assert result.row.group is None

    def test_short_row_with_course_columns(self, course):
        result = validate_row(_row(2, "jane@example.com", "Doe", "Jane"), ENROL_COLUMNS, course)
        assert result.ignored
        assert _messages(result) == ["missing field"]

    def test_three_columns_enough_without_course(self):
        result = validate_row(_row(2, "jane@example.com", "Doe", "Jane"), USER_COLUMNS)
        assert not result.ignored

    def test_empty_required_cell(self):
        result = validate_row(_row(2, "jane@example.com", "Doe", ""), USER_COLUMNS)
        assert _messages(result) == ["missing field"]
        assert result.diagnostics[0].severity == Severity.ERROR
        assert result.diagnostics[0].line == 2

    def test_special_characters_in_name(self):
        result = validate_row(_row(2, "jane@example.com", "Doe<script>", "Jane"), USER_COLUMNS)
        assert _messages(result) == ["special characters"]

    def test_special_characters_in_email(self):
        result = validate_row(_row(3, "jane,doe@example.com", "Doe", "Jane"), USER_COLUMNS)
        assert _messages(result) == ["special characters"]

    def test_invalid_email(self):
        result = validate_row(_row(2, "jane@example", "Doe", "Jane"), USER_COLUMNS)
        assert _messages(result) == ["invalid email"]

    def test_first_error_ends_row(self):
        # Missing firstname and an invalid e-mail: only the first check reports.
        result = validate_row(_row(2, "not-an-email", "Doe", ""), USER_COLUMNS)
        assert _messages(result) == ["missing field"]

    def test_invalid_role(self, course):
        result = validate_row(_row(2, "jane@example.com", "Doe", "Jane", "chef", ""), ENROL_COLUMNS, course)
        assert result.ignored
        assert _messages(result) == ["invalid role: chef"]

    def test_role_outside_allowed_set(self, course):
        result = validate_row(
            _row(2, "jane@example.com", "Doe", "Jane", "Gestionnaire", ""), ENROL_COLUMNS, course
        )
        assert _messages(result) == ["invalid role: Gestionnaire"]

    def test_role_matched_case_insensitively(self, course):
        result = validate_row(_row(2, "jane@example.com", "Doe", "Jane", "TUTEUR", ""), ENROL_COLUMNS, course)
        assert result.row.role.shortname == "tuteur"

    def test_role_and_group_ignored_without_course(self):
        cols = ColumnMap(email=0, lastname=1, firstname=2, role=3, group=4)
        result = validate_row(_row(2, "jane@example.com", "Doe", "Jane", "chef", "G1"), cols)
        assert not result.ignored
        assert result.row.role is None
        assert result.row.group is None

    def test_unknown_group_flagged(self, course):
        result = validate_row(
            _row(2, "jane@example.com", "Doe", "Jane", "", "G1"),
            ENROL_COLUMNS,
            course,
            group_exists=lambda name: False,
        )
        assert result.unknown_group == "G1"
        assert result.row.group == "G1"


class TestMinimumColumns:
    def test_course_with_course_columns(self, course):
        assert minimum_columns(ENROL_COLUMNS, course) == 5

    def test_course_without_group_column(self, course):
        assert minimum_columns(ColumnMap(email=0, lastname=1, firstname=2, role=3), course) == 3

    def test_no_course(self):
        assert minimum_columns(ENROL_COLUMNS, None) == 3


# ---------------------------------------------------------------------------
# validate_rows
# ---------------------------------------------------------------------------

class TestValidateRows:
    def test_unknown_group_warned_once_per_name(self, course):
        rows = [
            _row(2, "a@example.com", "A", "A", "", "G1"),
            _row(3, "b@example.com", "B", "B", "", "G1"),
            _row(4, "c@example.com", "C", "C", "", "G2"),
        ]
        batch = validate_rows(rows, ENROL_COLUMNS, course, existing_groups=set())
        warnings = [(d.line, d.message) for d in batch.diagnostics if d.severity == Severity.WARNING]
        assert warnings == [
            (2, "group G1 not found, it will be created"),
            (4, "group G2 not found, it will be created"),
        ]
        assert len(batch.rows) == 3

    def test_group_warning_precedes_role_error(self, course):
        rows = [_row(2, "a@example.com", "A", "A", "chef", "G1")]
        batch = validate_rows(rows, ENROL_COLUMNS, course, existing_groups=set())
        assert [d.severity for d in batch.diagnostics] == [Severity.WARNING, Severity.ERROR]
        assert batch.rows == []

    def test_existing_group_not_warned(self, platform, course):
        platform.create_group(COURSE_ID, "G1")
        rows = [_row(2, "a@example.com", "A", "A", "", "G1")]
        existing = existing_group_names(rows, ENROL_COLUMNS, course, platform)
        batch = validate_rows(rows, ENROL_COLUMNS, course, existing_groups=existing)
        assert batch.diagnostics == []

    def test_every_row_has_one_result(self, course):
        rows = [
            _row(2, "a@example.com", "A", "A", "", ""),
            _row(3, "bad", "B", "B", "", ""),
            _row(4, "c@example.com", "C"),
        ]
        batch = validate_rows(rows, ENROL_COLUMNS, course)
        assert [r.line_number for r in batch.results] == [2, 3, 4]
        assert [r.ignored for r in batch.results] == [False, True, True]


class TestValidatedRowPayload:
    def test_payload_keys(self, course):
        result = validate_row(
            _row(7, "jane@example.com", "Doe", "Jane", "Tuteur", "G1"), ENROL_COLUMNS, course
        )
        assert result.row.to_payload() == {
            "linenumber": 7,
            "email": "jane@example.com",
            "lastname": "Doe",
            "firstname": "Jane",
            "role": "tuteur",
            "groupname": "G1",
        }
