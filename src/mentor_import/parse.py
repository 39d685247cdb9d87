"""mentor_import.parse

Row Parser & Normalizer: raw upload bytes -> ordered RawRow list.

Processing order:
  1. Decode (UTF-8, falling back to Windows-1250 / ISO-8859-1), strip BOM,
     normalize line endings.
  2. Drop blank lines. Line numbers count non-blank lines only, header = 1.
  3. Enforce the data-row ceiling (Fatal) before anything else is looked at.
  4. Split every line on the declared delimiter, honouring quotes, and clean
     every cell (trim + drop control characters).
  5. Build the ColumnMap from the header (Fatal when a required column is
     missing) and refuse header-only files (Fatal).
"""

from __future__ import annotations

import csv
import re
from dataclasses import dataclass

from mentor_import.normalize import clean_cell
from mentor_import.shared import (
    MISSING_DATA,
    MISSING_HEADERS,
    TOO_MANY_LINES,
    FatalImportError,
)

DEFAULT_MAX_DATA_ROWS = 5000

DELIMITERS: dict[str, str] = {
    "comma": ",",
    "semicolon": ";",
    "colon": ":",
    "tab": "\t",
}

REQUIRED_COLUMNS = ("email", "lastname", "firstname")

_UTF8_BOM = b"\xef\xbb\xbf"
_CP1250_HINT_RE = re.compile(rb"[\x80-\x9f]")


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RawRow:
    line_number: int
    cells: list[str]


@dataclass(frozen=True)
class ColumnMap:
    """Logical field -> column index, resolved once from the header row."""

    email: int
    lastname: int
    firstname: int
    role: int | None = None
    group: int | None = None

    @classmethod
    def from_header(cls, header: RawRow) -> ColumnMap:
        cells = header.cells
        missing = [name for name in REQUIRED_COLUMNS if name not in cells]
        if missing:
            raise FatalImportError(
                MISSING_HEADERS,
                f"missing headers: {', '.join(missing)} "
                f"(expected at least {', '.join(REQUIRED_COLUMNS)})",
            )
        return cls(
            email=cells.index("email"),
            lastname=cells.index("lastname"),
            firstname=cells.index("firstname"),
            role=cells.index("role") if "role" in cells else None,
            group=cells.index("group") if "group" in cells else None,
        )

    @property
    def has_course_columns(self) -> bool:
        return self.role is not None and self.group is not None

    def get(self, row: RawRow, field_name: str) -> str:
        """Return the cleaned cell for field_name, "" when absent or short."""
        idx = getattr(self, field_name)
        if idx is None or idx >= len(row.cells):
            return ""
        return row.cells[idx]


@dataclass
class ParsedFile:
    delimiter: str
    header: RawRow
    rows: list[RawRow]
    columns: ColumnMap | None = None


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def resolve_delimiter(delimiter_name: str) -> str:
    try:
        return DELIMITERS[delimiter_name]
    except KeyError:
        raise ValueError(
            f"unknown delimiter {delimiter_name!r}; expected one of {sorted(DELIMITERS)}"
        ) from None


def decode_content(data: bytes | str) -> str:
    """Return upload content as text with BOM removed and '\\n' line endings."""
    if isinstance(data, bytes):
        if data.startswith(_UTF8_BOM):
            data = data[len(_UTF8_BOM):]
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            if _CP1250_HINT_RE.search(data):
                text = data.decode("cp1250", errors="replace")
            else:
                text = data.decode("iso-8859-1")
    else:
        text = data
    text = text.lstrip("\ufeff")
    return text.replace("\r\n", "\n").replace("\r", "\n")


def split_cells(line: str, delimiter: str) -> list[str]:
    """Split one line on delimiter (quote-aware) and clean every cell."""
    try:
        cells = next(csv.reader([line], delimiter=delimiter))
    except StopIteration:
        return []
    return [clean_cell(c) for c in cells]


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def read_rows(
    data: bytes | str,
    delimiter_name: str,
    max_data_rows: int = DEFAULT_MAX_DATA_ROWS,
) -> ParsedFile:
    """Decode + split without interpreting the header.

    Raises FatalImportError for an empty file or one over the ceiling.
    """
    delimiter = resolve_delimiter(delimiter_name)
    lines = [ln.strip() for ln in decode_content(data).split("\n")]
    lines = [ln for ln in lines if ln]

    if len(lines) > max_data_rows + 1:
        raise FatalImportError(
            TOO_MANY_LINES,
            f"too many lines: {len(lines) - 1} data rows (maximum {max_data_rows})",
        )
    if not lines:
        raise FatalImportError(MISSING_HEADERS, "missing headers: the file is empty")

    rows = [
        RawRow(line_number=idx + 1, cells=split_cells(line, delimiter))
        for idx, line in enumerate(lines)
    ]
    return ParsedFile(delimiter=delimiter, header=rows[0], rows=rows[1:])


def parse_users_file(
    data: bytes | str,
    delimiter_name: str,
    max_data_rows: int = DEFAULT_MAX_DATA_ROWS,
) -> ParsedFile:
    """Parse a user/enrolment upload and resolve its ColumnMap."""
    parsed = read_rows(data, delimiter_name, max_data_rows)
    parsed.columns = ColumnMap.from_header(parsed.header)
    if not parsed.rows:
        raise FatalImportError(MISSING_DATA, "missing data: the file has no data rows")
    return parsed
