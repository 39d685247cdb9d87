"""mentor_import.report

Report Builder: the uploaded file with one appended "Result" column.

Rendered with the input delimiter, UTF-8 with a BOM so spreadsheet tools
pick the right encoding. Lines never reached (e.g. after a failure that
stopped the run) read NotProcessed.
"""

from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Protocol

from mentor_import.parse import ParsedFile
from mentor_import.shared import NOT_PROCESSED

RESULT_HEADER = "Result"
BOM = "\ufeff"

_UNSAFE_FILENAME_RE = re.compile(r"[^\w.-]+")


# ---------------------------------------------------------------------------
# Building
# ---------------------------------------------------------------------------

def merge_outcomes(*sources: Mapping[int, str]) -> dict[int, str]:
    """Later sources win: commit outcomes override preview rejections."""
    merged: dict[int, str] = {}
    for source in sources:
        merged.update(source)
    return merged


def build_report_rows(parsed: ParsedFile, outcomes: Mapping[int, str]) -> list[list[str]]:
    rows = [[*parsed.header.cells, RESULT_HEADER]]
    for raw in parsed.rows:
        rows.append([*raw.cells, outcomes.get(raw.line_number, NOT_PROCESSED)])
    return rows


def render_report(parsed: ParsedFile, outcomes: Mapping[int, str]) -> str:
    buf = io.StringIO()
    buf.write(BOM)
    writer = csv.writer(buf, delimiter=parsed.delimiter, lineterminator="\n")
    writer.writerows(build_report_rows(parsed, outcomes))
    return buf.getvalue()


def report_filename(name: str) -> str:
    stem = Path(name).stem if name else "import"
    stem = _UNSAFE_FILENAME_RE.sub("_", stem).strip("_") or "import"
    return f"Rapport_{stem}.csv"


def write_report_file(report_dir: Path, name: str, text: str) -> Path:
    path = report_dir / report_filename(name)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8", newline="")
    return path


# ---------------------------------------------------------------------------
# Archivers (GCS or local filesystem)
# ---------------------------------------------------------------------------

class ReportArchiver(Protocol):
    def archive(self, run_id: str, path: Path) -> str:
        """Return the archived object path (or local path)."""
        ...


@dataclass
class GcsReportArchiver:
    """Upload report files to GCS. Bucket + prefix are set at construction."""

    bucket_name: str
    prefix: str

    def archive(self, run_id: str, path: Path) -> str:
        from google.cloud import storage  # type: ignore[import-untyped]

        obj_path = f"{self.prefix}/{run_id}/{path.name}"
        client = storage.Client()
        bucket = client.bucket(self.bucket_name)
        blob = bucket.blob(obj_path)
        blob.upload_from_filename(str(path), content_type="text/csv")
        return f"gs://{self.bucket_name}/{obj_path}"


@dataclass
class LocalReportArchiver:
    base_dir: Path

    def archive(self, run_id: str, path: Path) -> str:
        dest = self.base_dir / run_id / path.name
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(path.read_bytes())
        return str(dest)


@dataclass
class NullReportArchiver:
    """No-op archiver for unit tests."""

    def archive(self, run_id: str, path: Path) -> str:
        return f"null://{run_id}/{path.name}"
