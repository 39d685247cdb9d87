"""mentor_import.notify

Hands the report file to the mail-delivery collaborator, addressed to the
importing account.

Delivery failure raises NotificationError inside the notifier; the pipeline
catches it at its boundary and records a non-fatal warning.
"""

from __future__ import annotations

import json
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import requests

SUBJECT_SESSION_IMPORT = "Session import report"
SUBJECT_USER_IMPORT = "User import report"


class NotificationError(Exception):
    """Raised when the report could not be handed to the mail relay."""


@dataclass(frozen=True)
class ReportMessage:
    recipient: str
    subject: str
    body: str
    attachment: Path


def course_url(base_url: str, course_id: int) -> str:
    return f"{base_url.rstrip('/')}/course/view.php?id={course_id}"


def compose_report_message(
    recipient: str,
    attachment: Path,
    course_id: int | None = None,
    base_url: str = "",
) -> ReportMessage:
    if course_id is not None:
        subject = SUBJECT_SESSION_IMPORT
        body = (
            "The enrolment import into your session has finished. The attached "
            "report gives the result of every line of your file.\n\n"
            f"Session: {course_url(base_url, course_id)}"
        )
    else:
        subject = SUBJECT_USER_IMPORT
        body = (
            "The user import has finished. The attached report gives the "
            "result of every line of your file."
        )
    return ReportMessage(recipient=recipient, subject=subject, body=body, attachment=attachment)


# ---------------------------------------------------------------------------
# Notifiers
# ---------------------------------------------------------------------------

class Notifier(Protocol):
    def send(self, message: ReportMessage) -> None:
        ...


@dataclass
class RelayNotifier:
    """POST the message as multipart form data to an HTTP mail relay."""

    relay_url: str
    sender: str
    timeout: float = 30.0

    def send(self, message: ReportMessage) -> None:
        payload = {
            "from": self.sender,
            "to": message.recipient,
            "subject": message.subject,
            "text": message.body,
        }
        try:
            with message.attachment.open("rb") as fh:
                resp = requests.post(
                    self.relay_url,
                    data=payload,
                    files={"attachment": (message.attachment.name, fh, "text/csv")},
                    timeout=self.timeout,
                )
            resp.raise_for_status()
        except (OSError, requests.RequestException) as exc:
            raise NotificationError(f"report not sent to {message.recipient}: {exc}") from exc


@dataclass
class OutboxNotifier:
    """Write messages to a local outbox directory (tests, air-gapped runs)."""

    base_dir: Path

    def send(self, message: ReportMessage) -> None:
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            stem = message.attachment.stem
            shutil.copyfile(message.attachment, self.base_dir / message.attachment.name)
            (self.base_dir / f"{stem}.json").write_text(
                json.dumps(
                    {
                        "to": message.recipient,
                        "subject": message.subject,
                        "text": message.body,
                        "attachment": message.attachment.name,
                    },
                    indent=2,
                ),
                encoding="utf-8",
            )
        except OSError as exc:
            raise NotificationError(f"outbox write failed: {exc}") from exc


@dataclass
class NullNotifier:
    def send(self, message: ReportMessage) -> None:
        return None
