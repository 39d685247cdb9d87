"""Unit tests for mentor_import.notify.

HTTP relay calls are patched; no network access required.
"""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from mentor_import.notify import (
    SUBJECT_SESSION_IMPORT,
    SUBJECT_USER_IMPORT,
    NotificationError,
    OutboxNotifier,
    RelayNotifier,
    compose_report_message,
    course_url,
)


@pytest.fixture
def report(tmp_path):
    path = tmp_path / "Rapport_users.csv"
    path.write_text("\ufeffemail;Result\n", encoding="utf-8")
    return path


class TestComposeReportMessage:
    def test_session_import(self, report):
        msg = compose_report_message("me@example.com", report, course_id=42, base_url="https://lms.example.org/")
        assert msg.subject == SUBJECT_SESSION_IMPORT
        assert "https://lms.example.org/course/view.php?id=42" in msg.body
        assert msg.recipient == "me@example.com"

    def test_user_import(self, report):
        msg = compose_report_message("me@example.com", report)
        assert msg.subject == SUBJECT_USER_IMPORT
        assert "course/view.php" not in msg.body

    def test_course_url(self):
        assert course_url("https://lms.example.org", 7) == "https://lms.example.org/course/view.php?id=7"


class TestRelayNotifier:
    def test_posts_message_with_attachment(self, report):
        resp = MagicMock()
        resp.raise_for_status.return_value = None
        notifier = RelayNotifier(relay_url="https://relay.example.org/send", sender="noreply@example.org")
        msg = compose_report_message("me@example.com", report)

        with patch("mentor_import.notify.requests.post", return_value=resp) as post:
            notifier.send(msg)

        post.assert_called_once()
        args, kwargs = post.call_args
        assert args[0] == "https://relay.example.org/send"
        assert kwargs["data"]["to"] == "me@example.com"
        assert kwargs["data"]["from"] == "noreply@example.org"
        assert kwargs["files"]["attachment"][0] == "Rapport_users.csv"
        assert kwargs["timeout"] == 30.0

    def test_http_error_raises_notification_error(self, report):
        resp = MagicMock()
        resp.raise_for_status.side_effect = requests.HTTPError("502 Bad Gateway")
        notifier = RelayNotifier(relay_url="https://relay.example.org/send", sender="noreply@example.org")

        with patch("mentor_import.notify.requests.post", return_value=resp):
            with pytest.raises(NotificationError, match="502"):
                notifier.send(compose_report_message("me@example.com", report))

    def test_connection_error_raises_notification_error(self, report):
        notifier = RelayNotifier(relay_url="https://relay.example.org/send", sender="noreply@example.org")
        with patch("mentor_import.notify.requests.post", side_effect=requests.ConnectionError("refused")):
            with pytest.raises(NotificationError):
                notifier.send(compose_report_message("me@example.com", report))

    def test_missing_attachment_raises_notification_error(self, tmp_path):
        notifier = RelayNotifier(relay_url="https://relay.example.org/send", sender="noreply@example.org")
        msg = compose_report_message("me@example.com", tmp_path / "missing.csv")
        with patch("mentor_import.notify.requests.post") as post:
            with pytest.raises(NotificationError):
                notifier.send(msg)
        post.assert_not_called()


class TestOutboxNotifier:
    def test_writes_message_and_attachment(self, report, tmp_path):
        outbox = tmp_path / "outbox"
        OutboxNotifier(base_dir=outbox).send(compose_report_message("me@example.com", report, course_id=3))
        meta = json.loads((outbox / "Rapport_users.json").read_text(encoding="utf-8"))
        assert meta["to"] == "me@example.com"
        assert meta["subject"] == SUBJECT_SESSION_IMPORT
        assert (outbox / "Rapport_users.csv").exists()
