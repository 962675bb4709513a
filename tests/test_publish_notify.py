"""
Unit Tests for the Git Publisher and Telegram Notifier

Both are best-effort side channels: failures are logged and reported as
False, never raised.
"""

import subprocess
from datetime import datetime, timezone, timedelta
from unittest.mock import Mock, patch

import requests

from overwatch.notifier import TelegramNotifier, TELEGRAM_MAX_LENGTH
from overwatch.shared.resilience import get_health_tracker
from overwatch.terminal.publish import GitPublisher, commit_stamp


def completed(stdout=""):
    return subprocess.CompletedProcess(args=["git"], returncode=0, stdout=stdout, stderr="")


# =============================================================================
# GIT PUBLISHER
# =============================================================================

class TestGitPublisher:

    def test_commit_stamp(self):
        now = datetime(2026, 2, 20, 8, 5, tzinfo=timezone(timedelta(hours=-6)))
        assert commit_stamp(now) == "2026-02-20 14:05 UTC"

    def test_not_a_repo(self, tmp_path):
        publisher = GitPublisher(tmp_path)
        publisher._git = Mock(side_effect=subprocess.CalledProcessError(128, ["git", "rev-parse"]))

        assert publisher.publish(["dashboard-data.json"], "msg") is False
        assert publisher._git.call_count == 1

    def test_nothing_staged(self, tmp_path):
        publisher = GitPublisher(tmp_path)
        publisher._git = Mock(side_effect=[completed("true\n"), completed(), completed("")])

        assert publisher.publish(["dashboard-data.json"], "msg") is False
        assert [c[0][0] for c in publisher._git.call_args_list] == ["rev-parse", "add", "diff"]

    def test_commit_and_push(self, tmp_path):
        publisher = GitPublisher(tmp_path)
        publisher._git = Mock(side_effect=[
            completed("true\n"), completed(), completed("dashboard-data.json\n"), completed(), completed(),
        ])

        assert publisher.publish(["dashboard-data.json"], "auto: data update") is True
        publisher._git.assert_any_call("commit", "-m", "auto: data update")
        publisher._git.assert_any_call("push", "origin", "main")

    def test_push_failure_is_swallowed(self, tmp_path):
        publisher = GitPublisher(tmp_path)
        publisher._git = Mock(side_effect=[
            completed("true\n"), completed(), completed("index.html\n"), completed(),
            subprocess.CalledProcessError(1, ["git", "push", "origin"], stderr="rejected"),
        ])

        assert publisher.publish(["index.html"], "msg") is False

    def test_git_binary_missing(self, tmp_path):
        with patch("overwatch.terminal.publish.subprocess.run", side_effect=FileNotFoundError("git")):
            assert GitPublisher(tmp_path).is_repo() is False


# =============================================================================
# TELEGRAM NOTIFIER
# =============================================================================

class TestTelegramNotifier:

    def test_unconfigured_skips(self, monkeypatch):
        monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
        monkeypatch.delenv("TELEGRAM_CHAT_ID", raising=False)
        session = Mock()

        notifier = TelegramNotifier(session=session)

        assert notifier.is_available() is False
        assert notifier.send("hello") is False
        session.post.assert_not_called()

    def test_sends_html_message(self, make_response):
        session = Mock()
        session.post.return_value = make_response({"ok": True})
        notifier = TelegramNotifier("TOKEN", "42", session=session)

        assert notifier.send("<b>hi</b>") is True

        url = session.post.call_args[0][0]
        body = session.post.call_args[1]["json"]
        assert url.endswith("/botTOKEN/sendMessage")
        assert body["chat_id"] == "42"
        assert body["parse_mode"] == "HTML"
        assert body["text"] == "<b>hi</b>"
        assert get_health_tracker("telegram").successful_calls == 1

    def test_long_message_truncated(self, make_response):
        session = Mock()
        session.post.return_value = make_response({"ok": True})
        TelegramNotifier("T", "1", session=session).send("x" * 5000)

        text = session.post.call_args[1]["json"]["text"]
        assert len(text) == TELEGRAM_MAX_LENGTH
        assert text.endswith("...")

    def test_api_error_returns_false(self, make_response):
        session = Mock()
        session.post.return_value = make_response({"ok": False, "description": "chat not found"})

        assert TelegramNotifier("T", "1", session=session).send("x") is False
        assert "chat not found" in get_health_tracker("telegram").last_error

    def test_network_error_returns_false(self):
        session = Mock()
        session.post.side_effect = requests.ConnectionError("offline")
        assert TelegramNotifier("T", "1", session=session).send("x") is False
