from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from codex_auto_login.config import MailboxConfig
from codex_auto_login.exceptions import ConfigError, MailboxConnectionError, OtpTimeoutError
from codex_auto_login.mail import poller
from codex_auto_login.mail.poller import (
    MailboxFilter,
    _imap_connect_and_select,
    extract_code,
    normalize_quoted_printable,
    poll_mailbox_for_code,
)
from fakes import FakeImap, raw_email


def _cfg(**overrides) -> MailboxConfig:
    values = dict(host="imap.example.test", user="me@example.test", password="pw", timeout_ms=0, poll_interval_ms=0)
    values.update(overrides)
    return MailboxConfig(**values)


def _minutes_ago(n: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(minutes=n)


def _install(monkeypatch: pytest.MonkeyPatch, imap: FakeImap) -> None:
    monkeypatch.setattr(poller, "_imap_connect_and_select", lambda cfg: imap)


def test_filter_is_case_insensitive_substring() -> None:
    f = MailboxFilter(sender="openai.com", subject="CODE")
    assert f.matches(sender="OpenAI <noreply@tm.OPENAI.com>", subject="Your ChatGPT code is 123456")
    assert not f.matches(sender="news@example.test", subject="Your code")


def test_empty_filter_matches_everything() -> None:
    f = MailboxFilter(sender="", subject="")
    assert f.matches(sender="anyone@anywhere", subject="")


def test_window_excludes_messages_without_date() -> None:
    f = MailboxFilter(since=_minutes_ago(5))
    assert not f.in_window(None)
    assert not f.in_window(_minutes_ago(10))
    assert f.in_window(_minutes_ago(1))


def test_normalize_quoted_printable_soft_breaks_and_equals() -> None:
    assert normalize_quoted_printable("12=\r\n3456") == "123456"
    assert normalize_quoted_printable("12=\n3456") == "123456"
    assert normalize_quoted_printable("a=3Db") == "a=b"


def test_extract_code_runs_on_normalized_text() -> None:
    assert extract_code("Your code: 12=\n3456") == "123456"
    # `=3D` becomes `=`, which splits the digit run.
    assert extract_code("ref 12=3D3456") == "3456"


def test_extract_code_prefers_six_digit_run() -> None:
    assert extract_code("Order 1234 confirmed. Code 654321.") == "654321"
    assert extract_code("Code 98765") == "98765"
    assert extract_code("1234567890123 no bounded run") is None


def test_extract_code_ignores_html_styles() -> None:
    body = "<style>p { color: #265179; }</style><p>Enter <b>482913</b></p>"
    assert extract_code(body) == "482913"


def test_poll_returns_newest_matching_code(monkeypatch: pytest.MonkeyPatch) -> None:
    imap = FakeImap(
        [
            raw_email(sender="noreply@openai.com", subject="Your code", body="Code 222222", received_at=_minutes_ago(1)),
            raw_email(sender="noreply@openai.com", subject="Your code", body="Code 111111", received_at=_minutes_ago(3)),
        ]
    )
    _install(monkeypatch, imap)

    assert poll_mailbox_for_code(_cfg()) == "222222"
    assert imap.body_fetches == [b"1"]
    assert imap.logged_out


def test_poll_skips_non_matching_and_stale_messages(monkeypatch: pytest.MonkeyPatch) -> None:
    imap = FakeImap(
        [
            raw_email(sender="news@example.test", subject="Your code", body="Code 999999", received_at=_minutes_ago(1)),
            raw_email(sender="noreply@openai.com", subject="Your code", body="Code 333333", received_at=_minutes_ago(60)),
            raw_email(sender="OpenAI <noreply@OpenAI.com>", subject="ChatGPT CODE", body="Code 444444", received_at=_minutes_ago(2)),
        ]
    )
    _install(monkeypatch, imap)

    assert poll_mailbox_for_code(_cfg()) == "444444"
    # Only the chosen message is read; the others stay unseen.
    assert imap.seen == {b"3"}
    assert imap.searches[0][:2] == ("UNSEEN", "SINCE")


def test_since_date_reaches_back_a_day_past_midnight_utc() -> None:
    # A server west of UTC may still date a message sent at 00:03 UTC on the previous day.
    window_start = datetime(2026, 3, 2, 0, 3, tzinfo=timezone.utc)
    assert poller.imap_since_date(window_start) == "01-Mar-2026"


def test_poll_moves_past_matching_message_without_code(monkeypatch: pytest.MonkeyPatch) -> None:
    imap = FakeImap(
        [
            raw_email(sender="noreply@openai.com", subject="Your code", body="no digits here", received_at=_minutes_ago(1)),
            raw_email(sender="noreply@openai.com", subject="Your code", body="Code 555555", received_at=_minutes_ago(2)),
        ]
    )
    _install(monkeypatch, imap)

    assert poll_mailbox_for_code(_cfg()) == "555555"


def test_poll_times_out_and_logs_out(monkeypatch: pytest.MonkeyPatch) -> None:
    imap = FakeImap([])
    _install(monkeypatch, imap)

    with pytest.raises(OtpTimeoutError):
        poll_mailbox_for_code(_cfg())
    assert imap.logged_out
    assert len(imap.searches) == 1


def test_poll_requires_mailbox_settings() -> None:
    with pytest.raises(ConfigError) as exc:
        poll_mailbox_for_code(MailboxConfig(host="", user="", password=""))
    assert "IMAP_HOST" in str(exc.value)


def test_connect_failure_is_mailbox_connection_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def boom(host, port):
        raise OSError("connection refused")

    monkeypatch.setattr(poller.imaplib, "IMAP4_SSL", boom)

    with pytest.raises(MailboxConnectionError):
        _imap_connect_and_select(_cfg())
