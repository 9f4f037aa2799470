from __future__ import annotations

import html as _html
import imaplib
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email import message_from_bytes
from email.header import decode_header, make_header
from email.message import Message
from email.utils import parsedate_to_datetime
from typing import Optional, Union

from ..config import MailboxConfig
from ..exceptions import ConfigError, MailboxConnectionError, OtpTimeoutError
from ..logging_config import mask_code, mask_email


logger = logging.getLogger(__name__)

ImapConnection = Union[imaplib.IMAP4, imaplib.IMAP4_SSL]

MIN_WINDOW = timedelta(minutes=5)
MAX_CANDIDATES_PER_POLL = 25

_PREFERRED_CODE_RE = re.compile(r"(?:^|\D)(\d{6})(?=\D|$)")
_FALLBACK_CODE_RE = re.compile(r"(?:^|\D)(\d{4,8})(?=\D|$)")
_QP_SOFT_BREAK_RE = re.compile(r"=\r?\n")


@dataclass(frozen=True)
class MailboxFilter:
    """
    Which messages may carry the verification code.

    Sender/subject are case-insensitive substrings; an empty filter matches everything.
    """

    sender: str = ""
    subject: str = ""
    since: datetime = datetime.min.replace(tzinfo=timezone.utc)
    poll_interval_seconds: float = 5.0

    def matches(self, *, sender: str, subject: str) -> bool:
        sender_ok = not self.sender or self.sender.lower() in (sender or "").lower()
        subject_ok = not self.subject or self.subject.lower() in (subject or "").lower()
        return sender_ok and subject_ok

    def in_window(self, received_at: Optional[datetime]) -> bool:
        return received_at is not None and received_at >= self.since


@dataclass(frozen=True)
class _Candidate:
    msg_id: bytes
    received_at: datetime
    sender: str
    subject: str


def _safe_imap_logout(mail: Optional[ImapConnection]) -> None:
    if mail is None:
        return
    try:
        mail.close()
    except Exception:
        pass
    try:
        mail.logout()
    except Exception:
        pass


def _imap_connect_and_select(cfg: MailboxConfig) -> ImapConnection:
    try:
        if cfg.tls:
            mail: ImapConnection = imaplib.IMAP4_SSL(cfg.host, cfg.port)
        else:
            mail = imaplib.IMAP4(cfg.host, cfg.port)
    except (OSError, imaplib.IMAP4.error) as e:
        raise MailboxConnectionError(f"Could not connect to IMAP server {cfg.host}:{cfg.port}: {e}") from e

    try:
        mail.login(cfg.user, cfg.password)
        sel_status, _ = mail.select(cfg.folder)
        if sel_status != "OK":
            raise MailboxConnectionError(f"IMAP select failed for folder={cfg.folder!r}: {sel_status}")
    except MailboxConnectionError:
        _safe_imap_logout(mail)
        raise
    except (OSError, imaplib.IMAP4.error) as e:
        _safe_imap_logout(mail)
        raise MailboxConnectionError(f"IMAP login failed for {mask_email(cfg.user)}: {e}") from e
    return mail


def _require_mailbox_settings(cfg: MailboxConfig) -> None:
    missing = [
        name
        for name, value in (("IMAP_HOST", cfg.host), ("IMAP_USER", cfg.user), ("IMAP_PASS", cfg.password))
        if not value
    ]
    if missing:
        raise ConfigError(f"IMAP configuration missing ({'/'.join(missing)}).")


def poll_mailbox_for_code(
    cfg: MailboxConfig,
    *,
    timeout_ms: Optional[int] = None,
    poll_interval_ms: Optional[int] = None,
) -> str:
    """
    Poll the mailbox for an unread verification email and return the numeric code it carries.

    Only unread messages dated within the window (`now - max(5min, timeout)`) are considered, newest first.
    Fetching a message body marks it read, so a message is inspected at most once across polls.

    Raises ConfigError (settings missing), MailboxConnectionError (connect/login/select failed; not retried)
    or OtpTimeoutError (no qualifying message in time).
    """
    _require_mailbox_settings(cfg)

    timeout_ms = cfg.timeout_ms if timeout_ms is None else timeout_ms
    poll_interval_ms = cfg.poll_interval_ms if poll_interval_ms is None else poll_interval_ms

    now = datetime.now(timezone.utc)
    policy = MailboxFilter(
        sender=cfg.sender_filter,
        subject=cfg.subject_filter,
        since=now - max(MIN_WINDOW, timedelta(milliseconds=timeout_ms)),
        poll_interval_seconds=max(0, poll_interval_ms) / 1000,
    )

    logger.info(
        "Connecting IMAP %s:%s as %s (TLS=%s)", cfg.host, cfg.port, mask_email(cfg.user), cfg.tls
    )
    deadline = time.monotonic() + timeout_ms / 1000
    mail = _imap_connect_and_select(cfg)
    try:
        while True:
            code = _try_fetch_code_once(mail, policy)
            if code:
                return code
            if time.monotonic() + policy.poll_interval_seconds >= deadline:
                break
            time.sleep(policy.poll_interval_seconds)
    finally:
        _safe_imap_logout(mail)

    raise OtpTimeoutError(f"Timed out waiting for verification email via IMAP after {timeout_ms / 1000:.0f}s")


def check_mailbox(cfg: MailboxConfig) -> None:
    """
    Connectivity check only: connect, login, select, logout.
    """
    _require_mailbox_settings(cfg)
    mail = _imap_connect_and_select(cfg)
    _safe_imap_logout(mail)
    logger.info("IMAP preflight OK (user=%s folder=%r)", mask_email(cfg.user), cfg.folder)


def imap_since_date(window_start: datetime) -> str:
    """
    IMAP SINCE compares whole dates in the server's timezone; search a day early and let the window filter.
    """
    return (window_start - timedelta(days=1)).strftime("%d-%b-%Y")


def _try_fetch_code_once(mail: ImapConnection, policy: MailboxFilter) -> Optional[str]:
    try:
        since = imap_since_date(policy.since)
        status, data = mail.search(None, "UNSEEN", "SINCE", since)
        if status != "OK":
            raise RuntimeError(f"IMAP search failed: {status} {data}")
        ids = data[0].split() if data and data[0] else []
    except Exception:
        # Treat transient search issues as "no message yet"; the caller polls again.
        logger.debug("IMAP search failed; treating as no messages.", exc_info=True)
        return None

    candidates: list[_Candidate] = []
    for msg_id in ids[-MAX_CANDIDATES_PER_POLL:]:
        cand = _fetch_candidate_headers(mail, msg_id)
        if cand is None or not policy.in_window(cand.received_at):
            continue
        candidates.append(cand)

    # Newest first, so the latest code wins when several emails qualify.
    candidates.sort(key=lambda c: c.received_at, reverse=True)

    for cand in candidates:
        if not policy.matches(sender=cand.sender, subject=cand.subject):
            continue
        body = _fetch_body_marking_seen(mail, cand.msg_id)
        if body is None:
            continue
        code = extract_code(body)
        if not code:
            logger.debug("Message %s matched filters but carried no code.", cand.msg_id)
            continue
        logger.info(
            "Verification code received via IMAP (received_at=%s subject=%r code=%s)",
            cand.received_at.isoformat(),
            cand.subject,
            mask_code(code),
        )
        return code

    return None


def _fetch_candidate_headers(mail: ImapConnection, msg_id: bytes) -> Optional[_Candidate]:
    try:
        # PEEK keeps the message unread until we actually inspect its body.
        status, msg_data = mail.fetch(msg_id, "(BODY.PEEK[HEADER.FIELDS (FROM SUBJECT DATE)])")
    except Exception:
        logger.debug("IMAP header fetch failed (msg_id=%s).", msg_id, exc_info=True)
        return None
    raw = _first_payload(status, msg_data)
    if raw is None:
        return None
    msg = message_from_bytes(raw)
    received_at = _best_effort_msg_datetime_utc(msg)
    if received_at is None:
        return None
    return _Candidate(
        msg_id=msg_id,
        received_at=received_at,
        sender=_decode_header_value(msg.get("From")),
        subject=_decode_header_value(msg.get("Subject")),
    )


def _fetch_body_marking_seen(mail: ImapConnection, msg_id: bytes) -> Optional[str]:
    try:
        status, msg_data = mail.fetch(msg_id, "(BODY[])")
    except Exception:
        logger.debug("IMAP body fetch failed (msg_id=%s).", msg_id, exc_info=True)
        return None
    raw = _first_payload(status, msg_data)
    if raw is None:
        return None
    return _extract_best_effort_body(message_from_bytes(raw))


def _first_payload(status: str, msg_data: list) -> Optional[bytes]:
    if status != "OK" or not msg_data:
        return None
    for item in msg_data:
        if isinstance(item, tuple) and len(item) >= 2 and isinstance(item[1], (bytes, bytearray)):
            return bytes(item[1])
    return None


def _decode_header_value(raw: Optional[str]) -> str:
    if not raw:
        return ""
    try:
        return str(make_header(decode_header(raw))).strip()
    except Exception:
        return str(raw).strip()


def _extract_best_effort_body(msg: Message) -> str:
    if msg.is_multipart():
        parts = []
        for part in msg.walk():
            ctype = part.get_content_type()
            disp = (part.get("Content-Disposition") or "").lower()
            if "attachment" in disp:
                continue
            if ctype in ("text/plain", "text/html"):
                parts.append(_decode_part(part))
        return "\n".join(parts)
    return _decode_part(msg)


def _decode_part(part: Message) -> str:
    payload = part.get_payload(decode=True) or b""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _best_effort_msg_datetime_utc(msg: Message) -> Optional[datetime]:
    raw_date = (msg.get("Date") or "").strip()
    if not raw_date:
        return None
    try:
        dt = parsedate_to_datetime(raw_date)
    except Exception:
        return None
    if not dt:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_quoted_printable(body: str) -> str:
    """
    Undo the quoted-printable artifacts that survive in forwarded/raw bodies: soft line breaks and `=3D`.
    """
    return _QP_SOFT_BREAK_RE.sub("", body).replace("=3D", "=")


def extract_code(body: str) -> Optional[str]:
    # Strip HTML/CSS after QP normalization so style values and attributes don't produce false matches.
    text = _strip_html_to_text(normalize_quoted_printable(body or ""))
    for code_re in (_PREFERRED_CODE_RE, _FALLBACK_CODE_RE):
        m = code_re.search(text)
        if m:
            return m.group(1)
    return None


def _strip_html_to_text(s: str) -> str:
    # Remove style/script blocks and comments
    s = re.sub(r"(?is)<style[^>]*>.*?</style>", " ", s)
    s = re.sub(r"(?is)<script[^>]*>.*?</script>", " ", s)
    s = re.sub(r"(?is)<!--.*?-->", " ", s)
    # Remove tags
    s = re.sub(r"(?is)<[^>]+>", " ", s)
    s = _html.unescape(s)
    s = re.sub(r"\s+", " ", s).strip()
    return s
