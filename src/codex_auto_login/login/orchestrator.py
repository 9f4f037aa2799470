from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlparse

from playwright.sync_api import ElementHandle, Page
from playwright.sync_api import Error as PlaywrightError

from ..browser.driver import (
    BrowserSession,
    click_by_label,
    dismiss_consent,
    launch_session,
    locate_all,
    locate_field,
    page_text,
    save_diagnostics,
    type_digits,
    type_into,
    wait_for_field,
    wait_for_network_idle,
)
from ..browser.selectors import LoginSelectors
from ..browser.sniffer import TokenSniffer
from ..codex_cli import CodexCli
from ..config import AppConfig
from ..exceptions import (
    ConfigError,
    EmailFieldNotFoundError,
    MailboxConnectionError,
    OtpTimeoutError,
    PasswordFieldNotFoundError,
)
from ..logging_config import mask_code, mask_email
from ..models import CapturedResult, LoginCredentials, LoginState, OtpOutcome
from ..util.attempts import first_success


logger = logging.getLogger(__name__)

# Validation after an OTP submit only needs the page to react, not to fully settle.
OTP_SETTLE_TIMEOUT_MS = 10_000
POLL_INTERVAL_MS = 250


@dataclass
class OtpChallenge:
    single: Optional[ElementHandle] = None
    segments: list[ElementHandle] = field(default_factory=list)


class LoginOrchestrator:
    """
    Drives one web login from URL discovery to token capture.

    States advance in a fixed order (see `LoginState`); OTP states are entered only when the page asks for a code.
    Missing form fields raise; a missing OTP or token is reported through the returned `CapturedResult`.
    The browser session is closed on every exit path.
    """

    def __init__(
        self,
        cfg: AppConfig,
        creds: LoginCredentials,
        code_provider: Callable[[], str],
        *,
        cli: Optional[CodexCli] = None,
        session_factory: Callable[..., BrowserSession] = launch_session,
        selectors: Optional[LoginSelectors] = None,
    ) -> None:
        self.cfg = cfg
        self.creds = creds
        self.code_provider = code_provider
        self.cli = cli
        self.session_factory = session_factory
        self.selectors = selectors or LoginSelectors()
        self.state: Optional[LoginState] = None
        self._step_counter = 0

    def run(self) -> CapturedResult:
        if not self.creds.email or not self.creds.password:
            raise ConfigError("Missing login credentials. Set OPENAI_EMAIL and OPENAI_PASSWORD.")

        self._step_counter = 0
        url = self.discover_url()

        bcfg = self.cfg.browser
        logger.info("Launching browser (headless=%s).", bcfg.headless)
        with self.session_factory(
            headless=bcfg.headless,
            executable_path=bcfg.executable_path,
            install_dir=bcfg.install_dir,
            slow_mo_ms=bcfg.slow_mo_ms,
        ) as session:
            page = session.page
            # Attached before the first navigation so no response is missed.
            sniffer = TokenSniffer.attach(page, dom_selector=self.cfg.login.token_selector)
            return self._drive(page, sniffer, url)

    def _drive(self, page: Page, sniffer: TokenSniffer, url: str) -> CapturedResult:
        email_input = self._open_email_form(page, url)
        self._submit_email(page, email_input)

        password_input = self._locate_password(page)
        self._submit_password(page, password_input)

        outcome = OtpOutcome.NOT_REQUESTED
        challenge = self._detect_otp_challenge(page)
        if challenge is not None:
            code = self._retrieve_otp(page)
            if not code:
                self._enter(page, LoginState.FAILED)
                return CapturedResult(
                    token=None,
                    source=None,
                    last_url=sniffer.last_url or _current_url(page),
                    otp_outcome=OtpOutcome.CODE_UNAVAILABLE,
                )
            self._submit_otp(page, challenge, code)
            outcome = self._validate_otp(page, code)

        return self._await_token(page, sniffer, outcome)

    # URL discovery

    def discover_url(self) -> str:
        """
        Explicit override, then the Codex CLI's suggestion, then the built-in default.
        """
        self._enter(None, LoginState.DISCOVER_URL)
        lcfg = self.cfg.login
        url = first_success((lambda: lcfg.url, self._url_from_cli))
        if url:
            return url
        logger.warning("Could not discover a login URL from the Codex CLI; falling back to %s", lcfg.default_url)
        return lcfg.default_url

    def _url_from_cli(self) -> Optional[str]:
        if self.cli is None:
            return None
        try:
            url = self.cli.discover_login_url()
        except Exception:
            logger.debug("Codex CLI URL discovery failed.", exc_info=True)
            return None
        if url and self._is_blocked(url):
            logger.warning("Codex CLI suggested %s which rejects this flow; using %s instead.", url, self.cfg.login.safe_url)
            return self.cfg.login.safe_url
        return url

    def _is_blocked(self, url: str) -> bool:
        parsed = urlparse(url)
        key = f"{parsed.netloc}{parsed.path}".lower()
        return any(key.startswith(p.lower()) for p in self.cfg.login.blocked_url_prefixes if p)

    # Email / password

    def _entry_points(self, url: str) -> list[str]:
        out = [url]
        for alt in self.cfg.login.alternate_urls:
            if alt not in out:
                out.append(alt)
        return out

    def _open_email_form(self, page: Page, url: str) -> ElementHandle:
        entry_points = self._entry_points(url)
        found = first_success(self._entry_attempt(page, u) for u in entry_points)
        if found is None:
            save_diagnostics(page, debug_dir=self.cfg.browser.debug_dir, name_prefix="email_field_not_found")
            raise EmailFieldNotFoundError(
                f"Email input not found on the login page (tried {len(entry_points)} URL(s), last url={_current_url(page)})."
            )
        return found

    def _entry_attempt(self, page: Page, url: str) -> Callable[[], Optional[ElementHandle]]:
        return lambda: self._try_entry_point(page, url)

    def _try_entry_point(self, page: Page, url: str) -> Optional[ElementHandle]:
        lcfg = self.cfg.login
        sel = self.selectors

        self._enter(page, LoginState.NAVIGATE)
        logger.info("Navigating to %s", url)
        try:
            page.goto(url, wait_until="domcontentloaded", timeout=lcfg.navigation_timeout_ms)
        except PlaywrightError as e:
            logger.warning("Navigation to %s failed: %s", url, e)
            return None
        wait_for_network_idle(page, timeout_ms=lcfg.network_idle_timeout_ms)

        self._enter(page, LoginState.DISMISS_CONSENT)
        dismiss_consent(page, labels=sel.consent_labels)

        if locate_field(page, sel.email_inputs) is None:
            self._enter(page, LoginState.REVEAL_EMAIL_FORM)
            if click_by_label(page, sel.reveal_email_labels, clickable=sel.clickable):
                wait_for_network_idle(page, timeout_ms=lcfg.network_idle_timeout_ms)

        self._enter(page, LoginState.LOCATE_EMAIL)
        el = wait_for_field(page, sel.email_inputs, timeout_ms=lcfg.field_timeout_ms)
        if el is None:
            logger.warning("No email field at %s.", url)
        return el

    def _submit_email(self, page: Page, el: ElementHandle) -> None:
        self._enter(page, LoginState.SUBMIT_EMAIL)
        logger.info("Submitting email %s", mask_email(self.creds.email))
        type_into(el, self.creds.email)
        self._submit_field(page, el)

    def _locate_password(self, page: Page) -> ElementHandle:
        self._enter(page, LoginState.LOCATE_PASSWORD)
        el = wait_for_field(page, self.selectors.password_inputs, timeout_ms=self.cfg.login.field_timeout_ms)
        if el is None:
            save_diagnostics(page, debug_dir=self.cfg.browser.debug_dir, name_prefix="password_field_not_found")
            raise PasswordFieldNotFoundError(f"Password input not found after submitting email (url={_current_url(page)}).")
        return el

    def _submit_password(self, page: Page, el: ElementHandle) -> None:
        self._enter(page, LoginState.SUBMIT_PASSWORD)
        type_into(el, self.creds.password)
        self._submit_field(page, el)

    def _submit_field(self, page: Page, el: ElementHandle) -> None:
        sel = self.selectors
        click_by_label(page, sel.submit_labels, clickable=sel.clickable)
        try:
            el.press("Enter")
        except Exception:
            # The click usually navigates first, detaching the input.
            logger.debug("Enter on submitted field failed (ignored).", exc_info=True)
        wait_for_network_idle(page, timeout_ms=self.cfg.login.network_idle_timeout_ms)

    # OTP

    def _detect_otp_challenge(self, page: Page) -> Optional[OtpChallenge]:
        self._enter(page, LoginState.DETECT_OTP_CHALLENGE)
        sel = self.selectors
        deadline = time.monotonic() + self.cfg.login.otp_detect_timeout_ms / 1000
        while True:
            segments = locate_all(page, sel.otp_segment_inputs)
            if len(segments) >= sel.otp_segment_min_count:
                logger.info("Verification code requested (%d-digit input).", len(segments))
                return OtpChallenge(segments=segments)
            single = locate_field(page, sel.otp_inputs)
            if single is not None:
                logger.info("Verification code requested.")
                return OtpChallenge(single=single)
            if time.monotonic() >= deadline:
                logger.info("No verification code requested.")
                return None
            page.wait_for_timeout(POLL_INTERVAL_MS)

    def _retrieve_otp(self, page: Optional[Page]) -> Optional[str]:
        self._enter(page, LoginState.RETRIEVE_OTP)
        try:
            code = self.code_provider()
        except (OtpTimeoutError, MailboxConnectionError) as e:
            logger.error("Could not obtain a verification code: %s", e)
            return None
        if code:
            logger.info("Got verification code %s", mask_code(code))
        return code or None

    def _submit_otp(self, page: Page, challenge: OtpChallenge, code: str) -> None:
        # Entered before typing so step screenshots never contain the code.
        self._enter(page, LoginState.SUBMIT_OTP)
        self._type_code(page, challenge, code)

    def _type_code(self, page: Page, challenge: OtpChallenge, code: str) -> None:
        sel = self.selectors
        if len(challenge.segments) >= sel.otp_segment_min_count:
            type_digits(page, challenge.segments, code)
        elif challenge.single is not None:
            type_into(challenge.single, code)
        click_by_label(page, sel.otp_submit_labels, clickable=sel.clickable)

    def _validate_otp(self, page: Page, code: str) -> OtpOutcome:
        self._enter(page, LoginState.VALIDATE_OTP)
        wait_for_network_idle(page, timeout_ms=min(self.cfg.login.network_idle_timeout_ms, OTP_SETTLE_TIMEOUT_MS))
        if not self._otp_rejected(page):
            return OtpOutcome.SUBMITTED

        logger.warning("Verification code %s was rejected; polling for a fresh one.", mask_code(code))
        fresh = self._retrieve_otp(page)
        if not fresh or fresh == code:
            # The page may still complete; the token wait decides.
            logger.warning("No fresh verification code arrived; continuing without a retry.")
            return OtpOutcome.REJECTED_NO_FRESH_CODE

        self._clear_text_inputs(page)
        self._enter(page, LoginState.SUBMIT_OTP)
        sel = self.selectors
        retry = OtpChallenge(
            single=locate_field(page, sel.otp_retry_inputs),
            segments=locate_all(page, sel.otp_segment_inputs),
        )
        self._type_code(page, retry, fresh)
        wait_for_network_idle(page, timeout_ms=min(self.cfg.login.network_idle_timeout_ms, OTP_SETTLE_TIMEOUT_MS))
        return OtpOutcome.RESUBMITTED

    def _otp_rejected(self, page: Page) -> bool:
        text = page_text(page).lower()
        return any(t in text for t in self.selectors.otp_rejected_texts)

    def _clear_text_inputs(self, page: Page) -> None:
        for el in locate_all(page, "input"):
            try:
                kind = (el.get_attribute("type") or "text").lower()
                if kind in ("text", "tel", "number"):
                    el.fill("")
            except Exception:
                logger.debug("Could not clear input (ignored).", exc_info=True)

    # Token

    def _await_token(self, page: Page, sniffer: TokenSniffer, outcome: OtpOutcome) -> CapturedResult:
        self._enter(page, LoginState.AWAIT_TOKEN)
        wait_for_network_idle(page, timeout_ms=self.cfg.login.network_idle_timeout_ms)
        found = sniffer.wait_for_token(self.cfg.login.token_timeout_ms)
        last_url = found.last_url or _current_url(page)
        if not found.token:
            self._enter(page, LoginState.FAILED)
            logger.warning("No token seen on the network, in the page, or in the URL (last url=%s).", last_url)
            return CapturedResult(token=None, source=None, last_url=last_url, otp_outcome=outcome)

        self._enter(page, LoginState.SUCCEEDED)
        logger.info("Captured token from %s.", found.source.value if found.source else "unknown")
        return CapturedResult(token=found.token, source=found.source, last_url=last_url, otp_outcome=outcome)

    def _enter(self, page: Optional[Page], state: LoginState) -> None:
        """
        Record a state transition; with step debugging on, also save a screenshot.
        """
        self.state = state
        self._step_counter += 1
        url = _current_url(page) if page is not None else ""
        logger.info("Step %02d %s (url=%s)", self._step_counter, state.value, url)

        if page is None or not self.cfg.browser.step_debug:
            return
        safe = re.sub(r"[^a-zA-Z0-9_-]+", "_", state.value).strip("_") or "step"
        try:
            out_dir = Path(self.cfg.browser.debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            page.screenshot(path=str(out_dir / f"step_{self._step_counter:02d}_{safe}.png"), full_page=True)
        except Exception:
            logger.debug("Failed to save step screenshot (state=%s).", state.value, exc_info=True)


def _current_url(page: Optional[Page]) -> str:
    try:
        return getattr(page, "url", "") or ""
    except Exception:
        return ""
