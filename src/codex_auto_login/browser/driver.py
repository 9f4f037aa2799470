from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import sys
import time
from pathlib import Path
from typing import Iterable, Optional, Sequence

from playwright.sync_api import Browser, BrowserContext, ElementHandle, Frame, Page, Playwright, sync_playwright
from playwright.sync_api import Error as PlaywrightError

from ..exceptions import MissingBinaryError
from .selectors import LoginSelectors


logger = logging.getLogger(__name__)

_DEFAULT_SELECTORS = LoginSelectors()

LAUNCH_ARGS = ["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage", "--disable-gpu"]
VIEWPORT = {"width": 1280, "height": 900}
CLICK_TIMEOUT_MS = 5_000
SNAPSHOT_TEXT_LIMIT = 2_000

# The runtime browser install is attempted at most once per process.
_install_attempted = False


class BrowserSession:
    """
    One isolated browsing session: Playwright driver, browser, a fresh context, and its page.

    Use as a context manager; closing never raises so it cannot mask the caller's result or error.
    """

    def __init__(self, playwright: Playwright, browser: Browser, context: BrowserContext, page: Page) -> None:
        self.playwright = playwright
        self.browser = browser
        self.context = context
        self.page = page

    def __enter__(self) -> "BrowserSession":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        for name, closer in (
            ("page", self.page.close),
            ("context", self.context.close),
            ("browser", self.browser.close),
            ("playwright", self.playwright.stop),
        ):
            try:
                closer()
            except Exception:
                logger.debug("Failed to close %s (ignored).", name, exc_info=True)


def default_install_dir() -> Path:
    return Path.home() / ".cache" / "codex-auto-login" / "ms-playwright"


def _looks_like_missing_executable(err: Exception) -> bool:
    msg = str(err)
    return "Executable doesn't exist" in msg or "playwright install" in msg


def _install_chromium(install_dir: Path) -> None:
    logger.warning("Chromium not found; installing it into %s (one-time).", install_dir)
    install_dir.mkdir(parents=True, exist_ok=True)
    env = dict(os.environ, PLAYWRIGHT_BROWSERS_PATH=str(install_dir))
    try:
        subprocess.run(
            [sys.executable, "-m", "playwright", "install", "chromium"],
            env=env,
            check=True,
            capture_output=True,
            timeout=600,
        )
    except (OSError, subprocess.SubprocessError) as e:
        raise MissingBinaryError(f"Chromium is missing and `playwright install chromium` failed: {e}") from e


def _launch_chromium(pw: Playwright, *, headless: bool, executable_path: str, slow_mo_ms: int) -> Browser:
    kwargs: dict = {"headless": headless, "args": LAUNCH_ARGS, "slow_mo": int(slow_mo_ms or 0)}
    if executable_path:
        kwargs["executable_path"] = executable_path
    return pw.chromium.launch(**kwargs)


def launch_session(
    *,
    headless: bool = True,
    executable_path: str = "",
    install_dir: str = "",
    slow_mo_ms: int = 0,
) -> BrowserSession:
    """
    Launch Chromium and open an isolated context + page.

    If Playwright's browser is missing (and no explicit executable is configured), install Chromium once into a
    deterministic cache directory and retry the launch exactly once. The retry's failure propagates.
    """
    global _install_attempted

    cache_dir = Path(os.path.expanduser(install_dir)) if install_dir else default_install_dir()
    # A previous run may already have installed into our cache; prefer it over an empty default cache.
    if not os.environ.get("PLAYWRIGHT_BROWSERS_PATH") and cache_dir.is_dir() and any(cache_dir.iterdir()):
        os.environ["PLAYWRIGHT_BROWSERS_PATH"] = str(cache_dir)

    pw = sync_playwright().start()
    try:
        browser = _launch_chromium(pw, headless=headless, executable_path=executable_path, slow_mo_ms=slow_mo_ms)
    except PlaywrightError as e:
        _stop_quietly(pw)
        if executable_path or _install_attempted or not _looks_like_missing_executable(e):
            raise
        _install_attempted = True
        _install_chromium(cache_dir)
        # The driver reads the browsers path at startup, so restart it after pointing at the cache.
        os.environ["PLAYWRIGHT_BROWSERS_PATH"] = str(cache_dir)
        pw = sync_playwright().start()
        try:
            browser = _launch_chromium(pw, headless=headless, executable_path="", slow_mo_ms=slow_mo_ms)
        except Exception:
            _stop_quietly(pw)
            raise

    try:
        context = browser.new_context(viewport=VIEWPORT)
        page = context.new_page()
    except Exception:
        try:
            browser.close()
        except Exception:
            logger.debug("Failed to close browser after context error.", exc_info=True)
        _stop_quietly(pw)
        raise

    return BrowserSession(pw, browser, context, page)


def _stop_quietly(pw: Playwright) -> None:
    try:
        pw.stop()
    except Exception:
        logger.debug("Failed to stop Playwright.", exc_info=True)


def documents(page: Page) -> list[Frame]:
    """
    The top-level document followed by every embedded frame.
    """
    try:
        frames = list(page.frames)
    except Exception:
        return []
    main = getattr(page, "main_frame", None)
    if main is not None and main in frames:
        frames.remove(main)
        frames.insert(0, main)
    return frames


def _visible_matches(doc: Frame, selector: str) -> list[ElementHandle]:
    try:
        handles = doc.query_selector_all(selector)
    except Exception:
        # Detached frames and invalid selectors both surface here.
        logger.debug("query_selector_all failed (selector=%r).", selector, exc_info=True)
        return []
    out = []
    for h in handles:
        try:
            if h.is_visible():
                out.append(h)
        except Exception:
            continue
    return out


def locate_field(page: Page, selectors: Sequence[str]) -> Optional[ElementHandle]:
    """
    Return the first visible element matching any selector, trying selectors in order and, for each,
    the top document then its frames. Does not wait.
    """
    docs = documents(page)
    for selector in selectors:
        for doc in docs:
            matches = _visible_matches(doc, selector)
            if matches:
                return matches[0]
    return None


def wait_for_field(
    page: Page,
    selectors: Sequence[str],
    *,
    timeout_ms: int,
    interval_ms: int = 250,
) -> Optional[ElementHandle]:
    deadline = time.monotonic() + timeout_ms / 1000
    while True:
        handle = locate_field(page, selectors)
        if handle is not None:
            return handle
        if time.monotonic() >= deadline:
            return None
        page.wait_for_timeout(interval_ms)


def locate_all(page: Page, selector: str) -> list[ElementHandle]:
    out: list[ElementHandle] = []
    for doc in documents(page):
        out.extend(_visible_matches(doc, selector))
    return out


def _element_label(el: ElementHandle) -> str:
    try:
        text = el.inner_text() or el.get_attribute("value") or el.get_attribute("aria-label") or ""
    except Exception:
        return ""
    return re.sub(r"\s+", " ", text).strip().lower()


def _try_click(el: ElementHandle, label: str) -> bool:
    try:
        el.click(timeout=CLICK_TIMEOUT_MS)
    except Exception:
        logger.debug("Click failed for label=%r; trying next candidate.", label, exc_info=True)
        return False
    logger.debug("Clicked control labelled %r.", label)
    return True


def click_by_label(page: Page, labels: Iterable[str], *, clickable: str = _DEFAULT_SELECTORS.clickable) -> bool:
    """
    Click the first control whose visible text (or value) contains one of `labels`, case-insensitively.

    Exact text matches are tried before partial ones so "Continue" wins over "Continue with Google".
    Falls back to the accessibility tree. Returns False when nothing was clicked; that is not an error.
    """
    wanted = [t.strip().lower() for t in labels if (t or "").strip()]
    if not wanted:
        return False

    labelled: list[tuple[ElementHandle, str]] = []
    for doc in documents(page):
        for el in _visible_matches(doc, clickable):
            text = _element_label(el)
            if text:
                labelled.append((el, text))

    for exact in (True, False):
        for el, text in labelled:
            for label in wanted:
                hit = text == label if exact else label in text
                if hit and _try_click(el, label):
                    return True

    return _click_by_accessible_name(page, wanted)


def _click_by_accessible_name(page: Page, labels: Sequence[str]) -> bool:
    for label in labels:
        name = re.compile(re.escape(label), re.I)
        for role in ("button", "link"):
            try:
                loc = page.get_by_role(role, name=name)
                if loc.count() > 0:
                    loc.first.click(timeout=CLICK_TIMEOUT_MS)
                    logger.debug("Clicked %s %r via accessibility tree.", role, label)
                    return True
            except Exception:
                continue
    return False


def dismiss_consent(
    page: Page,
    *,
    labels: Sequence[str] = _DEFAULT_SELECTORS.consent_labels,
    attempts: int = 5,
    delay_ms: int = 500,
) -> bool:
    """
    Best-effort consent/cookie banner dismissal. Banners often render after navigation, so retry briefly.
    """
    for attempt in range(max(1, attempts)):
        if click_by_label(page, labels):
            logger.info("Dismissed consent banner (attempt %d).", attempt + 1)
            return True
        if attempt + 1 < attempts:
            page.wait_for_timeout(delay_ms)
    return False


def wait_for_network_idle(page: Page, *, timeout_ms: int) -> None:
    try:
        page.wait_for_load_state("networkidle", timeout=timeout_ms)
    except PlaywrightError:
        # Some pages keep background requests open forever; a bounded wait is all we need.
        logger.debug("Network did not go idle within %dms; continuing.", timeout_ms)


def type_into(el: ElementHandle, value: str, *, delay_ms: int = 20) -> None:
    el.click(click_count=3)
    el.fill("")
    el.type(value, delay=delay_ms)


def type_digits(page: Page, inputs: Sequence[ElementHandle], code: str) -> None:
    digits = re.sub(r"\D", "", code)
    for el, digit in zip(inputs, digits):
        el.focus()
        page.keyboard.type(digit)


def page_text(page: Page) -> str:
    parts = []
    for doc in documents(page):
        try:
            parts.append(doc.inner_text("body"))
        except Exception:
            continue
    return "\n".join(parts)


def dom_snapshot(page: Page) -> dict:
    snap: dict = {"url": "", "title": "", "body_text": "", "frames": []}
    try:
        snap["url"] = page.url or ""
    except Exception:
        pass
    try:
        snap["title"] = page.title() or ""
    except Exception:
        pass
    try:
        snap["body_text"] = (page.inner_text("body") or "")[:SNAPSHOT_TEXT_LIMIT]
    except Exception:
        pass
    snap["frames"] = [getattr(f, "url", "") for f in documents(page)]
    return snap


def save_diagnostics(page: Page, *, debug_dir: str, name_prefix: str) -> Optional[Path]:
    """
    Write a screenshot, the HTML and a JSON DOM snapshot. Diagnostic only: never raises.
    """
    try:
        out_dir = Path(debug_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        snapshot_path = out_dir / f"{name_prefix}.json"
        snapshot_path.write_text(json.dumps(dom_snapshot(page), indent=2), encoding="utf-8")
        try:
            page.screenshot(path=str(out_dir / f"{name_prefix}.png"), full_page=True)
        except Exception:
            logger.debug("Failed to save screenshot.", exc_info=True)
        try:
            (out_dir / f"{name_prefix}.html").write_text(page.content(), encoding="utf-8")
        except Exception:
            logger.debug("Failed to save page HTML.", exc_info=True)
        logger.info("Saved diagnostics: %s", snapshot_path)
        return snapshot_path
    except Exception:
        logger.debug("Failed to save diagnostics.", exc_info=True)
        return None
