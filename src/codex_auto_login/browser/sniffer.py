from __future__ import annotations

import logging
import re
import time
from typing import Callable, Optional

from playwright.sync_api import Frame, Page, Response

from ..config import DEFAULT_TOKEN_SELECTOR
from ..models import TokenCandidate, TokenSource
from ..util.attempts import first_success


logger = logging.getLogger(__name__)

_KEYS = r"(?:access[_-]?token|cli[_-]?token|codex[_-]?token|token)"
_OPAQUE = r"[A-Za-z0-9._~\-+/=]{20,}"

# `"access_token": "..."`, `token='...'`, `token: "..."`
TOKEN_BODY_RE = re.compile(_KEYS + r"[\"']?\s*[:=]\s*[\"'](" + _OPAQUE + r")[\"']", re.I)
# `?token=...`, `&access_token=...`, `#cli_token=...`
TOKEN_QUERY_RE = re.compile(r"[?&#]" + _KEYS + r"=(" + _OPAQUE + r")", re.I)
# Last resort for DOM text: any long opaque run inside the token element.
BARE_TOKEN_RE = re.compile(_OPAQUE)
TEXTUAL_CONTENT_TYPE_RE = re.compile(r"application/json|text/html|text/plain", re.I)


def token_from_url(url: str) -> Optional[str]:
    m = TOKEN_QUERY_RE.search(url or "")
    return m.group(1) if m else None


def token_from_body(text: str) -> Optional[str]:
    m = TOKEN_BODY_RE.search(text or "")
    return m.group(1) if m else None


class _TokenCell:
    """
    Holds the latest network-sourced token. Written by response callbacks, read only by `wait_for_token`.

    Last write wins: later responses in an auth flow carry the authoritative token.
    """

    def __init__(self) -> None:
        self._token: Optional[str] = None

    def offer(self, token: Optional[str]) -> None:
        if token:
            self._token = token

    def latest(self) -> Optional[str]:
        return self._token


class TokenSniffer:
    """
    Passive observer attached to a page for its whole lifetime.

    Network responses and navigations are observed as they are dispatched; the DOM and the current URL are
    probed on demand inside `wait_for_token`.
    """

    def __init__(self, page: Page, *, dom_selector: str = DEFAULT_TOKEN_SELECTOR) -> None:
        self._page = page
        self._dom_selector = dom_selector
        self._network = _TokenCell()
        self._last_url = ""

    @classmethod
    def attach(cls, page: Page, *, dom_selector: str = DEFAULT_TOKEN_SELECTOR) -> "TokenSniffer":
        sniffer = cls(page, dom_selector=dom_selector)
        page.on("framenavigated", sniffer._on_navigated)
        page.on("response", sniffer._on_response)
        return sniffer

    @property
    def last_url(self) -> str:
        return self._last_url

    def _on_navigated(self, frame: Frame) -> None:
        try:
            self._last_url = frame.url or self._last_url
        except Exception:
            pass

    def _on_response(self, response: Response) -> None:
        # Runs inside Playwright's event dispatch; must never raise.
        try:
            self._network.offer(token_from_url(response.url))
            content_type = (response.headers or {}).get("content-type", "")
            if TEXTUAL_CONTENT_TYPE_RE.search(content_type):
                self._network.offer(token_from_body(response.text()))
        except Exception:
            # Redirects and aborted requests have no body.
            logger.debug("Could not inspect response body.", exc_info=True)

    def _from_network(self) -> Optional[TokenCandidate]:
        token = self._network.latest()
        if token:
            return TokenCandidate(token=token, source=TokenSource.NETWORK, last_url=self._last_url)
        return None

    def _from_dom(self) -> Optional[TokenCandidate]:
        if not self._dom_selector:
            return None
        try:
            el = self._page.query_selector(self._dom_selector)
            if el is None:
                return None
            text = el.inner_text() or el.text_content() or ""
        except Exception:
            return None
        token = token_from_body(text)
        if not token:
            m = BARE_TOKEN_RE.search(text)
            token = m.group(0) if m else None
        if token:
            return TokenCandidate(token=token, source=TokenSource.DOM, last_url=self._last_url)
        return None

    def _from_url(self) -> Optional[TokenCandidate]:
        try:
            url = self._page.url or ""
        except Exception:
            return None
        token = token_from_url(url)
        if token:
            return TokenCandidate(token=token, source=TokenSource.URL, last_url=url)
        return None

    def _probe(self) -> Optional[TokenCandidate]:
        probes: tuple[Callable[[], Optional[TokenCandidate]], ...] = (self._from_network, self._from_dom, self._from_url)
        return first_success(probes)

    def wait_for_token(self, timeout_ms: int, *, interval_ms: int = 1_000) -> TokenCandidate:
        """
        Poll network > DOM > URL about once a second until a token shows up or the deadline passes.

        A missing token is reported as `TokenCandidate(token=None, source=None)`, not raised.
        """
        deadline = time.monotonic() + timeout_ms / 1000
        while True:
            found = self._probe()
            if found is not None:
                return found
            if time.monotonic() >= deadline:
                break
            try:
                # Pumps Playwright's event loop so response/navigation observers keep firing.
                self._page.wait_for_timeout(interval_ms)
            except Exception:
                logger.debug("Page went away while waiting for token.", exc_info=True)
                break
        return TokenCandidate(token=None, source=None, last_url=self._last_url)
