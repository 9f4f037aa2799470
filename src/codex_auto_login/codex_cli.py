from __future__ import annotations

import logging
import re
import subprocess
from typing import Optional, Sequence

from .models import CliResult, TokenLoginResult


logger = logging.getLogger(__name__)

_NOT_LOGGED_IN_RE = re.compile(r"not\s+logged\s+in|expired|invalid|unauthorized|error", re.I)
_URL_RE = re.compile(r"https?://[\w\-.~:?#\[\]@!$&'()*+,;=%/]+", re.I)

LOGIN_URL_HINT_ARGS: tuple[tuple[str, ...], ...] = (
    ("login", "--print-url"),
    ("login", "--show-url"),
    ("login", "--url"),
)


class CodexCli:
    """
    Thin wrapper around the `codex` binary.

    A missing binary is reported through `missing_binary` rather than raised, so callers can give a targeted hint.
    """

    def __init__(self, bin_path: str = "codex", *, timeout_seconds: int = 20, interactive_timeout_seconds: int = 30) -> None:
        self.bin_path = bin_path
        self.timeout_seconds = timeout_seconds
        self.interactive_timeout_seconds = interactive_timeout_seconds

    def _run(self, args: Sequence[str]) -> CliResult:
        try:
            proc = subprocess.run(
                [self.bin_path, *args],
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError:
            return CliResult(success=False, raw="", code=127, missing_binary=True)
        except subprocess.TimeoutExpired as e:
            out = e.stdout if isinstance(e.stdout, str) else ""
            return CliResult(success=False, raw=out or "timed out", code=124)
        except OSError as e:
            return CliResult(success=False, raw=str(e), code=126)

        raw = proc.stdout or proc.stderr or ""
        return CliResult(success=proc.returncode == 0, raw=raw, code=proc.returncode)

    def whoami(self) -> CliResult:
        res = self._run(["whoami"])
        if res.missing_binary:
            logger.warning("Codex CLI binary %r not found on PATH.", self.bin_path)
            return res
        success = res.code == 0 and not _NOT_LOGGED_IN_RE.search(res.raw or "")
        return CliResult(success=success, raw=res.raw, code=res.code)

    def login_url_hint(self, args: Sequence[str]) -> str:
        """
        Raw output of `codex <args>`; may or may not contain a URL.
        """
        res = self._run(args)
        return (res.raw or "").strip()

    def discover_login_url(self) -> Optional[str]:
        for args in LOGIN_URL_HINT_ARGS:
            url = extract_url(self.login_url_hint(args))
            if url:
                logger.debug("Codex CLI suggested login URL via %s.", " ".join(args))
                return url
        return None

    def login_with_token(self, token: str) -> TokenLoginResult:
        """
        Hand the token to the CLI: first as an argument, then interactively on stdin.
        """
        direct = self._run(["login", "--token", token])
        if direct.missing_binary:
            return TokenLoginResult(success=False, missing_binary=True)
        if direct.success:
            return TokenLoginResult(success=True)

        logger.info("Direct token login was not accepted; trying interactive `%s login`.", self.bin_path)
        try:
            proc = subprocess.Popen(
                [self.bin_path, "login"],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError:
            return TokenLoginResult(success=False, missing_binary=True)

        try:
            proc.communicate(input=token + "\n", timeout=self.interactive_timeout_seconds)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.communicate()
            logger.warning("Interactive `%s login` did not finish within %ss.", self.bin_path, self.interactive_timeout_seconds)
            return TokenLoginResult(success=False)
        return TokenLoginResult(success=proc.returncode == 0)


def extract_url(text: str) -> Optional[str]:
    m = _URL_RE.search(text or "")
    return m.group(0) if m else None
