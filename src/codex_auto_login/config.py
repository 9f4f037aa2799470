from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, field_validator


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")

DEFAULT_LOGIN_URL = "https://auth.openai.com/log-in"
SAFE_LOGIN_URL = "https://chatgpt.com/auth/login"
# The legacy auth login path rejects automated sign-in; URLs starting with it are swapped for SAFE_LOGIN_URL.
BLOCKED_LOGIN_PREFIX = "auth.openai.com/login"
DEFAULT_TOKEN_SELECTOR = "pre, code, .token, .cli-token"


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


def expand_user_path(value: str) -> Path:
    return Path(os.path.expanduser(value or ""))


def _default_config_from_env() -> dict:
    """
    Env-only config so most users only need `.env`; YAML is an optional override on top of this.
    """
    return {
        "login": {
            "email": os.getenv("OPENAI_EMAIL", ""),
            "password": os.getenv("OPENAI_PASSWORD", ""),
            "url": os.getenv("CODEX_LOGIN_URL", ""),
            "token_selector": os.getenv("CODEX_TOKEN_SELECTOR", "") or DEFAULT_TOKEN_SELECTOR,
        },
        "mailbox": {
            "host": os.getenv("IMAP_HOST", ""),
            "port": _env_int("IMAP_PORT", 993),
            "user": os.getenv("IMAP_USER", ""),
            "password": os.getenv("IMAP_PASS", ""),
            "tls": _env_bool("IMAP_TLS", default=True),
            "folder": os.getenv("IMAP_FOLDER", "INBOX"),
            "sender_filter": os.getenv("IMAP_FROM_FILTER", "openai.com"),
            "subject_filter": os.getenv("IMAP_SUBJECT_FILTER", "code"),
            "timeout_ms": _env_int("VERIFICATION_TIMEOUT_MS", 180_000),
            "poll_interval_ms": _env_int("IMAP_POLL_INTERVAL_MS", 5_000),
        },
        "browser": {
            "headless": _env_bool("BROWSER_HEADLESS", default=True),
            "executable_path": os.getenv("BROWSER_EXECUTABLE_PATH", ""),
            "install_dir": os.getenv("PLAYWRIGHT_INSTALL_DIR", ""),
            "debug_dir": os.getenv("DEBUG_DIR", "data/debug"),
        },
        "codex": {
            "cli_bin": os.getenv("CODEX_CLI_BIN", "codex"),
            "config_path": os.getenv("CODEX_CONFIG_PATH", "~/.codex/config.json"),
            "token_key": os.getenv("CODEX_TOKEN_KEY", "token"),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", ""),
        },
    }


class LoginConfig(BaseModel):
    """
    Web login settings.

    `url` is an explicit override; when empty the login URL is discovered from the Codex CLI.
    URLs listed in `blocked_url_prefixes` (host + path prefix) are known to reject this flow and are
    swapped for `safe_url`.
    """

    email: str = ""
    password: str = Field(default="", repr=False)
    url: str = ""
    default_url: str = DEFAULT_LOGIN_URL
    safe_url: str = SAFE_LOGIN_URL
    blocked_url_prefixes: list[str] = Field(default_factory=lambda: [BLOCKED_LOGIN_PREFIX])
    alternate_urls: list[str] = Field(
        default_factory=lambda: [
            SAFE_LOGIN_URL,
            DEFAULT_LOGIN_URL,
            "https://platform.openai.com/login",
        ]
    )
    token_selector: str = DEFAULT_TOKEN_SELECTOR

    navigation_timeout_ms: int = 120_000
    field_timeout_ms: int = 15_000
    network_idle_timeout_ms: int = 60_000
    otp_detect_timeout_ms: int = 5_000
    token_timeout_ms: int = 120_000

    @field_validator("url", "default_url", "safe_url")
    @classmethod
    def _validate_url(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            return v
        parsed = urlparse(v)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"login URL must be a full URL like 'https://chatgpt.com/auth/login' (got {v!r})")
        return v

    @field_validator("alternate_urls")
    @classmethod
    def _max_three_alternates(cls, v: list[str]) -> list[str]:
        cleaned = [u.strip() for u in v if (u or "").strip()]
        return cleaned[:3]


class MailboxConfig(BaseModel):
    host: str = ""
    port: int = 993
    user: str = ""
    password: str = Field(default="", repr=False)
    tls: bool = True
    folder: str = "INBOX"
    sender_filter: str = "openai.com"
    subject_filter: str = "code"
    timeout_ms: int = 180_000
    poll_interval_ms: int = 5_000


class BrowserConfig(BaseModel):
    headless: bool = True
    executable_path: str = ""
    # Where Chromium is installed when Playwright's own browser cache is empty.
    install_dir: str = ""
    slow_mo_ms: int = 0
    step_debug: bool = False
    debug_dir: str = "data/debug"


class CodexConfig(BaseModel):
    cli_bin: str = "codex"
    config_path: str = "~/.codex/config.json"
    token_key: str = "token"
    cli_timeout_seconds: int = 20
    interactive_login_timeout_seconds: int = 30


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = ""


class AppConfig(BaseModel):
    login: LoginConfig = LoginConfig()
    mailbox: MailboxConfig = MailboxConfig()
    browser: BrowserConfig = BrowserConfig()
    codex: CodexConfig = CodexConfig()
    logging: LoggingConfig = LoggingConfig()


def load_config(path: Optional[Union[str, Path]] = None) -> AppConfig:
    raw: dict = {}
    if path:
        p = Path(path)
        if p.exists():
            raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
            raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
