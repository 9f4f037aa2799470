from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .codex_cli import CodexCli
from .config import AppConfig, load_config
from .credential_store import CredentialStore
from .exceptions import CodexLoginError
from .logging_config import configure_logging, mask_email
from .login.orchestrator import LoginOrchestrator
from .mail.poller import check_mailbox, poll_mailbox_for_code
from .models import CapturedResult, LoginCredentials


logger = logging.getLogger("codex_auto_login")

FAILURE_HINT = (
    "Set CODEX_LOGIN_URL to the login page, set CODEX_TOKEN_SELECTOR if the token is shown on the page, "
    "and check that verification emails reach the IMAP mailbox."
)
MISSING_BINARY_MESSAGE = "Codex CLI binary %r not found. Install the Codex CLI or set CODEX_CLI_BIN."


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="codex-auto-login")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    login = sub.add_parser("login", help="Log the Codex CLI in via the web login flow (email + password + emailed code)")
    login.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    login.add_argument("--force", action="store_true", help="Run the web login even if the CLI is already logged in")
    login.add_argument("--headful", action="store_true", help="Run browser headful (debug)")
    login.add_argument("--step-debug", action="store_true", help="Save step-by-step screenshots under the debug dir.")

    preflight = sub.add_parser(
        "preflight",
        help="Check IMAP connectivity and the Codex CLI without launching a browser",
    )
    preflight.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    preflight.add_argument("--skip-imap", action="store_true", help="Skip IMAP connectivity check")
    preflight.add_argument("--skip-cli", action="store_true", help="Skip Codex CLI check")

    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    cfg = load_config(args.config)
    configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path)

    if args.cmd == "preflight":
        return _preflight(cfg, skip_imap=args.skip_imap, skip_cli=args.skip_cli)

    if args.cmd == "login":
        if args.headful:
            cfg.browser.headless = False
        if args.step_debug:
            cfg.browser.step_debug = True
        try:
            return _login(cfg, force=args.force)
        except KeyboardInterrupt:
            logger.warning("Interrupted.")
            return 130

    raise AssertionError("Unhandled command")


def run() -> None:
    raise SystemExit(main())


def _codex_cli(cfg: AppConfig) -> CodexCli:
    return CodexCli(
        cfg.codex.cli_bin,
        timeout_seconds=cfg.codex.cli_timeout_seconds,
        interactive_timeout_seconds=cfg.codex.interactive_login_timeout_seconds,
    )


def _login(cfg: AppConfig, *, force: bool) -> int:
    cli = _codex_cli(cfg)

    initial = cli.whoami()
    if not force and initial.success:
        logger.info("Codex CLI is already logged in; nothing to do (use --force to log in again).")
        return 0

    logger.info("Starting web login for %s", mask_email(cfg.login.email))
    creds = LoginCredentials(email=cfg.login.email, password=cfg.login.password)
    orchestrator = LoginOrchestrator(cfg, creds, lambda: poll_mailbox_for_code(cfg.mailbox), cli=cli)

    result: Optional[CapturedResult] = None
    try:
        result = orchestrator.run()
    except CodexLoginError as e:
        _log_failure(e)
    except Exception as e:
        logger.error("Web login failed unexpectedly: %s", e)
        logger.debug("Web login failure details.", exc_info=True)

    token = result.token if result is not None else None
    if token:
        store = CredentialStore(cfg.codex.config_path, token_key=cfg.codex.token_key)
        try:
            path = store.write(token)
        except OSError as e:
            logger.error("Could not write the Codex config at %s: %s", store.path, e)
            return 1
        logger.info("Stored token in %s (captured from %s).", path, result.source.value if result.source else "unknown")
    elif result is not None:
        logger.warning(
            "Web login finished without a token (otp=%s, last url=%s).",
            result.otp_outcome.value,
            result.last_url,
        )

    if _verified(cli):
        logger.info("Codex CLI login verified.")
        return 0

    if token:
        logger.info("Codex CLI does not see the stored token yet; handing it over via `%s login`.", cli.bin_path)
        handed = cli.login_with_token(token)
        if handed.missing_binary:
            logger.error(
                "Codex CLI binary %r not found. The token was stored, but the CLI cannot be verified. "
                "Install the Codex CLI or set CODEX_CLI_BIN.",
                cli.bin_path,
            )
            return 1
        if handed.success and _verified(cli):
            logger.info("Codex CLI login verified.")
            return 0

    if initial.missing_binary:
        logger.error(MISSING_BINARY_MESSAGE, cli.bin_path)
        return 1

    logger.error("Codex CLI is still not logged in. %s Debug snapshots: %s", FAILURE_HINT, cfg.browser.debug_dir)
    return 1


def _verified(cli: CodexCli) -> bool:
    res = cli.whoami()
    if res.missing_binary:
        return False
    if not res.success:
        logger.info("Codex CLI reports not logged in (exit=%s).", res.code)
    return res.success


def _log_failure(e: CodexLoginError) -> None:
    logger.error("%s", e)
    if e.remediation:
        logger.error("Hint: %s", e.remediation)
    logger.debug("Failure details.", exc_info=True)


def _preflight(cfg: AppConfig, *, skip_imap: bool, skip_cli: bool) -> int:
    logger.info("Starting preflight checks")
    ok = True

    if not cfg.login.email or not cfg.login.password:
        logger.error("Missing login credentials. Set OPENAI_EMAIL and OPENAI_PASSWORD.")
        ok = False

    if not skip_imap:
        try:
            check_mailbox(cfg.mailbox)
        except CodexLoginError as e:
            _log_failure(e)
            ok = False

    if not skip_cli:
        res = _codex_cli(cfg).whoami()
        if res.missing_binary:
            logger.error(MISSING_BINARY_MESSAGE, cfg.codex.cli_bin)
            ok = False
        else:
            logger.info("Codex CLI found (logged_in=%s).", res.success)

    if ok:
        logger.info("Preflight OK")
        return 0
    logger.error("Preflight failed")
    return 1
