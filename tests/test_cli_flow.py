from __future__ import annotations

import json
import os
import stat
from pathlib import Path

import pytest

from codex_auto_login import cli
from codex_auto_login.exceptions import ConfigError, EmailFieldNotFoundError
from codex_auto_login.models import CapturedResult, CliResult, OtpOutcome, TokenLoginResult, TokenSource


TOKEN = "sk-codexTokenValue1234567890"


class FakeCodexCli:
    """
    Logged in once the config file holds a token, unless `accepts_stored_token` is off.
    """

    logged_in_at_start = False
    accepts_stored_token = True
    token_login = TokenLoginResult(success=False)
    instances: list["FakeCodexCli"] = []

    def __init__(self, bin_path: str = "codex", **kwargs) -> None:
        self.bin_path = bin_path
        self.whoami_calls = 0
        self.handed_tokens: list[str] = []
        FakeCodexCli.instances.append(self)

    def whoami(self) -> CliResult:
        self.whoami_calls += 1
        path = Path(os.environ["CODEX_CONFIG_PATH"])
        ok = self.logged_in_at_start or (self.accepts_stored_token and path.exists())
        return CliResult(success=ok, raw="" if ok else "Not logged in", code=0)

    def login_with_token(self, token: str) -> TokenLoginResult:
        self.handed_tokens.append(token)
        return self.token_login

    def discover_login_url(self):
        return None


class FakeOrchestrator:
    result = CapturedResult(token=TOKEN, source=TokenSource.NETWORK, otp_outcome=OtpOutcome.SUBMITTED)
    error: Exception = None  # type: ignore[assignment]
    runs = 0

    def __init__(self, cfg, creds, code_provider, *, cli=None) -> None:
        self.cfg = cfg
        self.creds = creds

    def run(self) -> CapturedResult:
        FakeOrchestrator.runs += 1
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def codex_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    config_path = tmp_path / "codex" / "config.json"
    monkeypatch.setenv("CODEX_CONFIG_PATH", str(config_path))
    monkeypatch.setenv("OPENAI_EMAIL", "me@example.test")
    monkeypatch.setenv("OPENAI_PASSWORD", "hunter2")
    monkeypatch.setenv("DEBUG_DIR", str(tmp_path / "debug"))
    monkeypatch.delenv("LOG_FILE", raising=False)

    FakeCodexCli.instances = []
    FakeOrchestrator.runs = 0
    monkeypatch.setattr(cli, "CodexCli", FakeCodexCli)
    monkeypatch.setattr(cli, "LoginOrchestrator", FakeOrchestrator)
    return config_path


def _main(tmp_path: Path, *args: str) -> int:
    return cli.main(["--env-file", str(tmp_path / "missing.env"), *args, "--config", str(tmp_path / "missing.yaml")])


def test_login_stores_token_owner_only(tmp_path: Path, codex_home: Path) -> None:
    assert _main(tmp_path, "login") == 0

    assert json.loads(codex_home.read_text(encoding="utf-8"))["token"] == TOKEN
    assert stat.S_IMODE(codex_home.stat().st_mode) == 0o600
    assert FakeOrchestrator.runs == 1


def test_already_logged_in_skips_web_login(tmp_path: Path, codex_home: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(FakeCodexCli, "logged_in_at_start", True)

    assert _main(tmp_path, "login") == 0
    assert FakeOrchestrator.runs == 0
    assert not codex_home.exists()


def test_force_runs_web_login_even_when_logged_in(tmp_path: Path, codex_home: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(FakeCodexCli, "logged_in_at_start", True)

    assert _main(tmp_path, "login", "--force") == 0
    assert FakeOrchestrator.runs == 1
    assert codex_home.exists()


def test_fatal_login_error_exits_non_zero(tmp_path: Path, codex_home: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(FakeOrchestrator, "error", EmailFieldNotFoundError("Email input not found"))

    assert _main(tmp_path, "login") == 1
    assert not codex_home.exists()
    # Verification still ran after the failure.
    assert FakeCodexCli.instances[0].whoami_calls == 2



def test_config_error_with_existing_login_still_verifies(
    tmp_path: Path, codex_home: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(FakeCodexCli, "logged_in_at_start", True)
    monkeypatch.setattr(FakeOrchestrator, "error", ConfigError("IMAP configuration missing (IMAP_HOST)."))

    assert _main(tmp_path, "login", "--force") == 0
    assert FakeOrchestrator.runs == 1
    assert FakeCodexCli.instances[0].whoami_calls == 2


def test_config_error_without_login_exits_non_zero(
    tmp_path: Path, codex_home: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture
) -> None:
    monkeypatch.setattr(FakeOrchestrator, "error", ConfigError("IMAP configuration missing (IMAP_HOST)."))

    assert _main(tmp_path, "login") == 1
    assert "IMAP configuration missing" in capsys.readouterr().err


def test_token_is_handed_to_cli_when_file_is_not_enough(
    tmp_path: Path, codex_home: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(FakeCodexCli, "accepts_stored_token", False)

    assert _main(tmp_path, "login") == 1

    fake = FakeCodexCli.instances[0]
    assert fake.handed_tokens == [TOKEN]
    assert codex_home.exists()


def test_missing_codex_binary_gets_non_zero_exit(tmp_path: Path, codex_home: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(FakeCodexCli, "accepts_stored_token", False)
    monkeypatch.setattr(FakeCodexCli, "token_login", TokenLoginResult(success=False, missing_binary=True))

    assert _main(tmp_path, "login") == 1


def test_web_login_without_token_exits_non_zero(tmp_path: Path, codex_home: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        FakeOrchestrator,
        "result",
        CapturedResult(token=None, source=None, otp_outcome=OtpOutcome.CODE_UNAVAILABLE),
    )

    assert _main(tmp_path, "login") == 1
    assert not codex_home.exists()
    assert FakeCodexCli.instances[0].handed_tokens == []


def test_preflight_reports_missing_cli(tmp_path: Path, codex_home: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    class MissingCli(FakeCodexCli):
        def whoami(self) -> CliResult:
            return CliResult(success=False, raw="", code=127, missing_binary=True)

    monkeypatch.setattr(cli, "CodexCli", MissingCli)

    assert _main(tmp_path, "preflight", "--skip-imap") == 1


def test_preflight_ok_without_checks(tmp_path: Path, codex_home: Path) -> None:
    assert _main(tmp_path, "preflight", "--skip-imap", "--skip-cli") == 0


def test_missing_binary_without_token_names_the_binary(
    tmp_path: Path, codex_home: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture
) -> None:
    class MissingCli(FakeCodexCli):
        def whoami(self) -> CliResult:
            self.whoami_calls += 1
            return CliResult(success=False, raw="", code=127, missing_binary=True)

    monkeypatch.setattr(cli, "CodexCli", MissingCli)
    monkeypatch.setattr(
        FakeOrchestrator,
        "result",
        CapturedResult(token=None, source=None, otp_outcome=OtpOutcome.CODE_UNAVAILABLE),
    )

    assert _main(tmp_path, "login") == 1
    err = capsys.readouterr().err
    assert "CODEX_CLI_BIN" in err
    assert "still not logged in" not in err
