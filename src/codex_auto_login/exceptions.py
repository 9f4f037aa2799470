from __future__ import annotations


class CodexLoginError(RuntimeError):
    """
    Base class for failures the entry point turns into a single actionable message.

    `remediation` is a short hint shown to the user alongside the error.
    """

    remediation: str = ""

    def __init__(self, message: str, *, remediation: str = "") -> None:
        super().__init__(message)
        if remediation:
            self.remediation = remediation


class ConfigError(CodexLoginError):
    remediation = "Check OPENAI_EMAIL/OPENAI_PASSWORD and IMAP_HOST/IMAP_USER/IMAP_PASS in your .env."


class ElementNotFoundError(CodexLoginError):
    """
    Raised when a required login form field cannot be located after trying every known entry point.
    """

    remediation = "Set CODEX_LOGIN_URL to the page that shows the email form, then re-run with --headful --step-debug."


class EmailFieldNotFoundError(ElementNotFoundError):
    pass


class PasswordFieldNotFoundError(ElementNotFoundError):
    pass


class OtpTimeoutError(CodexLoginError, TimeoutError):
    remediation = "Check that verification emails are forwarded to the IMAP mailbox and IMAP_FROM_FILTER/IMAP_SUBJECT_FILTER match them."


class MailboxConnectionError(CodexLoginError, ConnectionError):
    remediation = "Check IMAP_HOST/IMAP_PORT/IMAP_TLS and the mailbox credentials."


class MissingBinaryError(CodexLoginError):
    remediation = "Install the missing binary or point CODEX_CLI_BIN / BROWSER_EXECUTABLE_PATH at it."
