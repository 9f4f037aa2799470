from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class LoginCredentials:
    email: str
    password: str

    def __repr__(self) -> str:
        return f"LoginCredentials(email={self.email!r}, password='***')"


class LoginState(enum.Enum):
    DISCOVER_URL = "discover_url"
    NAVIGATE = "navigate"
    DISMISS_CONSENT = "dismiss_consent"
    REVEAL_EMAIL_FORM = "reveal_email_form"
    LOCATE_EMAIL = "locate_email"
    SUBMIT_EMAIL = "submit_email"
    LOCATE_PASSWORD = "locate_password"
    SUBMIT_PASSWORD = "submit_password"
    DETECT_OTP_CHALLENGE = "detect_otp_challenge"
    RETRIEVE_OTP = "retrieve_otp"
    SUBMIT_OTP = "submit_otp"
    VALIDATE_OTP = "validate_otp"
    AWAIT_TOKEN = "await_token"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TokenSource(str, enum.Enum):
    NETWORK = "network"
    DOM = "dom"
    URL = "url"


class OtpOutcome(str, enum.Enum):
    NOT_REQUESTED = "not_requested"
    SUBMITTED = "submitted"
    RESUBMITTED = "resubmitted"
    # The page rejected the code and no different code arrived; the server may still have accepted it.
    REJECTED_NO_FRESH_CODE = "rejected_no_fresh_code"
    CODE_UNAVAILABLE = "code_unavailable"


@dataclass(frozen=True)
class TokenCandidate:
    token: Optional[str]
    source: Optional[TokenSource]
    last_url: str = ""


@dataclass(frozen=True)
class CapturedResult:
    token: Optional[str]
    source: Optional[TokenSource]
    last_url: str = ""
    otp_outcome: OtpOutcome = OtpOutcome.NOT_REQUESTED

    @property
    def succeeded(self) -> bool:
        return bool(self.token)

    def __repr__(self) -> str:
        tok = "***" if self.token else None
        return (
            f"CapturedResult(token={tok!r}, source={self.source!r}, "
            f"last_url={self.last_url!r}, otp_outcome={self.otp_outcome!r})"
        )


@dataclass(frozen=True)
class CliResult:
    success: bool
    raw: str
    code: int
    missing_binary: bool = False


@dataclass(frozen=True)
class TokenLoginResult:
    success: bool
    missing_binary: bool = False
