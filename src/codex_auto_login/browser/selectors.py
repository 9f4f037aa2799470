from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class LoginSelectors:
    """
    The login UI changes often; keep every selector and text hook here, in priority order.

    Selectors are tried first-to-last against the page and each of its frames; labels are matched
    case-insensitively as substrings of a control's visible text.
    """

    # Email step
    email_inputs: tuple[str, ...] = (
        "input[type=email]",
        "input[name=email]",
        "input#email",
        "input[autocomplete=email]",
        "input[name=username]",
        "input[autocomplete=username]",
    )
    # Landing pages that hide the email form behind a button.
    reveal_email_labels: tuple[str, ...] = ("continue with email", "log in", "sign in")

    # Password step
    password_inputs: tuple[str, ...] = (
        "input[type=password]",
        "input[name=password]",
        "input#password",
        "input[autocomplete=current-password]",
    )
    submit_labels: tuple[str, ...] = ("continue", "next", "sign in", "log in")

    # OTP challenge
    otp_inputs: tuple[str, ...] = (
        "input[name=code]",
        "input[autocomplete=one-time-code]",
        "input[type=tel]",
        "input[data-code-input]",
        'input[placeholder*="code" i]',
    )
    # A segmented code widget renders one input per digit.
    otp_segment_inputs: str = "input[autocomplete=one-time-code], input[data-code-input], input[type=tel]"
    otp_segment_min_count: int = 4
    # Re-entry after a rejected code; narrower than `otp_inputs` so placeholder text boxes aren't hit.
    otp_retry_inputs: tuple[str, ...] = (
        "input[name=code]",
        "input[autocomplete=one-time-code]",
        "input[type=tel]",
    )
    otp_submit_labels: tuple[str, ...] = ("continue", "verify", "submit")
    otp_rejected_texts: tuple[str, ...] = ("invalid code", "incorrect code")

    # Consent / cookie banners
    consent_labels: tuple[str, ...] = (
        "accept all",
        "allow all",
        "accept",
        "i agree",
        "agree",
        "got it",
    )

    # Controls that `click_by_label` considers clickable.
    clickable: str = "button, input[type=submit], input[type=button], a, [role=button]"
