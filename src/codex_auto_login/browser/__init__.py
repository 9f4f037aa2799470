from .driver import BrowserSession, click_by_label, dismiss_consent, launch_session, locate_field, wait_for_field
from .selectors import LoginSelectors
from .sniffer import TokenSniffer

__all__ = [
    "BrowserSession",
    "LoginSelectors",
    "TokenSniffer",
    "click_by_label",
    "dismiss_consent",
    "launch_session",
    "locate_field",
    "wait_for_field",
]
