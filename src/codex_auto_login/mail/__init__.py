from .poller import MailboxFilter, check_mailbox, extract_code, poll_mailbox_for_code

__all__ = ["MailboxFilter", "check_mailbox", "extract_code", "poll_mailbox_for_code"]
