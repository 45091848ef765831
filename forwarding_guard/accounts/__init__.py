from .actions import AccountActions, InboxRule, MailboxEnumerator, NotFound

__all__ = ["AccountActions", "InboxRule", "MailboxEnumerator", "NotFound"]
