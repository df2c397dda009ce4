"""Email delivery adapters."""

from scheduler_service.email.factory import create_email_dispatcher
from scheduler_service.email.interfaces import EmailAttachment, EmailDispatcher, EmailMessage

__all__ = [
    "EmailAttachment",
    "EmailDispatcher",
    "EmailMessage",
    "create_email_dispatcher",
]
