"""
Email dispatcher interface and message type.

Exactly one dispatcher is active per process. Adapters translate an
EmailMessage into a provider call and classify every failure as transient
or permanent; provider exception types never escape an adapter.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from scheduler_service.jobs.models import DeliveryOutcome


@dataclass(frozen=True)
class EmailAttachment:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class EmailMessage:
    """Email message to be sent."""

    to: tuple[str, ...]
    subject: str
    body_text: str | None = None
    body_html: str | None = None
    from_email: str | None = None
    reply_to: str | None = None
    cc: tuple[str, ...] = ()
    bcc: tuple[str, ...] = ()
    attachments: tuple[EmailAttachment, ...] = ()
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def all_recipients(self) -> list[str]:
        return [*self.to, *self.cc, *self.bcc]


class EmailDispatcher(ABC):
    """
    Abstract interface for email delivery backends.

    Implementations exist for SMTP, SES and SendGrid.
    """

    name: str = "abstract"

    @abstractmethod
    async def send(self, message: EmailMessage) -> DeliveryOutcome:
        """
        Send an email message.

        Args:
            message: The email message to send.

        Returns:
            DeliveryOutcome: SUCCESS, TRANSIENT_FAILURE or PERMANENT_FAILURE.
        """

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True if the provider is reachable and credentials look usable."""

    async def close(self) -> None:
        """Release provider resources."""
        return None
