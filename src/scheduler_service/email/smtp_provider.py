"""
SMTP email dispatcher.

Supports implicit TLS, STARTTLS and authentication. smtplib is blocking,
so each send runs in a worker thread.
"""

import smtplib
import ssl
from typing import Callable

import anyio

from scheduler_service.config import WorkerSettings
from scheduler_service.email.interfaces import EmailDispatcher, EmailMessage
from scheduler_service.email.mime import build_mime_message
from scheduler_service.jobs.models import DeliveryOutcome
from scheduler_service.shared.logging import get_logger

logger = get_logger(__name__)

_THROTTLE_MARKERS = ("throttl", "rate limit", "too many", "try again later")


def classify_smtp_error(exc: BaseException) -> DeliveryOutcome:
    """Map an smtplib/socket failure to a delivery outcome."""
    if isinstance(exc, smtplib.SMTPAuthenticationError):
        return DeliveryOutcome.permanent(f"SMTP authentication failed: {exc.smtp_code}")

    if isinstance(exc, smtplib.SMTPRecipientsRefused):
        codes = [code for code, _ in exc.recipients.values()]
        if codes and all(code >= 500 for code in codes):
            return DeliveryOutcome.permanent(
                f"SMTP recipients refused: {', '.join(sorted(exc.recipients))}"
            )
        return DeliveryOutcome.transient("SMTP recipients temporarily refused")

    if isinstance(exc, smtplib.SMTPNotSupportedError):
        return DeliveryOutcome.permanent(f"SMTP server does not support requested feature: {exc}")

    if isinstance(exc, smtplib.SMTPServerDisconnected):
        return DeliveryOutcome.transient("SMTP server disconnected")

    if isinstance(exc, smtplib.SMTPResponseException):
        message = exc.smtp_error.decode("utf-8", "replace") if isinstance(exc.smtp_error, bytes) else str(exc.smtp_error)
        reason = f"SMTP {exc.smtp_code}: {message}"
        if any(marker in message.lower() for marker in _THROTTLE_MARKERS):
            return DeliveryOutcome.transient(reason)
        if 500 <= exc.smtp_code < 600:
            return DeliveryOutcome.permanent(reason)
        return DeliveryOutcome.transient(reason)

    if isinstance(exc, ssl.SSLError):
        return DeliveryOutcome.permanent(f"SMTP TLS configuration error: {exc}")

    if isinstance(exc, (TimeoutError, ConnectionError, OSError)):
        return DeliveryOutcome.transient(f"SMTP connection error: {exc}")

    return DeliveryOutcome.transient(f"SMTP error: {exc}")


class SmtpEmailDispatcher(EmailDispatcher):
    """
    SMTP-based email dispatcher.

    A fresh connection is opened per message so concurrent sends never share
    connection state.
    """

    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        use_ssl: bool = False,
        use_starttls: bool = True,
        timeout: float = 30.0,
        default_from: str = "noreply@localhost",
        smtp_factory: Callable[..., smtplib.SMTP] | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._use_ssl = use_ssl
        self._use_starttls = use_starttls and not use_ssl
        self._timeout = timeout
        self._default_from = default_from
        self._smtp_factory = smtp_factory

    @classmethod
    def from_settings(cls, settings: WorkerSettings) -> "SmtpEmailDispatcher":
        return cls(
            host=settings.smtp_host or "localhost",
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            use_ssl=settings.smtp_secure,
            use_starttls=settings.smtp_starttls,
            timeout=settings.smtp_timeout_seconds,
            default_from=settings.default_sender,
        )

    async def send(self, message: EmailMessage) -> DeliveryOutcome:
        """Send email via SMTP in a worker thread."""
        try:
            return await anyio.to_thread.run_sync(self._send_sync, message)
        except Exception as e:
            outcome = classify_smtp_error(e)
            logger.warning(
                "smtp_send_failed",
                extra={"status": outcome.status.value, "reason": outcome.reason},
            )
            return outcome

    def _connect(self) -> smtplib.SMTP:
        if self._smtp_factory is not None:
            return self._smtp_factory(self._host, self._port, timeout=self._timeout)
        if self._use_ssl:
            return smtplib.SMTP_SSL(
                self._host,
                self._port,
                timeout=self._timeout,
                context=ssl.create_default_context(),
            )
        return smtplib.SMTP(self._host, self._port, timeout=self._timeout)

    def _send_sync(self, message: EmailMessage) -> DeliveryOutcome:
        msg = build_mime_message(message, self._default_from, domain=self._host)
        with self._connect() as server:
            if self._use_starttls:
                server.starttls(context=ssl.create_default_context())
            if self._username and self._password:
                server.login(self._username, self._password)
            # Bcc recipients are envelope-only
            server.send_message(msg, to_addrs=message.all_recipients)

        message_id = msg["Message-ID"]
        logger.info("smtp_message_sent", extra={"provider_message_id": message_id})
        return DeliveryOutcome.success(provider_message_id=message_id)

    async def health_check(self) -> bool:
        """Check SMTP server connectivity."""
        try:
            return await anyio.to_thread.run_sync(self._health_check_sync)
        except Exception as e:
            logger.warning(f"SMTP health check failed: {e}")
            return False

    def _health_check_sync(self) -> bool:
        with self._connect() as server:
            code, _ = server.noop()
        return code == 250
