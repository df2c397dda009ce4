"""
Email dispatcher factory.

The active adapter is chosen once at startup from EMAIL_PROVIDER; the rest
of the worker only ever sees the EmailDispatcher interface.
"""

from typing import Callable

from scheduler_service.config import EmailProviderType, WorkerSettings
from scheduler_service.email.interfaces import EmailDispatcher
from scheduler_service.email.sendgrid_provider import SendGridEmailDispatcher
from scheduler_service.email.ses_provider import SesEmailDispatcher
from scheduler_service.email.smtp_provider import SmtpEmailDispatcher
from scheduler_service.errors import ConfigurationError
from scheduler_service.shared.logging import get_logger

logger = get_logger(__name__)


def _mask(s: str | None, keep: int = 4) -> str:
    if not s:
        return ""
    if len(s) <= keep:
        return "*" * len(s)
    return f"{s[:keep]}***"


def _build_smtp(settings: WorkerSettings) -> EmailDispatcher:
    if not settings.smtp_host:
        raise ConfigurationError("EMAIL_PROVIDER=smtp requires SMTP_HOST")
    return SmtpEmailDispatcher.from_settings(settings)


def _build_ses(settings: WorkerSettings) -> EmailDispatcher:
    return SesEmailDispatcher.from_settings(settings)


def _build_sendgrid(settings: WorkerSettings) -> EmailDispatcher:
    if not settings.sendgrid_api_key:
        raise ConfigurationError("EMAIL_PROVIDER=sendgrid requires SENDGRID_API_KEY")
    return SendGridEmailDispatcher.from_settings(settings)


_BUILDERS: dict[EmailProviderType, Callable[[WorkerSettings], EmailDispatcher]] = {
    EmailProviderType.SMTP: _build_smtp,
    EmailProviderType.SES: _build_ses,
    EmailProviderType.SENDGRID: _build_sendgrid,
}


def create_email_dispatcher(settings: WorkerSettings) -> EmailDispatcher:
    """
    Create the email dispatcher selected by configuration.

    Raises:
        ConfigurationError: If the selected provider lacks its credentials.
    """
    builder = _BUILDERS.get(settings.email_provider)
    if builder is None:
        raise ConfigurationError(f"Unknown email provider: {settings.email_provider}")

    logger.info(
        "Email provider resolved",
        extra={
            "email_provider": settings.email_provider.value,
            "email_from": settings.email_from,
            "smtp_host": settings.smtp_host,
            "smtp_user": _mask(settings.smtp_user),
            "sendgrid_api_key": _mask(settings.sendgrid_api_key),
        },
    )
    return builder(settings)
