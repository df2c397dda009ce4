"""
Amazon SES email dispatcher (SES API via boto3).

The boto3 client is created once per process and shared by concurrent
sends; boto3 clients are thread-safe, and each call runs in a worker thread.
"""

from typing import Any

import anyio
import boto3
from botocore.client import BaseClient
from botocore.config import Config as BotoCoreConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    HTTPClientError,
    NoCredentialsError,
    NoRegionError,
    PartialCredentialsError,
)

from scheduler_service.config import WorkerSettings
from scheduler_service.email.interfaces import EmailDispatcher, EmailMessage
from scheduler_service.email.mime import build_mime_message
from scheduler_service.jobs.models import DeliveryOutcome
from scheduler_service.shared.logging import get_logger

logger = get_logger(__name__)

SES_TRANSIENT_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalFailure",
    "InternalServerError",
    "RequestTimeout",
    "RequestTimeoutException",
})

SES_PERMANENT_CODES = frozenset({
    "MessageRejected",
    "MailFromDomainNotVerified",
    "MailFromDomainNotVerifiedException",
    "ConfigurationSetDoesNotExist",
    "ConfigurationSetDoesNotExistException",
    "ConfigurationSetSendingPausedException",
    "AccountSendingPausedException",
    "InvalidClientTokenId",
    "UnrecognizedClientException",
    "SignatureDoesNotMatch",
    "IncompleteSignature",
    "MissingAuthenticationToken",
    "ExpiredToken",
    "AccessDenied",
    "AccessDeniedException",
    "ValidationError",
    "InvalidParameterValue",
})


def classify_ses_error(exc: BaseException) -> DeliveryOutcome:
    """Map a botocore failure to a delivery outcome."""
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code", "Unknown")
        reason = f"SES {code}: {error.get('Message', '')}".rstrip(": ")
        if code in SES_TRANSIENT_CODES:
            return DeliveryOutcome.transient(reason)
        if code in SES_PERMANENT_CODES:
            return DeliveryOutcome.permanent(reason)
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        if status == 429 or status >= 500:
            return DeliveryOutcome.transient(reason)
        return DeliveryOutcome.permanent(reason)

    if isinstance(exc, (NoCredentialsError, PartialCredentialsError, NoRegionError)):
        return DeliveryOutcome.permanent(f"SES configuration error: {exc}")

    if isinstance(exc, HTTPClientError):
        return DeliveryOutcome.transient(f"SES connection error: {exc}")

    if isinstance(exc, BotoCoreError):
        return DeliveryOutcome.transient(f"SES client error: {exc}")

    return DeliveryOutcome.transient(f"SES error: {exc}")


def build_ses_client(
    region: str,
    *,
    access_key_id: str | None = None,
    secret_access_key: str | None = None,
    session_token: str | None = None,
) -> BaseClient:
    """Create a boto3 SES client based on provided credentials."""
    session = boto3.session.Session(
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
        aws_session_token=session_token,
        region_name=region,
    )
    # Retries are owned by the worker's RetryPolicy
    config = BotoCoreConfig(retries={"max_attempts": 1, "mode": "standard"})
    return session.client("ses", config=config)


class SesEmailDispatcher(EmailDispatcher):
    """Sends through the SES `SendEmail` / `SendRawEmail` API."""

    name = "ses"

    def __init__(
        self,
        client: BaseClient,
        default_from: str,
        configuration_set: str | None = None,
    ) -> None:
        self._client = client
        self._default_from = default_from
        self._configuration_set = configuration_set

    @classmethod
    def from_settings(cls, settings: WorkerSettings) -> "SesEmailDispatcher":
        client = build_ses_client(
            settings.ses_region or settings.aws_region,
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
            session_token=settings.aws_session_token,
        )
        return cls(
            client=client,
            default_from=settings.default_sender,
            configuration_set=settings.ses_configuration_set,
        )

    async def send(self, message: EmailMessage) -> DeliveryOutcome:
        try:
            return await anyio.to_thread.run_sync(self._send_sync, message)
        except Exception as e:
            outcome = classify_ses_error(e)
            logger.warning(
                "ses_send_failed",
                extra={"status": outcome.status.value, "reason": outcome.reason},
            )
            return outcome

    def build_request(self, message: EmailMessage) -> dict[str, Any]:
        """Build `SendEmail` parameters for a message without attachments."""
        body: dict[str, Any] = {}
        if message.body_text:
            body["Text"] = {"Data": message.body_text, "Charset": "UTF-8"}
        if message.body_html:
            body["Html"] = {"Data": message.body_html, "Charset": "UTF-8"}

        destination: dict[str, list[str]] = {"ToAddresses": list(message.to)}
        if message.cc:
            destination["CcAddresses"] = list(message.cc)
        if message.bcc:
            destination["BccAddresses"] = list(message.bcc)

        params: dict[str, Any] = {
            "Source": message.from_email or self._default_from,
            "Destination": destination,
            "Message": {
                "Subject": {"Data": message.subject, "Charset": "UTF-8"},
                "Body": body,
            },
        }
        if message.reply_to:
            params["ReplyToAddresses"] = [message.reply_to]
        if self._configuration_set:
            params["ConfigurationSetName"] = self._configuration_set
        return params

    def _send_sync(self, message: EmailMessage) -> DeliveryOutcome:
        if message.attachments or message.headers:
            mime = build_mime_message(message, self._default_from, domain="amazonses.com")
            params: dict[str, Any] = {
                "Source": message.from_email or self._default_from,
                "Destinations": message.all_recipients,
                "RawMessage": {"Data": mime.as_bytes()},
            }
            if self._configuration_set:
                params["ConfigurationSetName"] = self._configuration_set
            response = self._client.send_raw_email(**params)
        else:
            response = self._client.send_email(**self.build_request(message))

        message_id = response["MessageId"]
        logger.info("ses_message_sent", extra={"provider_message_id": message_id})
        return DeliveryOutcome.success(provider_message_id=message_id)

    async def health_check(self) -> bool:
        try:
            await anyio.to_thread.run_sync(self._client.get_send_quota)
            return True
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"SES health check failed: {e}")
            return False
