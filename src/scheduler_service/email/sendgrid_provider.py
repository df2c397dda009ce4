"""
SendGrid email dispatcher (v3 Mail Send API over httpx).
"""

import base64
from email.utils import parseaddr
from typing import Any

import httpx

from scheduler_service.config import WorkerSettings
from scheduler_service.email.interfaces import EmailDispatcher, EmailMessage
from scheduler_service.jobs.models import DeliveryOutcome
from scheduler_service.shared.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


def _address(value: str) -> dict[str, str]:
    name, email = parseaddr(value)
    entry = {"email": email or value}
    if name:
        entry["name"] = name
    return entry


def classify_sendgrid_response(response: httpx.Response) -> DeliveryOutcome:
    """Map a Mail Send HTTP response to a delivery outcome."""
    if response.status_code in (200, 202):
        return DeliveryOutcome.success(provider_message_id=response.headers.get("X-Message-Id"))

    try:
        errors = response.json().get("errors", [])
        detail = "; ".join(str(err.get("message", "")) for err in errors if isinstance(err, dict))
    except ValueError:
        detail = response.text[:200]
    reason = f"SendGrid HTTP {response.status_code}: {detail}".rstrip(": ")

    if response.status_code == 429 or response.status_code >= 500:
        return DeliveryOutcome.transient(reason)
    # 400 malformed/invalid recipient, 401/403 credentials, 413 payload too large
    return DeliveryOutcome.permanent(reason)


class SendGridEmailDispatcher(EmailDispatcher):
    """SendGrid dispatcher; the HTTP client is shared across concurrent sends."""

    name = "sendgrid"

    def __init__(
        self,
        api_key: str,
        default_from: str,
        api_url: str = DEFAULT_SENDGRID_URL,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._default_from = default_from
        self._api_url = api_url
        self._timeout = timeout
        self._client = http_client

    @classmethod
    def from_settings(cls, settings: WorkerSettings) -> "SendGridEmailDispatcher":
        return cls(
            api_key=settings.sendgrid_api_key or "",
            default_from=settings.default_sender,
            api_url=settings.sendgrid_api_url,
            timeout=settings.sendgrid_timeout_seconds,
        )

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=httpx.Timeout(self._timeout),
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def build_payload(self, message: EmailMessage) -> dict[str, Any]:
        personalization: dict[str, Any] = {"to": [_address(a) for a in message.to]}
        if message.cc:
            personalization["cc"] = [_address(a) for a in message.cc]
        if message.bcc:
            personalization["bcc"] = [_address(a) for a in message.bcc]

        content = []
        if message.body_text:
            content.append({"type": "text/plain", "value": message.body_text})
        if message.body_html:
            content.append({"type": "text/html", "value": message.body_html})

        payload: dict[str, Any] = {
            "personalizations": [personalization],
            "from": _address(message.from_email or self._default_from),
            "subject": message.subject,
            "content": content,
        }
        if message.reply_to:
            payload["reply_to"] = _address(message.reply_to)
        if message.headers:
            payload["headers"] = dict(message.headers)
        if message.attachments:
            payload["attachments"] = [
                {
                    "content": base64.b64encode(a.content).decode("ascii"),
                    "filename": a.filename,
                    "type": a.content_type,
                    "disposition": "attachment",
                }
                for a in message.attachments
            ]
        return payload

    async def send(self, message: EmailMessage) -> DeliveryOutcome:
        client = self._get_client()
        try:
            response = await client.post(
                self._api_url,
                json=self.build_payload(message),
            )
        except httpx.TimeoutException as e:
            return DeliveryOutcome.transient(f"SendGrid timeout: {e}")
        except httpx.HTTPError as e:
            return DeliveryOutcome.transient(f"SendGrid connection error: {e}")

        outcome = classify_sendgrid_response(response)
        if outcome.is_success:
            logger.info(
                "sendgrid_message_sent",
                extra={"provider_message_id": outcome.provider_message_id},
            )
        else:
            logger.warning(
                "sendgrid_send_failed",
                extra={"status": outcome.status.value, "reason": outcome.reason},
            )
        return outcome

    async def health_check(self) -> bool:
        """Verify the API key against the scopes endpoint."""
        client = self._get_client()
        base = self._api_url.split("/v3/")[0]
        try:
            response = await client.get(f"{base}/v3/scopes")
        except httpx.HTTPError as e:
            logger.warning(f"SendGrid health check failed: {e}")
            return False
        return response.status_code == 200
