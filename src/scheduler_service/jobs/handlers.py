"""
Job handlers and the type -> handler registry.

A handler turns a validated payload into one provider call. Handlers are
idempotent with respect to Job.id through the DedupeStore.
"""

import asyncio
import base64
import binascii
import html
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel

from scheduler_service.email.interfaces import EmailAttachment, EmailDispatcher, EmailMessage
from scheduler_service.errors import JobValidationError
from scheduler_service.jobs.dedupe import ClaimResult, DedupeStore
from scheduler_service.jobs.models import DeliveryOutcome, DeliveryStatus, Job, JobType
from scheduler_service.jobs.schemas import SendDigestPayload, SendEmailPayload
from scheduler_service.shared.logging import get_logger

logger = get_logger(__name__)


class JobHandler(ABC):
    """Handles one job type."""

    job_type: JobType
    schema: type[BaseModel]

    @abstractmethod
    async def handle(self, job: Job, payload: Any) -> DeliveryOutcome:
        """Perform the side effect for a validated payload."""


class EmailJobHandler(JobHandler):
    """Shared dedupe-guarded send for handlers that produce one email."""

    def __init__(
        self,
        dispatcher: EmailDispatcher,
        dedupe: DedupeStore,
        default_reply_to: str | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._dedupe = dedupe
        self._default_reply_to = default_reply_to

    @abstractmethod
    def build_message(self, payload: Any) -> EmailMessage:
        """Translate the payload into an EmailMessage."""

    async def handle(self, job: Job, payload: Any) -> DeliveryOutcome:
        message = self.build_message(payload)

        claim = await self._dedupe.claim(job.id)
        if claim is ClaimResult.DUPLICATE:
            return DeliveryOutcome(DeliveryStatus.SUCCESS, reason="already delivered", duplicate=True)
        if claim is ClaimResult.IN_PROGRESS:
            return DeliveryOutcome.transient("delivery in progress by another consumer")

        try:
            outcome = await self._dispatcher.send(message)
        except asyncio.CancelledError:
            # The provider thread may still deliver; the lease expires on its own
            raise
        except Exception:
            await self._dedupe.release(job.id)
            raise

        if outcome.is_success:
            await self._dedupe.confirm(job.id)
            logger.info(
                "Email delivered",
                extra={
                    "provider": self._dispatcher.name,
                    "provider_message_id": outcome.provider_message_id,
                    "recipients": len(message.all_recipients),
                },
            )
        else:
            await self._dedupe.release(job.id)
        return outcome


class SendEmailHandler(EmailJobHandler):
    job_type = JobType.SEND_EMAIL
    schema = SendEmailPayload

    def build_message(self, payload: SendEmailPayload) -> EmailMessage:
        attachments = []
        for attachment in payload.attachments:
            try:
                content = base64.b64decode(attachment.content, validate=True)
            except (binascii.Error, ValueError) as e:
                raise JobValidationError(
                    f"attachment {attachment.filename!r} is not valid base64",
                    errors=[{"loc": ["attachments", attachment.filename], "msg": str(e)}],
                ) from e
            attachments.append(
                EmailAttachment(
                    filename=attachment.filename,
                    content=content,
                    content_type=attachment.content_type,
                )
            )

        return EmailMessage(
            to=tuple(payload.to),
            subject=payload.subject,
            body_text=payload.text,
            body_html=payload.html,
            from_email=payload.from_email,
            reply_to=payload.reply_to or self._default_reply_to,
            cc=tuple(payload.cc),
            bcc=tuple(payload.bcc),
            attachments=tuple(attachments),
            headers=dict(payload.headers),
        )


class SendDigestHandler(EmailJobHandler):
    """Joins pre-rendered sections into a single email."""

    job_type = JobType.SEND_DIGEST
    schema = SendDigestPayload

    def build_message(self, payload: SendDigestPayload) -> EmailMessage:
        text_parts = [payload.intro] if payload.intro else []
        html_parts = [f"<p>{html.escape(payload.intro)}</p>"] if payload.intro else []

        for section in payload.sections:
            if section.title:
                text_parts.append(f"{section.title}\n{'-' * len(section.title)}\n{section.text}")
                html_parts.append(f"<h2>{html.escape(section.title)}</h2>")
            else:
                text_parts.append(section.text)
            html_parts.append(section.html or f"<p>{html.escape(section.text)}</p>")

        return EmailMessage(
            to=tuple(payload.to),
            subject=payload.subject,
            body_text="\n\n".join(text_parts),
            body_html="\n".join(html_parts),
            from_email=payload.from_email,
            reply_to=self._default_reply_to,
        )


class HandlerRegistry:
    """Dispatch table from JobType to handler."""

    def __init__(self, handlers: list[JobHandler] | None = None) -> None:
        self._handlers: dict[JobType, JobHandler] = {}
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler: JobHandler) -> None:
        self._handlers[handler.job_type] = handler

    def get(self, job_type: JobType) -> JobHandler | None:
        return self._handlers.get(job_type)

    @property
    def job_types(self) -> list[JobType]:
        return list(self._handlers)


def build_default_registry(
    dispatcher: EmailDispatcher,
    dedupe: DedupeStore,
    default_reply_to: str | None = None,
) -> HandlerRegistry:
    return HandlerRegistry([
        SendEmailHandler(dispatcher, dedupe, default_reply_to),
        SendDigestHandler(dispatcher, dedupe, default_reply_to),
    ])
