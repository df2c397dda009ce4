"""
Amazon SQS queue client.

PRIORITY and REGULAR are two separate queue URLs. boto3 calls are blocking
and run in worker threads; the client itself is shared read-only.
"""

import math
from typing import Any, Callable

import anyio
import boto3
from botocore.client import BaseClient
from botocore.config import Config as BotoCoreConfig
from botocore.exceptions import BotoCoreError, ClientError

from scheduler_service.config import WorkerSettings
from scheduler_service.errors import QueueError, ReceiptExpiredError
from scheduler_service.jobs.models import DeadLetterRecord, Job, QueuePriority, decode_job
from scheduler_service.queue.interface import QueueClient
from scheduler_service.shared.logging import get_logger

logger = get_logger(__name__)

# SQS hard limit for ChangeMessageVisibility
MAX_VISIBILITY_TIMEOUT = 43200
MAX_DELAY_SECONDS = 900

_EXPIRED_RECEIPT_CODES = frozenset({
    "ReceiptHandleIsInvalid",
    "AWS.SimpleQueueService.ReceiptHandleIsInvalid",
    "MessageNotInflight",
    "AWS.SimpleQueueService.MessageNotInflight",
})


def build_sqs_client(
    queue_region: str,
    *,
    access_key_id: str | None = None,
    secret_access_key: str | None = None,
    session_token: str | None = None,
    boto_config_factory: Callable[[], BotoCoreConfig] | None = None,
) -> BaseClient:
    """Create a boto3 SQS client based on provided credentials."""
    session = boto3.session.Session(
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
        aws_session_token=session_token,
        region_name=queue_region,
    )
    config = boto_config_factory() if boto_config_factory else BotoCoreConfig()
    return session.client("sqs", config=config)


def _is_expired_receipt(exc: ClientError) -> bool:
    error = exc.response.get("Error", {})
    code = error.get("Code", "")
    if code in _EXPIRED_RECEIPT_CODES:
        return True
    return code == "InvalidParameterValue" and "receipt handle" in error.get("Message", "").lower()


class SqsQueueClient(QueueClient):
    """Long-polling SQS consumer with delete/visibility semantics."""

    name = "aws-sqs"

    def __init__(
        self,
        client: BaseClient,
        queue_urls: dict[QueuePriority, str | None],
        *,
        visibility_timeout: int = 300,
        dead_letter_queue_url: str | None = None,
    ) -> None:
        self._client = client
        self._queue_urls = queue_urls
        self._visibility_timeout = visibility_timeout
        self._dead_letter_queue_url = dead_letter_queue_url

    @classmethod
    def from_settings(cls, settings: WorkerSettings) -> "SqsQueueClient":
        client = build_sqs_client(
            settings.aws_region,
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
            session_token=settings.aws_session_token,
        )
        return cls(
            client=client,
            queue_urls={
                QueuePriority.PRIORITY: settings.sqs_priority_queue_url,
                QueuePriority.REGULAR: settings.sqs_regular_queue_url,
            },
            visibility_timeout=settings.sqs_visibility_timeout,
            dead_letter_queue_url=settings.sqs_dead_letter_queue_url,
        )

    def is_configured(self, queue_id: QueuePriority) -> bool:
        return bool(self._queue_urls.get(queue_id))

    def _url(self, queue_id: QueuePriority) -> str:
        url = self._queue_urls.get(queue_id)
        if not url:
            raise QueueError(f"{queue_id.value} queue URL not configured", queue_id=queue_id.value)
        return url

    async def _call(self, queue_id: QueuePriority | None, operation: str, **params: Any) -> dict[str, Any]:
        """Run one boto3 operation in a worker thread, mapping failures to QueueError."""
        method = getattr(self._client, operation)
        label = queue_id.value if queue_id else None
        try:
            return await anyio.to_thread.run_sync(lambda: method(**params))
        except ClientError as e:
            error = e.response.get("Error", {})
            code = error.get("Code")
            if _is_expired_receipt(e):
                raise ReceiptExpiredError(
                    f"SQS {operation} failed: receipt handle expired",
                    queue_id=label,
                    error_code=code,
                ) from e
            raise QueueError(
                f"SQS {operation} failed: {code}: {error.get('Message', '')}",
                queue_id=label,
                error_code=code,
            ) from e
        except BotoCoreError as e:
            raise QueueError(f"SQS {operation} failed: {e}", queue_id=label) from e

    async def poll_batch(
        self,
        queue_id: QueuePriority,
        max_messages: int,
        wait_time_seconds: int,
    ) -> list[Job]:
        """Receive up to max_messages messages via long polling."""
        response = await self._call(
            queue_id,
            "receive_message",
            QueueUrl=self._url(queue_id),
            MaxNumberOfMessages=max(1, min(max_messages, 10)),
            WaitTimeSeconds=wait_time_seconds,
            VisibilityTimeout=self._visibility_timeout,
            AttributeNames=["ApproximateReceiveCount"],
            MessageAttributeNames=["All"],
        )
        jobs: list[Job] = []
        for message in response.get("Messages", []):
            receive_count = int(message.get("Attributes", {}).get("ApproximateReceiveCount", 1))
            jobs.append(
                decode_job(
                    message.get("Body", ""),
                    message_id=message["MessageId"],
                    receipt_handle=message["ReceiptHandle"],
                    priority=queue_id,
                    min_attempt=max(receive_count - 1, 0),
                )
            )
        if jobs:
            logger.debug(
                "sqs_messages_received",
                extra={"count": len(jobs), "queue": queue_id.value},
            )
        return jobs

    async def ack(self, queue_id: QueuePriority, receipt_handle: str) -> None:
        """Delete a processed message via its receipt handle."""
        await self._call(
            queue_id,
            "delete_message",
            QueueUrl=self._url(queue_id),
            ReceiptHandle=receipt_handle,
        )

    async def extend_visibility(
        self,
        queue_id: QueuePriority,
        receipt_handle: str,
        extra_seconds: int,
    ) -> None:
        await self._call(
            queue_id,
            "change_message_visibility",
            QueueUrl=self._url(queue_id),
            ReceiptHandle=receipt_handle,
            VisibilityTimeout=min(int(extra_seconds), MAX_VISIBILITY_TIMEOUT),
        )

    async def requeue(self, job: Job, delay_seconds: float, next_attempt: int) -> None:
        """Hide the message for the backoff delay.

        SQS bodies are immutable; the next attempt number is recovered from
        ApproximateReceiveCount on redelivery.
        """
        await self._call(
            job.priority,
            "change_message_visibility",
            QueueUrl=self._url(job.priority),
            ReceiptHandle=job.receipt_handle,
            VisibilityTimeout=min(math.ceil(delay_seconds), MAX_VISIBILITY_TIMEOUT),
        )

    async def publish(
        self,
        queue_id: QueuePriority,
        body: str,
        delay_seconds: int = 0,
        deduplication_id: str | None = None,
    ) -> str:
        url = self._url(queue_id)
        params: dict[str, Any] = {"QueueUrl": url, "MessageBody": body}
        if url.endswith(".fifo"):
            params["MessageGroupId"] = queue_id.value
            if deduplication_id:
                params["MessageDeduplicationId"] = deduplication_id
        elif delay_seconds:
            params["DelaySeconds"] = max(0, min(int(delay_seconds), MAX_DELAY_SECONDS))
        response = await self._call(queue_id, "send_message", **params)
        return response["MessageId"]

    async def publish_dead_letter(self, record: DeadLetterRecord) -> None:
        if not self._dead_letter_queue_url:
            logger.warning(
                "sqs_dead_letter_queue_not_configured",
                extra={"job_id": record.job_id, "category": record.category.value},
            )
            return
        await self._call(
            None,
            "send_message",
            QueueUrl=self._dead_letter_queue_url,
            MessageBody=record.to_json(),
            MessageAttributes={
                "category": {"DataType": "String", "StringValue": record.category.value},
                "source_queue": {"DataType": "String", "StringValue": record.queue.value},
            },
        )

    async def healthcheck(self, queue_id: QueuePriority) -> dict[str, Any]:
        url = self._queue_urls.get(queue_id)
        if not url:
            return {"status": "error", "error": "Queue URL not configured"}
        try:
            response = await self._call(
                queue_id,
                "get_queue_attributes",
                QueueUrl=url,
                AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
            )
        except QueueError as e:
            return {"status": "error", "error": str(e)}
        return {"status": "ok", "attributes": response.get("Attributes", {})}
