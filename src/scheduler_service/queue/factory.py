"""
Queue client factory.

The backend is chosen once at startup from QUEUE_PROVIDER.
"""

from typing import Callable

from scheduler_service.config import QueueProviderType, WorkerSettings
from scheduler_service.errors import ConfigurationError
from scheduler_service.queue.interface import QueueClient
from scheduler_service.queue.memory import InMemoryQueueClient
from scheduler_service.queue.redis_list import RedisQueueClient
from scheduler_service.queue.sqs import SqsQueueClient
from scheduler_service.shared.logging import get_logger

logger = get_logger(__name__)


def _build_sqs(settings: WorkerSettings) -> QueueClient:
    if not (settings.sqs_priority_queue_url or settings.sqs_regular_queue_url):
        raise ConfigurationError(
            "QUEUE_PROVIDER=aws-sqs requires SQS_PRIORITY_QUEUE_URL or SQS_REGULAR_QUEUE_URL"
        )
    return SqsQueueClient.from_settings(settings)


def _build_redis(settings: WorkerSettings) -> QueueClient:
    if not settings.redis_url:
        raise ConfigurationError("QUEUE_PROVIDER=redis requires REDIS_URL")
    return RedisQueueClient.from_settings(settings)


def _build_memory(settings: WorkerSettings) -> QueueClient:
    return InMemoryQueueClient(visibility_timeout=settings.sqs_visibility_timeout)


_BUILDERS: dict[QueueProviderType, Callable[[WorkerSettings], QueueClient]] = {
    QueueProviderType.SQS: _build_sqs,
    QueueProviderType.REDIS: _build_redis,
    QueueProviderType.MEMORY: _build_memory,
}


def create_queue_client(settings: WorkerSettings) -> QueueClient:
    """
    Create the queue client selected by configuration.

    Raises:
        ConfigurationError: If the selected backend has no endpoint configured.
    """
    builder = _BUILDERS.get(settings.queue_provider)
    if builder is None:
        raise ConfigurationError(f"Unknown queue provider: {settings.queue_provider}")

    client = builder(settings)
    logger.info(
        "Queue provider resolved",
        extra={
            "queue_provider": settings.queue_provider.value,
            "priority_queue": settings.sqs_priority_queue_url,
            "regular_queue": settings.sqs_regular_queue_url,
        },
    )
    return client
