"""Queue backends."""

from scheduler_service.queue.factory import create_queue_client
from scheduler_service.queue.interface import QueueClient

__all__ = ["QueueClient", "create_queue_client"]
