"""
Error taxonomy for the scheduler worker.

QueueError: backend unreachable or receipt handle expired.
JobValidationError: malformed job payload, always permanent.
DeliveryError: provider failure classified as transient or permanent.
"""

from enum import Enum
from typing import Any


class SchedulerServiceError(Exception):
    """Base exception for scheduler service errors."""


class ConfigurationError(SchedulerServiceError):
    """Startup configuration is incomplete or inconsistent."""


class QueueError(SchedulerServiceError):
    """Queue backend operation failed."""

    def __init__(
        self,
        message: str,
        queue_id: str | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.queue_id = queue_id
        self.error_code = error_code


class ReceiptExpiredError(QueueError):
    """Receipt handle is no longer valid; the message may be redelivered elsewhere."""


class JobValidationError(SchedulerServiceError):
    """Job payload does not match the schema of its declared type."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class DeliveryErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class DeliveryError(SchedulerServiceError):
    """Provider-classified delivery failure."""

    def __init__(self, kind: DeliveryErrorKind, reason: str) -> None:
        super().__init__(reason)
        self.kind = kind
        self.reason = reason

    @property
    def is_transient(self) -> bool:
        return self.kind is DeliveryErrorKind.TRANSIENT


class TransientDeliveryError(DeliveryError):
    def __init__(self, reason: str) -> None:
        super().__init__(DeliveryErrorKind.TRANSIENT, reason)


class PermanentDeliveryError(DeliveryError):
    def __init__(self, reason: str) -> None:
        super().__init__(DeliveryErrorKind.PERMANENT, reason)
