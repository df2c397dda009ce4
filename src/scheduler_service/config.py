"""
Worker configuration with environment-driven settings.

Loaded once at process start and passed explicitly to every component.
A configuration change requires a process restart.
"""

from enum import Enum

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class QueueProviderType(str, Enum):
    """Supported queue backends."""

    SQS = "aws-sqs"
    REDIS = "redis"
    MEMORY = "memory"


class EmailProviderType(str, Enum):
    """Supported email delivery backends."""

    SES = "ses"
    SENDGRID = "sendgrid"
    SMTP = "smtp"


class WorkerSettings(BaseSettings):
    """Scheduler worker settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # Application
    app_name: str = "scheduler-service"
    app_env: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Queue backend
    queue_provider: QueueProviderType = Field(default=QueueProviderType.SQS)
    sqs_priority_queue_url: str | None = None
    sqs_regular_queue_url: str | None = None
    sqs_dead_letter_queue_url: str | None = None
    sqs_visibility_timeout: int = Field(default=300, ge=0, le=43200)
    aws_region: str = "us-east-1"
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None
    aws_session_token: str | None = None
    redis_url: str = Field(
        default="redis://localhost:6379/2",
        description="Redis connection URL for the list-based queue backend",
    )
    redis_queue_prefix: str = "scheduler:email"

    # Email backend
    email_provider: EmailProviderType = Field(default=EmailProviderType.SMTP)
    email_from: str = "noreply@kokoka.com"
    email_from_name: str = "KOKOKA"
    email_reply_to: str | None = None
    ses_region: str | None = None
    ses_configuration_set: str | None = None
    sendgrid_api_key: str | None = None
    sendgrid_api_url: str = "https://api.sendgrid.com/v3/mail/send"
    sendgrid_timeout_seconds: float = Field(default=30.0, gt=0)
    smtp_host: str | None = None
    smtp_port: int = Field(default=587, ge=1, le=65535)
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_secure: bool = False
    smtp_starttls: bool = True
    smtp_timeout_seconds: float = Field(default=30.0, gt=0)

    # Polling and retry tuning
    poll_interval: int = Field(
        default=1000,
        ge=0,
        description="Sleep between empty poll cycles, in milliseconds.",
    )
    max_messages_per_poll: int = Field(default=10, ge=1, le=10)
    wait_time_seconds: int = Field(default=20, ge=0, le=20)
    priority_wait_time_seconds: int = Field(default=1, ge=0, le=20)
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay_seconds: float = Field(default=2.0, ge=0)
    retry_max_delay_seconds: float = Field(default=900.0, ge=0)
    max_concurrency: int | None = Field(default=None, ge=1)
    priority_burst_limit: int = Field(
        default=10,
        ge=0,
        description="Consecutive non-empty priority polls before the regular queue gets a turn (0 = never).",
    )
    shutdown_grace_seconds: float = Field(default=30.0, ge=0)
    visibility_heartbeat_seconds: float = Field(default=0.0, ge=0)
    dedupe_ttl_seconds: int = Field(default=86400, ge=1)

    @field_validator("queue_provider", mode="before")
    @classmethod
    def normalize_queue_provider(cls, v: object) -> object:
        """Accept `sqs` as a shorthand for `aws-sqs`."""
        if isinstance(v, str):
            v = v.strip().lower()
            if v == "sqs":
                return QueueProviderType.SQS.value
        return v

    @field_validator("email_provider", mode="before")
    @classmethod
    def normalize_email_provider(cls, v: object) -> object:
        return v.strip().lower() if isinstance(v, str) else v

    @model_validator(mode="after")
    def check_retry_bounds(self) -> "WorkerSettings":
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError("RETRY_MAX_DELAY_SECONDS must be >= RETRY_BASE_DELAY_SECONDS")
        return self

    @property
    def effective_log_level(self) -> str:
        """DEBUG forces verbose logging; it never changes behavior."""
        return "DEBUG" if self.debug else self.log_level.upper()

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval / 1000.0

    @property
    def worker_concurrency(self) -> int:
        """Bounded worker count, never above the batch size."""
        if self.max_concurrency is None:
            return self.max_messages_per_poll
        return min(self.max_concurrency, self.max_messages_per_poll)

    @property
    def default_sender(self) -> str:
        return f'"{self.email_from_name}" <{self.email_from}>'


def get_settings() -> WorkerSettings:
    """Build settings from the current environment."""
    return WorkerSettings()
