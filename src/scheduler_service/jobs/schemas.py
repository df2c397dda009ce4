"""
Payload schemas per job type.

Producers must publish payloads matching these models; anything else is
dead-lettered without reaching a provider.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator


def _as_list(v: Any) -> Any:
    """Accept a single address, a comma-separated string, or a list."""
    if v is None:
        return []
    if isinstance(v, str):
        return [part.strip() for part in v.split(",") if part.strip()]
    return v


class Attachment(BaseModel):
    """Inline attachment, content base64-encoded by the producer."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    filename: str = Field(min_length=1)
    content: str
    content_type: str = Field(default="application/octet-stream", alias="contentType")


class SendEmailPayload(BaseModel):
    """Payload for SEND_EMAIL jobs."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    to: list[EmailStr] = Field(min_length=1)
    subject: str = Field(min_length=1, max_length=998)
    text: str | None = None
    html: str | None = None
    from_email: str | None = Field(default=None, alias="from")
    reply_to: EmailStr | None = Field(default=None, alias="replyTo")
    cc: list[EmailStr] = Field(default_factory=list)
    bcc: list[EmailStr] = Field(default_factory=list)
    attachments: list[Attachment] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("to", "cc", "bcc", mode="before")
    @classmethod
    def split_addresses(cls, v: Any) -> Any:
        return _as_list(v)

    @model_validator(mode="after")
    def require_body(self) -> "SendEmailPayload":
        if not (self.text or self.html):
            raise ValueError("either text or html body is required")
        return self


class DigestSection(BaseModel):
    """One pre-rendered entry of a digest."""

    model_config = ConfigDict(extra="ignore")

    title: str | None = None
    text: str = Field(min_length=1)
    html: str | None = None


class SendDigestPayload(BaseModel):
    """Payload for SEND_DIGEST jobs: several sections delivered as one email."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    to: list[EmailStr] = Field(min_length=1)
    subject: str = Field(min_length=1, max_length=998)
    sections: list[DigestSection] = Field(min_length=1)
    intro: str | None = None
    from_email: str | None = Field(default=None, alias="from")

    @field_validator("to", mode="before")
    @classmethod
    def split_addresses(cls, v: Any) -> Any:
        return _as_list(v)
