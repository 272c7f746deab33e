"""The transient unit of queue work: one message to send on one channel."""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from delivery_shared.enums import Channel, Priority


class Attachment(BaseModel):
    filename: str
    content: str | None = None  # base64
    path: str | None = None
    content_type: str = "application/pdf"


class JobMetadata(BaseModel):
    """Channel extras carried alongside the message body.

    Unknown keys are kept so callers can thread correlation data
    (booking refs, reminder ids) through to the store and events.
    """

    model_config = ConfigDict(extra="allow")

    attachments: list[Attachment] = Field(default_factory=list)
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    trigger: str | None = None


class DeliveryJob(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    channel: Channel
    recipient: str
    recipient_id: str | None = None
    subject: str | None = None
    content: str | None = None
    template_ref: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    scheduled_at: datetime | None = None
    metadata: JobMetadata = Field(default_factory=JobMetadata)

    @property
    def effective_recipient_id(self) -> str:
        return self.recipient_id or self.recipient

    def is_deferred(self, now: datetime | None = None) -> bool:
        """True if the job is scheduled for a time still in the future."""
        if self.scheduled_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        scheduled = self.scheduled_at
        if scheduled.tzinfo is None:
            scheduled = scheduled.replace(tzinfo=timezone.utc)
        return scheduled > now
