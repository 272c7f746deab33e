"""Lifecycle events emitted once a delivery job reaches a terminal outcome."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import StrEnum
from uuid import UUID

from pydantic import BaseModel, Field

from delivery_shared.enums import Channel


class LifecycleEventType(StrEnum):
    SENT = "notification.sent"
    FAILED = "notification.failed"


class LifecycleEvent(BaseModel):
    event_type: LifecycleEventType
    notification_id: UUID
    recipient_id: str
    channel: Channel
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attempts: int
    delivery_time_ms: float
    cost: Decimal = Decimal("0")
    provider: str | None = None


class NotificationSentEvent(LifecycleEvent):
    event_type: LifecycleEventType = LifecycleEventType.SENT
    external_message_id: str | None = None


class NotificationFailedEvent(LifecycleEvent):
    event_type: LifecycleEventType = LifecycleEventType.FAILED
    error: str
    error_kind: str | None = None
