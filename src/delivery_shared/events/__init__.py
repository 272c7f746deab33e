from delivery_shared.events.jobs import Attachment, DeliveryJob, JobMetadata
from delivery_shared.events.lifecycle import (
    LifecycleEvent,
    LifecycleEventType,
    NotificationFailedEvent,
    NotificationSentEvent,
)

__all__ = [
    "Attachment",
    "DeliveryJob",
    "JobMetadata",
    "LifecycleEvent",
    "LifecycleEventType",
    "NotificationFailedEvent",
    "NotificationSentEvent",
]
