"""Delivery store: models, repositories, engine/session utilities."""

from delivery_shared.db.base import Base, create_db_engine, create_session_factory
from delivery_shared.db.models import Notification, ScheduledReminder
from delivery_shared.db.repositories import (
    NotificationRepository,
    ScheduledReminderRepository,
)

__all__ = [
    "Base",
    "create_db_engine",
    "create_session_factory",
    "Notification",
    "ScheduledReminder",
    "NotificationRepository",
    "ScheduledReminderRepository",
]
