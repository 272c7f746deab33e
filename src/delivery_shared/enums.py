from enum import StrEnum


class Channel(StrEnum):
    EMAIL = "email"
    SMS = "sms"
    CHAT = "chat"


class Priority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        """Numeric weight, higher is more urgent."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK: dict[str, int] = {
    Priority.LOW: 0,
    Priority.NORMAL: 1,
    Priority.HIGH: 2,
    Priority.URGENT: 3,
}


class NotificationStatus(StrEnum):
    SCHEDULED = "scheduled"
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (NotificationStatus.SENT, NotificationStatus.FAILED)


# Status -> statuses a record may be in when moving to it.  Anything not
# listed is a backward move and is refused by the store.  SENDING may be
# re-entered when the queue redelivers a job whose worker died mid-send.
NOTIFICATION_PREDECESSORS: dict[str, frozenset[str]] = {
    NotificationStatus.SCHEDULED: frozenset(),
    NotificationStatus.PENDING: frozenset({NotificationStatus.SCHEDULED}),
    NotificationStatus.SENDING: frozenset(
        {
            NotificationStatus.SCHEDULED,
            NotificationStatus.PENDING,
            NotificationStatus.SENDING,
        }
    ),
    NotificationStatus.SENT: frozenset(
        {
            NotificationStatus.SCHEDULED,
            NotificationStatus.PENDING,
            NotificationStatus.SENDING,
        }
    ),
    NotificationStatus.FAILED: frozenset(
        {
            NotificationStatus.SCHEDULED,
            NotificationStatus.PENDING,
            NotificationStatus.SENDING,
        }
    ),
}


class ReminderStatus(StrEnum):
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class ReminderType(StrEnum):
    SEVEN_DAYS = "7d"
    TWENTY_FOUR_HOURS = "24h"
    ONE_HOUR = "1h"

    @property
    def hours_before(self) -> int:
        return _REMINDER_LEAD_HOURS[self]


_REMINDER_LEAD_HOURS: dict[str, int] = {
    ReminderType.SEVEN_DAYS: 168,
    ReminderType.TWENTY_FOUR_HOURS: 24,
    ReminderType.ONE_HOUR: 1,
}
