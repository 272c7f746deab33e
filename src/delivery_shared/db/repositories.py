"""Data access repositories with constructor-injected sessions.

Status changes go through conditional UPDATEs keyed by id and the
expected prior status, so two workers racing on the same row cannot move
it backwards.  Callers own the transaction and commit.
"""

import datetime
import logging
from collections.abc import Collection
from typing import Any
from uuid import UUID

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.util import identity_key

from delivery_shared.clock import utcnow
from delivery_shared.db.models import Notification, ScheduledReminder
from delivery_shared.enums import (
    NOTIFICATION_PREDECESSORS,
    NotificationStatus,
    Priority,
    ReminderStatus,
)

logger = logging.getLogger(__name__)

_PRIORITY_ORDER = case(
    {priority.value: priority.rank for priority in Priority},
    value=ScheduledReminder.priority,
    else_=Priority.NORMAL.rank,
)


def _applied(session: Session, stmt: Any, model: type, row_id: UUID) -> bool:
    """Run a conditional UPDATE; on a match, expire the cached instance.

    Bulk UPDATEs bypass the identity map, so an object already loaded in
    this session would otherwise keep its pre-update column values.
    """
    if session.execute(stmt).rowcount != 1:
        return False
    cached = session.identity_map.get(identity_key(model, row_id))
    if cached is not None:
        session.expire(cached)
    return True


class NotificationRepository:
    """Data access for the notifications table."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def create(self, notification: Notification) -> Notification:
        """Add a new notification and flush to populate server defaults."""
        self._session.add(notification)
        self._session.flush()
        return notification

    def find_by_id(self, notification_id: UUID) -> Notification | None:
        return self._session.get(Notification, notification_id)

    def update(self, notification_id: UUID, **fields: Any) -> Notification | None:
        """Unconditionally set *fields* on a notification.

        Returns None if the row does not exist.  Prefer :meth:`transition`
        for anything touching ``status``.
        """
        notification = self.find_by_id(notification_id)
        if notification is None:
            return None
        for name, value in fields.items():
            setattr(notification, name, value)
        self._session.flush()
        return notification

    def transition(
        self,
        notification_id: UUID,
        status: NotificationStatus,
        *,
        increment_attempts: bool = False,
        **fields: Any,
    ) -> bool:
        """Move a notification forward to *status*.

        The UPDATE only matches rows whose current status is a legal
        predecessor of *status*.  Returns True if a row was changed.
        """
        values: dict[str, Any] = {"status": status, **fields}
        if increment_attempts:
            values["attempts"] = Notification.attempts + 1

        stmt = (
            update(Notification)
            .where(
                Notification.id == notification_id,
                Notification.status.in_(NOTIFICATION_PREDECESSORS[status]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return _applied(self._session, stmt, Notification, notification_id)

    def transition_scheduled_to_pending(self, notification_id: UUID) -> bool:
        return self.transition(notification_id, NotificationStatus.PENDING)

    def mark_as_sending(self, notification_id: UUID) -> bool:
        return self.transition(
            notification_id, NotificationStatus.SENDING, increment_attempts=True
        )

    def mark_as_sent(
        self,
        notification_id: UUID,
        *,
        external_message_id: str | None = None,
        provider: str | None = None,
        provider_response: dict[str, Any] | None = None,
        cost: Any = None,
    ) -> bool:
        return self.transition(
            notification_id,
            NotificationStatus.SENT,
            sent_at=utcnow(),
            external_message_id=external_message_id,
            provider=provider,
            provider_response=provider_response,
            cost=cost,
        )

    def mark_as_failed(
        self,
        notification_id: UUID,
        error: str,
        *,
        provider_response: dict[str, Any] | None = None,
    ) -> bool:
        return self.transition(
            notification_id,
            NotificationStatus.FAILED,
            failed_at=utcnow(),
            last_error=error,
            provider_response=provider_response,
        )

    def find_scheduled_ready(
        self, limit: int = 100, now: datetime.datetime | None = None
    ) -> list[Notification]:
        """SCHEDULED notifications whose send time has arrived, oldest first."""
        now = now or utcnow()
        stmt = (
            select(Notification)
            .where(
                Notification.status == NotificationStatus.SCHEDULED,
                Notification.scheduled_at <= now,
            )
            .order_by(Notification.scheduled_at.asc())
            .limit(limit)
        )
        return list(self._session.scalars(stmt).all())

    def find_stale_sending(
        self,
        older_than: datetime.timedelta,
        now: datetime.datetime | None = None,
        limit: int = 100,
    ) -> list[Notification]:
        """Notifications left in SENDING longer than *older_than*.

        Such rows belong to jobs a worker picked up and never finalized.
        """
        cutoff = (now or utcnow()) - older_than
        stmt = (
            select(Notification)
            .where(
                Notification.status == NotificationStatus.SENDING,
                Notification.updated_at < cutoff,
            )
            .order_by(Notification.updated_at.asc())
            .limit(limit)
        )
        return list(self._session.scalars(stmt).all())

    def get_stats(self) -> dict[str, Any]:
        """Counts per status and channel plus the overall sent ratio."""
        by_status = dict(
            self._session.execute(
                select(Notification.status, func.count()).group_by(
                    Notification.status
                )
            ).all()
        )
        by_channel = dict(
            self._session.execute(
                select(Notification.channel, func.count()).group_by(
                    Notification.channel
                )
            ).all()
        )
        total = sum(by_status.values())
        sent = by_status.get(NotificationStatus.SENT, 0)
        return {
            "total": total,
            "by_status": by_status,
            "by_channel": by_channel,
            "success_rate": round(sent / total * 100, 2) if total else 0.0,
        }


class ScheduledReminderRepository:
    """Data access for scheduled booking reminders.

    Lifecycle: SCHEDULED -> PROCESSING -> SENT / FAILED / CANCELLED / EXPIRED.
    A PROCESSING reminder whose channels all failed may be released back
    to SCHEDULED with a ``next_retry_at`` while attempts remain.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    def create(self, reminder: ScheduledReminder) -> ScheduledReminder:
        self._session.add(reminder)
        self._session.flush()
        logger.info(
            "Scheduled reminder created",
            extra={
                "reminder_id": str(reminder.id),
                "reminder_type": reminder.reminder_type,
                "scheduled_date": reminder.scheduled_date.isoformat(),
            },
        )
        return reminder

    def find_by_id(self, reminder_id: UUID) -> ScheduledReminder | None:
        return self._session.get(ScheduledReminder, reminder_id)

    def update(self, reminder_id: UUID, **fields: Any) -> ScheduledReminder | None:
        reminder = self.find_by_id(reminder_id)
        if reminder is None:
            logger.warning(
                "Update of a reminder that no longer exists",
                extra={"reminder_id": str(reminder_id)},
            )
            return None
        for name, value in fields.items():
            setattr(reminder, name, value)
        self._session.flush()
        return reminder

    def _conditional(
        self,
        reminder_id: UUID,
        expected: Collection[str],
        values: dict[str, Any],
    ) -> bool:
        stmt = (
            update(ScheduledReminder)
            .where(
                ScheduledReminder.id == reminder_id,
                ScheduledReminder.status.in_(expected),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return _applied(self._session, stmt, ScheduledReminder, reminder_id)

    def _guarded(
        self,
        reminder_id: UUID,
        expected: ReminderStatus,
        target: ReminderStatus,
        values: dict[str, Any],
    ) -> bool:
        """Apply a single-predecessor transition, warning on a mismatch."""
        reminder = self.find_by_id(reminder_id)
        if reminder is None:
            logger.warning(
                "Reminder not found for transition",
                extra={"reminder_id": str(reminder_id), "target": target},
            )
            return False
        if reminder.status == expected and self._conditional(
            reminder_id, [expected], {"status": target, **values}
        ):
            return True
        logger.warning(
            "Reminder transition skipped, unexpected current status",
            extra={
                "reminder_id": str(reminder_id),
                "expected": expected,
                "target": target,
                "current_status": self._current_status(reminder_id),
            },
        )
        return False

    def _current_status(self, reminder_id: UUID) -> str | None:
        return self._session.scalar(
            select(ScheduledReminder.status).where(ScheduledReminder.id == reminder_id)
        )

    def mark_as_processing(self, reminder_id: UUID) -> bool:
        """SCHEDULED -> PROCESSING, counting the attempt.

        Any other current status is left untouched and returns False.
        """
        return self._guarded(
            reminder_id,
            ReminderStatus.SCHEDULED,
            ReminderStatus.PROCESSING,
            {"attempts": ScheduledReminder.attempts + 1},
        )

    def mark_as_sent(self, reminder_id: UUID) -> bool:
        """PROCESSING -> SENT."""
        return self._guarded(
            reminder_id,
            ReminderStatus.PROCESSING,
            ReminderStatus.SENT,
            {"sent_at": utcnow(), "next_retry_at": None},
        )

    def release_for_retry(
        self, reminder_id: UUID, error: str, next_retry_at: datetime.datetime
    ) -> bool:
        """PROCESSING -> SCHEDULED, to be picked up again after *next_retry_at*."""
        return self._guarded(
            reminder_id,
            ReminderStatus.PROCESSING,
            ReminderStatus.SCHEDULED,
            {"last_error": error, "next_retry_at": next_retry_at},
        )

    def mark_as_failed(self, reminder_id: UUID, error: str) -> bool:
        return self._conditional(
            reminder_id,
            [ReminderStatus.SCHEDULED, ReminderStatus.PROCESSING],
            {"status": ReminderStatus.FAILED, "last_error": error},
        )

    def mark_as_cancelled(self, reminder_id: UUID, reason: str | None = None) -> bool:
        return self._conditional(
            reminder_id,
            [ReminderStatus.SCHEDULED, ReminderStatus.PROCESSING],
            {"status": ReminderStatus.CANCELLED, "cancel_reason": reason},
        )

    def mark_as_expired(self, reminder_id: UUID) -> bool:
        return self._conditional(
            reminder_id,
            [ReminderStatus.SCHEDULED, ReminderStatus.PROCESSING],
            {"status": ReminderStatus.EXPIRED},
        )

    def find_scheduled_ready(
        self, limit: int = 100, now: datetime.datetime | None = None
    ) -> list[ScheduledReminder]:
        """Due SCHEDULED reminders, most urgent first, then oldest first."""
        now = now or utcnow()
        stmt = (
            select(ScheduledReminder)
            .where(
                ScheduledReminder.status == ReminderStatus.SCHEDULED,
                ScheduledReminder.scheduled_date <= now,
                (ScheduledReminder.next_retry_at.is_(None))
                | (ScheduledReminder.next_retry_at <= now),
            )
            .order_by(_PRIORITY_ORDER.desc(), ScheduledReminder.scheduled_date.asc())
            .limit(limit)
        )
        return list(self._session.scalars(stmt).all())

    def find_expired(
        self, expiration_hours: int = 24, now: datetime.datetime | None = None
    ) -> list[ScheduledReminder]:
        """SCHEDULED or PROCESSING reminders whose date is long past."""
        cutoff = (now or utcnow()) - datetime.timedelta(hours=expiration_hours)
        stmt = select(ScheduledReminder).where(
            ScheduledReminder.status.in_(
                [ReminderStatus.SCHEDULED, ReminderStatus.PROCESSING]
            ),
            ScheduledReminder.scheduled_date < cutoff,
        )
        return list(self._session.scalars(stmt).all())

    def find_by_booking_ref(self, booking_ref: str) -> list[ScheduledReminder]:
        stmt = (
            select(ScheduledReminder)
            .where(ScheduledReminder.booking_ref == booking_ref)
            .order_by(ScheduledReminder.scheduled_date.asc())
        )
        return list(self._session.scalars(stmt).all())

    def get_stats(self) -> dict[str, Any]:
        by_status = dict(
            self._session.execute(
                select(ScheduledReminder.status, func.count()).group_by(
                    ScheduledReminder.status
                )
            ).all()
        )
        by_type = dict(
            self._session.execute(
                select(ScheduledReminder.reminder_type, func.count()).group_by(
                    ScheduledReminder.reminder_type
                )
            ).all()
        )
        total = sum(by_status.values())
        sent = by_status.get(ReminderStatus.SENT, 0)
        return {
            "total": total,
            "by_status": by_status,
            "by_type": by_type,
            "success_rate": round(sent / total * 100, 2) if total else 0.0,
        }
