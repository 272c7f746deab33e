"""Booking reminders: scheduling, firing and the periodic sweeps.

A reminder fires at most once per attempt.  Firing turns it into one
delivery job per channel and runs each through that channel's worker;
the reminder's own status follows what the channels achieved.
"""

import datetime
import logging
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, EmailStr, Field, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from delivery_shared.clock import ensure_utc, utcnow
from delivery_shared.db import ScheduledReminder, ScheduledReminderRepository
from delivery_shared.enums import Channel, Priority, ReminderStatus, ReminderType
from delivery_shared.events import DeliveryJob, JobMetadata

from delivery_worker.worker import DeliveryOutcome, DeliveryWorker

logger = logging.getLogger(__name__)

# Namespace for reminder-derived job ids, so a redelivered fire of the
# same attempt maps onto the same notification records.
_REMINDER_JOB_NAMESPACE = uuid.UUID("6f1c2a52-4d0e-4f4e-9a53-0d3c8f1b7e21")


class Booking(BaseModel):
    """The booking facts a reminder needs to describe the appointment."""

    booking_ref: str
    service_date: datetime.datetime
    customer_name: str
    service_name: str
    recipient_email: EmailStr | None = None
    recipient_phone: str | None = None
    location: str | None = None
    priority: Priority = Priority.NORMAL
    extra: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _has_recipient(self) -> "Booking":
        if not self.recipient_email and not self.recipient_phone:
            raise ValueError("a booking needs an email address or a phone number")
        return self


def schedule_booking_reminders(
    session_factory: sessionmaker[Session],
    booking: Booking,
    *,
    now: datetime.datetime | None = None,
) -> list[ScheduledReminder]:
    """Create the 7-day, 24-hour and 1-hour reminders for *booking*.

    Reminders whose send time has already passed are skipped.  Raises
    ValueError if the service itself is not in the future.
    """
    now = now or utcnow()
    service_date = ensure_utc(booking.service_date)
    if service_date <= now:
        raise ValueError(
            f"Service date {service_date.isoformat()} for booking "
            f"{booking.booking_ref!r} is not in the future"
        )

    created: list[ScheduledReminder] = []
    with session_factory() as session:
        repo = ScheduledReminderRepository(session)
        for reminder_type in ReminderType:
            send_at = service_date - datetime.timedelta(hours=reminder_type.hours_before)
            if send_at <= now:
                logger.debug(
                    "Reminder already due in the past, skipped",
                    extra={
                        "booking_ref": booking.booking_ref,
                        "reminder_type": reminder_type,
                    },
                )
                continue
            priority = (
                Priority.HIGH
                if reminder_type == ReminderType.ONE_HOUR
                and booking.priority.rank < Priority.HIGH.rank
                else booking.priority
            )
            created.append(
                repo.create(
                    ScheduledReminder(
                        booking_ref=booking.booking_ref,
                        reminder_type=reminder_type,
                        scheduled_date=send_at,
                        service_date=service_date,
                        recipient_email=booking.recipient_email,
                        recipient_phone=booking.recipient_phone,
                        payload=booking.model_dump(mode="json"),
                        priority=priority,
                        status=ReminderStatus.SCHEDULED,
                    )
                )
            )
        session.commit()
    return created


def reminder_channels(reminder: ScheduledReminder) -> list[Channel]:
    """Channels a reminder goes out on.

    The one-hour reminder prefers SMS and falls back to email only when
    there is no phone number; the earlier ones use every address known.
    """
    if reminder.reminder_type == ReminderType.ONE_HOUR:
        if reminder.recipient_phone:
            return [Channel.SMS]
        return [Channel.EMAIL] if reminder.recipient_email else []
    channels = []
    if reminder.recipient_phone:
        channels.append(Channel.SMS)
    if reminder.recipient_email:
        channels.append(Channel.EMAIL)
    return channels


@dataclass(frozen=True, slots=True)
class ReminderOutcome:
    reminder_id: uuid.UUID
    fired: bool
    status: ReminderStatus | None
    deliveries: tuple[DeliveryOutcome, ...] = ()
    error: str | None = None

    @property
    def delivered(self) -> bool:
        return any(d.success for d in self.deliveries)


class ReminderProcessor:
    """Fires due reminders through the per-channel workers."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        workers: Mapping[Channel, DeliveryWorker],
        *,
        retry_backoff_seconds: Sequence[int] = (300, 900, 3600),
        clock: Callable[[], datetime.datetime] = utcnow,
    ) -> None:
        if not retry_backoff_seconds:
            raise ValueError("retry_backoff_seconds must not be empty")
        self._session_factory = session_factory
        self._workers = workers
        self._backoff = list(retry_backoff_seconds)
        self._clock = clock

    def fire(self, reminder_id: uuid.UUID) -> ReminderOutcome:
        with self._session_factory() as session:
            repo = ScheduledReminderRepository(session)
            claimed = repo.mark_as_processing(reminder_id)
            session.commit()
            reminder = repo.find_by_id(reminder_id)
            if reminder is not None:
                # attempts was bumped by an SQL expression; load it now,
                # the session is closed by the time it is read.
                session.refresh(reminder)

        if not claimed or reminder is None:
            return ReminderOutcome(
                reminder_id=reminder_id,
                fired=False,
                status=ReminderStatus(reminder.status) if reminder else None,
            )

        log_ctx = {
            "reminder_id": str(reminder_id),
            "booking_ref": reminder.booking_ref,
            "reminder_type": reminder.reminder_type,
            "attempt": reminder.attempts,
        }

        deliveries: list[DeliveryOutcome] = []
        for job in self.build_jobs(reminder):
            worker = self._workers.get(job.channel)
            if worker is None:
                logger.warning(
                    "No worker for reminder channel",
                    extra={**log_ctx, "channel": job.channel},
                )
                continue
            deliveries.append(worker.process(job))

        if any(d.success for d in deliveries):
            status, error = ReminderStatus.SENT, None
        else:
            error = "; ".join(
                f"{d.channel}: {d.error}" for d in deliveries if d.error
            ) or "no deliverable channel"
            status = self._settle_failure(reminder, error)

        try:
            self._finalize(reminder, status, error)
        except SQLAlchemyError:
            logger.exception("Reminder status not saved", extra=log_ctx)

        logger.info(
            "Reminder fired",
            extra={
                **log_ctx,
                "status": status,
                "channels": [d.channel for d in deliveries],
                "delivered": [d.channel for d in deliveries if d.success],
            },
        )
        return ReminderOutcome(
            reminder_id=reminder_id,
            fired=True,
            status=status,
            deliveries=tuple(deliveries),
            error=error,
        )

    def build_jobs(self, reminder: ScheduledReminder) -> list[DeliveryJob]:
        payload = reminder.payload or {}
        service_date = ensure_utc(reminder.service_date)
        variables = {
            "customer_name": payload.get("customer_name", ""),
            "service_name": payload.get("service_name", ""),
            "location": payload.get("location") or "",
            "booking_ref": reminder.booking_ref,
            "service_date": service_date.strftime("%Y-%m-%d %H:%M UTC"),
        }
        jobs = []
        for channel in reminder_channels(reminder):
            recipient = (
                reminder.recipient_phone
                if channel == Channel.SMS
                else reminder.recipient_email
            )
            jobs.append(
                DeliveryJob(
                    id=uuid.uuid5(
                        _REMINDER_JOB_NAMESPACE,
                        f"{reminder.id}:{channel}:{reminder.attempts}",
                    ),
                    channel=channel,
                    recipient=recipient,
                    recipient_id=reminder.booking_ref,
                    template_ref=f"reminder.{reminder.reminder_type}",
                    variables=variables,
                    priority=reminder.priority,
                    metadata=JobMetadata(
                        trigger="reminder",
                        reminder_id=str(reminder.id),
                        booking_ref=reminder.booking_ref,
                    ),
                )
            )
        return jobs

    def find_due(self, limit: int = 100) -> list[uuid.UUID]:
        with self._session_factory() as session:
            repo = ScheduledReminderRepository(session)
            return [r.id for r in repo.find_scheduled_ready(limit, now=self._clock())]

    def fire_due(self, limit: int = 100) -> list[ReminderOutcome]:
        """Fire every due reminder in this thread, most urgent first."""
        return [self.fire(reminder_id) for reminder_id in self.find_due(limit)]

    def sweep_expired(self, expiration_hours: int = 24) -> int:
        """Mark reminders left SCHEDULED or PROCESSING too long as EXPIRED."""
        expired = 0
        with self._session_factory() as session:
            repo = ScheduledReminderRepository(session)
            for reminder in repo.find_expired(expiration_hours, now=self._clock()):
                previous_status = reminder.status
                if repo.mark_as_expired(reminder.id):
                    expired += 1
                    logger.warning(
                        "Reminder expired",
                        extra={
                            "reminder_id": str(reminder.id),
                            "booking_ref": reminder.booking_ref,
                            "reminder_type": reminder.reminder_type,
                            "previous_status": previous_status,
                            "attempts": reminder.attempts,
                        },
                    )
            session.commit()
        return expired

    def _settle_failure(
        self, reminder: ScheduledReminder, error: str
    ) -> ReminderStatus:
        if reminder.attempts < reminder.max_attempts:
            return ReminderStatus.SCHEDULED
        logger.error(
            "Reminder permanently failed",
            extra={
                "reminder_id": str(reminder.id),
                "attempts": reminder.attempts,
                "reason": error,
            },
        )
        return ReminderStatus.FAILED

    def _finalize(
        self, reminder: ScheduledReminder, status: ReminderStatus, error: str | None
    ) -> None:
        with self._session_factory() as session:
            repo = ScheduledReminderRepository(session)
            if status == ReminderStatus.SENT:
                repo.mark_as_sent(reminder.id)
            elif status == ReminderStatus.SCHEDULED:
                repo.release_for_retry(
                    reminder.id, error or "", self._next_retry_at(reminder.attempts)
                )
            else:
                repo.mark_as_failed(reminder.id, error or "")
            session.commit()

    def _next_retry_at(self, attempts: int) -> datetime.datetime:
        """Backoff for the given attempt number (1-based).

        Falls back to the last value when attempts exceed the schedule.
        """
        idx = min(max(attempts, 1) - 1, len(self._backoff) - 1)
        return self._clock() + datetime.timedelta(seconds=self._backoff[idx])
