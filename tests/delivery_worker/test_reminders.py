"""Tests for booking reminder scheduling and firing."""

import datetime
import uuid
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError
from sqlalchemy.orm import Session

from delivery_shared.clock import ensure_utc
from delivery_shared.db.models import Notification, ScheduledReminder
from delivery_shared.db.repositories import ScheduledReminderRepository
from delivery_shared.enums import (
    Channel,
    NotificationStatus,
    Priority,
    ReminderStatus,
    ReminderType,
)

from delivery_worker.errors import DeliveryError, ErrorKind
from delivery_worker.reminders import (
    Booking,
    ReminderProcessor,
    reminder_channels,
    schedule_booking_reminders,
)

NOW = datetime.datetime(2026, 3, 1, 9, 0, tzinfo=datetime.UTC)


def _booking(**overrides) -> Booking:
    fields = {
        "booking_ref": "BK-1001",
        "service_date": NOW + datetime.timedelta(days=10),
        "customer_name": "Ada",
        "service_name": "Home cleaning",
        "recipient_email": "ada@example.com",
        "recipient_phone": "+33612345678",
        "location": "12 rue de la Paix",
    }
    fields.update(overrides)
    return Booking(**fields)


def _reminder(**overrides) -> ScheduledReminder:
    fields = {
        "booking_ref": "BK-1001",
        "reminder_type": ReminderType.TWENTY_FOUR_HOURS,
        "scheduled_date": NOW - datetime.timedelta(minutes=5),
        "service_date": NOW + datetime.timedelta(hours=24),
        "recipient_email": "ada@example.com",
        "recipient_phone": "+33612345678",
        "payload": {"customer_name": "Ada", "service_name": "Home cleaning"},
        "status": ReminderStatus.SCHEDULED,
    }
    fields.update(overrides)
    return ScheduledReminder(**fields)


@pytest.fixture()
def email_provider(provider_factory) -> MagicMock:
    return provider_factory("smtp")


@pytest.fixture()
def sms_provider(provider_factory) -> MagicMock:
    return provider_factory("sms-gateway")


@pytest.fixture()
def processor(
    session_factory: MagicMock, make_worker, email_provider, sms_provider
) -> ReminderProcessor:
    workers = {
        Channel.EMAIL: make_worker(Channel.EMAIL, email_provider),
        Channel.SMS: make_worker(Channel.SMS, sms_provider),
    }
    return ReminderProcessor(session_factory, workers, clock=lambda: NOW)


@pytest.fixture()
def saved_reminder(db_session: Session):
    def _save(**overrides) -> ScheduledReminder:
        reminder = ScheduledReminderRepository(db_session).create(_reminder(**overrides))
        db_session.commit()
        return reminder

    return _save


class TestBooking:
    def test_requires_a_recipient(self) -> None:
        with pytest.raises(ValidationError):
            _booking(recipient_email=None, recipient_phone=None)

    def test_rejects_invalid_email(self) -> None:
        with pytest.raises(ValidationError):
            _booking(recipient_email="not-an-address")


class TestScheduleBookingReminders:
    def test_creates_three_reminders(
        self, session_factory: MagicMock, db_session: Session
    ) -> None:
        created = schedule_booking_reminders(session_factory, _booking(), now=NOW)

        assert [r.reminder_type for r in created] == [
            ReminderType.SEVEN_DAYS,
            ReminderType.TWENTY_FOUR_HOURS,
            ReminderType.ONE_HOUR,
        ]
        one_hour = created[-1]
        assert ensure_utc(one_hour.scheduled_date) == NOW + datetime.timedelta(
            days=10, hours=-1
        )
        assert one_hour.priority == Priority.HIGH
        assert created[0].priority == Priority.NORMAL
        assert created[0].payload["location"] == "12 rue de la Paix"

        stored = ScheduledReminderRepository(db_session).find_by_booking_ref("BK-1001")
        assert len(stored) == 3

    def test_skips_reminders_already_past(self, session_factory: MagicMock) -> None:
        booking = _booking(service_date=NOW + datetime.timedelta(hours=3))
        created = schedule_booking_reminders(session_factory, booking, now=NOW)
        assert [r.reminder_type for r in created] == [ReminderType.ONE_HOUR]

    def test_urgent_booking_keeps_priority(self, session_factory: MagicMock) -> None:
        booking = _booking(priority=Priority.URGENT)
        created = schedule_booking_reminders(session_factory, booking, now=NOW)
        assert {r.priority for r in created} == {Priority.URGENT}

    def test_rejects_past_service_date(self, session_factory: MagicMock) -> None:
        booking = _booking(service_date=NOW - datetime.timedelta(hours=1))
        with pytest.raises(ValueError, match="not in the future"):
            schedule_booking_reminders(session_factory, booking, now=NOW)


class TestReminderChannels:
    @pytest.mark.parametrize(
        ("reminder_type", "email", "phone", "expected"),
        [
            (ReminderType.SEVEN_DAYS, "a@example.com", "+33612345678", [Channel.SMS, Channel.EMAIL]),
            (ReminderType.SEVEN_DAYS, "a@example.com", None, [Channel.EMAIL]),
            (ReminderType.ONE_HOUR, "a@example.com", "+33612345678", [Channel.SMS]),
            (ReminderType.ONE_HOUR, "a@example.com", None, [Channel.EMAIL]),
            (ReminderType.ONE_HOUR, None, None, []),
        ],
    )
    def test_channels(self, reminder_type, email, phone, expected) -> None:
        reminder = _reminder(
            reminder_type=reminder_type, recipient_email=email, recipient_phone=phone
        )
        assert reminder_channels(reminder) == expected


class TestBuildJobs:
    def test_jobs_are_deterministic_per_attempt(
        self, processor: ReminderProcessor
    ) -> None:
        reminder = _reminder(id=uuid.uuid4(), attempts=1, priority=Priority.HIGH)

        first = processor.build_jobs(reminder)
        again = processor.build_jobs(reminder)
        reminder.attempts = 2
        retried = processor.build_jobs(reminder)

        assert [j.id for j in first] == [j.id for j in again]
        assert {j.id for j in first}.isdisjoint(j.id for j in retried)

    def test_job_contents(self, processor: ReminderProcessor) -> None:
        reminder = _reminder(id=uuid.uuid4(), attempts=1, priority=Priority.HIGH)
        sms, email = processor.build_jobs(reminder)

        assert sms.channel == Channel.SMS
        assert sms.recipient == "+33612345678"
        assert email.recipient == "ada@example.com"
        assert email.template_ref == "reminder.24h"
        assert email.priority == Priority.HIGH
        assert email.variables["service_date"] == "2026-03-02 09:00 UTC"
        assert email.metadata.trigger == "reminder"
        assert email.metadata.model_extra["booking_ref"] == "BK-1001"


class TestFire:
    def test_delivers_on_every_channel(
        self,
        processor: ReminderProcessor,
        saved_reminder,
        db_session: Session,
        email_provider,
        sms_provider,
    ) -> None:
        reminder = saved_reminder()

        outcome = processor.fire(reminder.id)

        assert outcome.fired is True
        assert outcome.status == ReminderStatus.SENT
        assert outcome.delivered
        assert [d.channel for d in outcome.deliveries] == [Channel.SMS, Channel.EMAIL]
        email_provider.send.assert_called_once()
        sms_provider.send.assert_called_once()

        sent_email = email_provider.send.call_args.args[0]
        assert sent_email.subject == "Your Home cleaning is tomorrow"
        assert "Ada" in sent_email.content

        db_session.refresh(reminder)
        assert reminder.status == ReminderStatus.SENT
        assert reminder.attempts == 1
        assert reminder.sent_at is not None
        records = db_session.query(Notification).all()
        assert {r.status for r in records} == {NotificationStatus.SENT}

    def test_one_channel_is_enough(
        self, processor: ReminderProcessor, saved_reminder, sms_provider
    ) -> None:
        sms_provider.send.side_effect = DeliveryError(ErrorKind.VALIDATION, "bad number")
        reminder = saved_reminder()

        outcome = processor.fire(reminder.id)

        assert outcome.status == ReminderStatus.SENT
        assert [d.success for d in outcome.deliveries] == [False, True]

    def test_failure_released_for_retry(
        self,
        processor: ReminderProcessor,
        saved_reminder,
        db_session: Session,
        email_provider,
        sms_provider,
    ) -> None:
        for provider in (email_provider, sms_provider):
            provider.send.side_effect = DeliveryError(ErrorKind.VALIDATION, "rejected")
        reminder = saved_reminder()

        outcome = processor.fire(reminder.id)

        assert outcome.fired is True
        assert outcome.status == ReminderStatus.SCHEDULED
        assert not outcome.delivered
        assert "sms: rejected" in outcome.error

        db_session.refresh(reminder)
        assert reminder.status == ReminderStatus.SCHEDULED
        assert reminder.attempts == 1
        assert reminder.last_error == outcome.error
        assert ensure_utc(reminder.next_retry_at) == NOW + datetime.timedelta(seconds=300)

    def test_last_attempt_fails_permanently(
        self,
        processor: ReminderProcessor,
        saved_reminder,
        db_session: Session,
        email_provider,
        sms_provider,
    ) -> None:
        for provider in (email_provider, sms_provider):
            provider.send.side_effect = DeliveryError(ErrorKind.VALIDATION, "rejected")
        reminder = saved_reminder(attempts=2, max_attempts=3)

        outcome = processor.fire(reminder.id)

        assert outcome.status == ReminderStatus.FAILED
        db_session.refresh(reminder)
        assert reminder.status == ReminderStatus.FAILED
        assert reminder.attempts == 3

    def test_no_channel_counts_as_failure(
        self, processor: ReminderProcessor, saved_reminder
    ) -> None:
        reminder = saved_reminder(recipient_email=None, recipient_phone=None)
        outcome = processor.fire(reminder.id)

        assert outcome.deliveries == ()
        assert outcome.error == "no deliverable channel"
        assert outcome.status == ReminderStatus.SCHEDULED

    @pytest.mark.parametrize(
        "status",
        [ReminderStatus.SENT, ReminderStatus.CANCELLED, ReminderStatus.PROCESSING],
    )
    def test_not_scheduled_is_not_fired(
        self, processor: ReminderProcessor, saved_reminder, email_provider, status
    ) -> None:
        reminder = saved_reminder(status=status)

        outcome = processor.fire(reminder.id)

        assert outcome.fired is False
        assert outcome.status == status
        email_provider.send.assert_not_called()

    def test_unknown_reminder(self, processor: ReminderProcessor) -> None:
        outcome = processor.fire(uuid.uuid4())
        assert outcome.fired is False
        assert outcome.status is None


class TestSweeps:
    def test_find_due_orders_by_priority(
        self, processor: ReminderProcessor, saved_reminder
    ) -> None:
        normal = saved_reminder()
        urgent = saved_reminder(priority=Priority.URGENT)
        saved_reminder(scheduled_date=NOW + datetime.timedelta(hours=1))
        saved_reminder(next_retry_at=NOW + datetime.timedelta(minutes=5))

        assert processor.find_due() == [urgent.id, normal.id]

    def test_fire_due(self, processor: ReminderProcessor, saved_reminder) -> None:
        saved_reminder()
        saved_reminder(booking_ref="BK-1002")

        outcomes = processor.fire_due()

        assert len(outcomes) == 2
        assert all(o.status == ReminderStatus.SENT for o in outcomes)

    def test_sweep_expired(
        self, processor: ReminderProcessor, saved_reminder, db_session: Session, caplog
    ) -> None:
        old = saved_reminder(scheduled_date=NOW - datetime.timedelta(hours=30))
        stuck = saved_reminder(
            scheduled_date=NOW - datetime.timedelta(hours=26),
            status=ReminderStatus.PROCESSING,
        )
        recent = saved_reminder()

        assert processor.sweep_expired(24) == 2

        for reminder, expected in [
            (old, ReminderStatus.EXPIRED),
            (stuck, ReminderStatus.EXPIRED),
            (recent, ReminderStatus.SCHEDULED),
        ]:
            db_session.refresh(reminder)
            assert reminder.status == expected
        assert "Reminder expired" in caplog.text

    def test_backoff_falls_back_to_last_step(self, session_factory: MagicMock) -> None:
        processor = ReminderProcessor(
            session_factory, {}, retry_backoff_seconds=[60, 120], clock=lambda: NOW
        )
        assert processor._next_retry_at(1) == NOW + datetime.timedelta(seconds=60)
        assert processor._next_retry_at(5) == NOW + datetime.timedelta(seconds=120)

    def test_empty_backoff_rejected(self, session_factory: MagicMock) -> None:
        with pytest.raises(ValueError):
            ReminderProcessor(session_factory, {}, retry_backoff_seconds=[])
