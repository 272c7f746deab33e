"""Tests for the Celery task bodies, run synchronously."""

import datetime
import uuid
from unittest.mock import MagicMock

import pytest

from delivery_shared.clock import utcnow
from delivery_shared.enums import Channel, ReminderStatus

from delivery_worker import tasks
from delivery_worker.config import DeliveryConfig
from delivery_worker.context import AppContext, Resources
from delivery_worker.job_queue import FIRE_REMINDER_TASK, REMINDER_QUEUE
from delivery_worker.reminders import ReminderOutcome
from delivery_worker.worker import DeliveryOutcome


@pytest.fixture()
def resources() -> Resources:
    return Resources(
        config=DeliveryConfig(reminder_sweep_limit=10, stale_sending_minutes=15),
        session_factory=MagicMock(),
        store=MagicMock(),
        store_breaker=None,
        workers={channel: MagicMock() for channel in Channel},
        reminders=MagicMock(),
        dispatcher=MagicMock(),
        metrics=MagicMock(),
    )


@pytest.fixture()
def mock_app(monkeypatch, resources: Resources) -> MagicMock:
    app = MagicMock()
    app.conf._context = AppContext(lambda: resources)
    monkeypatch.setattr(tasks, "app", app)
    return app


class TestDeliverNotification:
    def test_routes_job_to_channel_worker(
        self, mock_app, resources: Resources, job_factory
    ) -> None:
        job = job_factory(Channel.SMS)
        worker = resources.workers[Channel.SMS]
        worker.process.return_value = DeliveryOutcome(
            notification_id=job.id, channel=Channel.SMS, success=True, attempts=1
        )

        result = tasks.deliver_notification(job.model_dump(mode="json"))

        worker.process.assert_called_once()
        assert worker.process.call_args.args[0].id == job.id
        assert result["success"] is True
        assert result["channel"] == "sms"
        resources.workers[Channel.EMAIL].process.assert_not_called()

    def test_malformed_job_dropped(self, mock_app, resources: Resources, caplog) -> None:
        result = tasks.deliver_notification({"id": "x", "channel": "pigeon"})

        assert result is None
        assert "Malformed delivery job" in caplog.text
        for worker in resources.workers.values():
            worker.process.assert_not_called()

    def test_missing_context_raises(self, monkeypatch, job_factory) -> None:
        app = MagicMock()
        app.conf._context = None
        monkeypatch.setattr(tasks, "app", app)

        with pytest.raises(RuntimeError, match="context is not installed"):
            tasks.deliver_notification(job_factory().model_dump(mode="json"))


class TestReminderTasks:
    def test_fire_reminder(self, mock_app, resources: Resources) -> None:
        reminder_id = uuid.uuid4()
        resources.reminders.fire.return_value = ReminderOutcome(
            reminder_id=reminder_id, fired=True, status=ReminderStatus.SENT
        )

        result = tasks.fire_reminder(str(reminder_id))

        resources.reminders.fire.assert_called_once_with(reminder_id)
        assert result == {
            "reminder_id": str(reminder_id),
            "fired": True,
            "status": ReminderStatus.SENT,
            "delivered": False,
        }

    def test_sweep_due_queues_fire_tasks(self, mock_app, resources: Resources) -> None:
        due = [uuid.uuid4(), uuid.uuid4()]
        resources.reminders.find_due.return_value = due

        assert tasks.sweep_due_reminders() == 2

        resources.reminders.find_due.assert_called_once_with(10)
        sent = mock_app.send_task.call_args_list
        assert [c.kwargs["kwargs"]["reminder_id"] for c in sent] == [str(r) for r in due]
        assert all(c.args[0] == FIRE_REMINDER_TASK for c in sent)
        assert all(c.kwargs["queue"] == REMINDER_QUEUE for c in sent)

    def test_sweep_expired(self, mock_app, resources: Resources) -> None:
        resources.reminders.sweep_expired.return_value = 3
        assert tasks.sweep_expired_reminders() == 3
        resources.reminders.sweep_expired.assert_called_once_with(24)


class TestReportStaleSending:
    def test_logs_each_stale_record(
        self, mock_app, resources: Resources, caplog
    ) -> None:
        record = MagicMock(
            id=uuid.uuid4(),
            channel=Channel.EMAIL,
            attempts=2,
            updated_at=datetime.datetime(2026, 3, 1, tzinfo=datetime.UTC),
        )
        resources.store.find_stale_sending.return_value = [record]

        assert tasks.report_stale_sending() == 1

        resources.store.find_stale_sending.assert_called_once_with(
            datetime.timedelta(minutes=15)
        )
        assert "Notification stuck in SENDING" in caplog.text

    def test_logs_overdue_scheduled_records(
        self, mock_app, resources: Resources, caplog
    ) -> None:
        record = MagicMock(
            id=uuid.uuid4(),
            channel=Channel.SMS,
            scheduled_at=datetime.datetime(2026, 3, 1, tzinfo=datetime.UTC),
        )
        resources.store.find_stale_sending.return_value = []
        resources.store.find_scheduled_ready.return_value = [record]

        assert tasks.report_stale_sending() == 1

        cutoff = resources.store.find_scheduled_ready.call_args.kwargs["now"]
        assert cutoff <= utcnow() - datetime.timedelta(minutes=15)
        assert "Scheduled notification was never picked up" in caplog.text
