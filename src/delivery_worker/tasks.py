"""Celery tasks: delivery, reminder firing and the periodic sweeps."""

import datetime
import logging
from typing import Any
from uuid import UUID

from pydantic import ValidationError

from delivery_shared.clock import utcnow
from delivery_shared.events import DeliveryJob

from delivery_worker.celery import app
from delivery_worker.context import AppContext
from delivery_worker.job_queue import CeleryJobQueue

logger = logging.getLogger(__name__)


def _context() -> AppContext:
    context: AppContext | None = getattr(app.conf, "_context", None)
    if context is None:
        raise RuntimeError("Worker context is not installed; was worker_init skipped?")
    return context


@app.task(name="delivery_worker.tasks.deliver_notification")
def deliver_notification(job: dict[str, Any]) -> dict[str, Any] | None:
    """Deliver one job through its channel worker.

    The job payload is the JSON form of :class:`DeliveryJob` as written
    by :class:`CeleryJobQueue`.  The returned dict is the delivery
    outcome, kept as the task result for inspection.
    """
    try:
        parsed = DeliveryJob.model_validate(job)
    except ValidationError as exc:
        logger.error(
            "Malformed delivery job, dropping",
            extra={"job_id": job.get("id"), "errors": exc.errors(include_url=False)},
        )
        return None

    outcome = _context().worker_for(parsed.channel).process(parsed)
    return outcome.to_dict()


@app.task(name="delivery_worker.tasks.fire_reminder")
def fire_reminder(reminder_id: str) -> dict[str, Any]:
    outcome = _context().reminders.fire(UUID(reminder_id))
    return {
        "reminder_id": reminder_id,
        "fired": outcome.fired,
        "status": outcome.status,
        "delivered": outcome.delivered,
    }


@app.task(name="delivery_worker.tasks.sweep_due_reminders")
def sweep_due_reminders() -> int:
    """Queue a fire task for every due reminder."""
    context = _context()
    due = context.reminders.find_due(context.config.reminder_sweep_limit)
    queue = CeleryJobQueue(app)
    for reminder_id in due:
        queue.enqueue_reminder(str(reminder_id))
    if due:
        logger.info("Due reminders queued", extra={"count": len(due)})
    return len(due)


@app.task(name="delivery_worker.tasks.sweep_expired_reminders")
def sweep_expired_reminders() -> int:
    context = _context()
    return context.reminders.sweep_expired(context.config.reminder_expiration_hours)


@app.task(name="delivery_worker.tasks.report_stale_sending")
def report_stale_sending() -> int:
    """Log notifications stuck in SENDING or still SCHEDULED past due.

    Nothing is resent from here: with late acks the broker redelivers the
    job of a worker that died mid-send, and the redelivered job finalizes
    the record.  Rows reported repeatedly point at a lost message.
    """
    context = _context()
    window = datetime.timedelta(minutes=context.config.stale_sending_minutes)
    stale = context.store.find_stale_sending(window)
    overdue = context.store.find_scheduled_ready(now=utcnow() - window)
    for record in stale:
        logger.warning(
            "Notification stuck in SENDING",
            extra={
                "notification_id": str(record.id),
                "channel": record.channel,
                "attempts": record.attempts,
                "updated_at": record.updated_at.isoformat(),
            },
        )
    for record in overdue:
        # Deferred jobs are queued with an ETA; a row this late lost its job.
        logger.warning(
            "Scheduled notification was never picked up",
            extra={
                "notification_id": str(record.id),
                "channel": record.channel,
                "scheduled_at": record.scheduled_at.isoformat(),
            },
        )
    return len(stale) + len(overdue)
