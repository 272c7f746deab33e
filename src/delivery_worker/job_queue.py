"""Job submission onto the per-channel Celery queues."""

import logging
from typing import Protocol

from celery import Celery

from delivery_shared.enums import Priority
from delivery_shared.events import DeliveryJob

logger = logging.getLogger(__name__)

DELIVER_TASK = "delivery_worker.tasks.deliver_notification"
FIRE_REMINDER_TASK = "delivery_worker.tasks.fire_reminder"
REMINDER_QUEUE = "reminders"

# Redis transport: 0 is the highest priority, steps are 0/3/6/9.
_MESSAGE_PRIORITY: dict[str, int] = {
    Priority.URGENT: 0,
    Priority.HIGH: 3,
    Priority.NORMAL: 6,
    Priority.LOW: 9,
}


class JobQueue(Protocol):
    def enqueue(self, job: DeliveryJob) -> str: ...


class CeleryJobQueue:
    """Sends each job to the queue named after its channel.

    Jobs scheduled for the future travel with an ETA; the consuming
    worker holds them until they are due.
    """

    def __init__(self, app: Celery) -> None:
        self._app = app

    def enqueue(self, job: DeliveryJob) -> str:
        options: dict[str, object] = {
            "queue": job.channel.value,
            "priority": _MESSAGE_PRIORITY[job.priority],
        }
        if job.is_deferred():
            options["eta"] = job.scheduled_at
        result = self._app.send_task(
            DELIVER_TASK,
            kwargs={"job": job.model_dump(mode="json")},
            **options,
        )
        logger.info(
            "Job enqueued",
            extra={
                "notification_id": str(job.id),
                "channel": job.channel.value,
                "priority": job.priority.value,
                "task_id": result.id,
                "deferred": "eta" in options,
            },
        )
        return result.id

    def enqueue_reminder(self, reminder_id: str) -> str:
        result = self._app.send_task(
            FIRE_REMINDER_TASK,
            kwargs={"reminder_id": reminder_id},
            queue=REMINDER_QUEUE,
        )
        return result.id
