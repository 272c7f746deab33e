"""Caller-side entry point: record the job, then queue it."""

import logging
from dataclasses import dataclass
from uuid import UUID

from delivery_shared.enums import NotificationStatus
from delivery_shared.events import DeliveryJob

from delivery_worker.errors import describe
from delivery_worker.job_queue import JobQueue
from delivery_worker.store import DeliveryStore, record_from_job

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SubmitReceipt:
    notification_id: UUID
    task_id: str
    status: NotificationStatus
    record_created: bool


class NotificationDispatcher:
    """Creates the store record before enqueueing, best-effort.

    The worker creates a missing record itself, so a store failure here
    only costs the SCHEDULED state of a deferred job.  Enqueue errors
    propagate: a job that never reached the queue is not owed to anyone.
    """

    def __init__(self, store: DeliveryStore, queue: JobQueue) -> None:
        self._store = store
        self._queue = queue

    def submit(self, job: DeliveryJob) -> SubmitReceipt:
        status = (
            NotificationStatus.SCHEDULED
            if job.is_deferred()
            else NotificationStatus.PENDING
        )
        record_created = False
        try:
            self._store.create(record_from_job(job, status))
            record_created = True
        except Exception as exc:
            logger.warning(
                "Could not create notification record before enqueue",
                extra={"notification_id": str(job.id), "error": describe(exc)},
            )

        task_id = self._queue.enqueue(job)
        return SubmitReceipt(
            notification_id=job.id,
            task_id=task_id,
            status=status,
            record_created=record_created,
        )
