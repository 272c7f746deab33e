"""Celery application setup and worker initialization."""

import logging
from functools import partial

from celery import Celery, signals
from celery.schedules import crontab
from kombu import Queue

from delivery_worker.config import CeleryConfig, DeliveryConfig
from delivery_worker.context import AppContext, build_resources
from delivery_worker.job_queue import REMINDER_QUEUE
from delivery_worker.log import setup_logging

logger = logging.getLogger(__name__)

celery_config = CeleryConfig()
delivery_config = DeliveryConfig()

app = Celery("delivery_worker", broker=celery_config.broker_url)

app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=delivery_config.worker_concurrency,
    task_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_queues=[
        Queue("email"),
        Queue("sms"),
        Queue("chat"),
        Queue(REMINDER_QUEUE),
    ],
    task_default_queue=REMINDER_QUEUE,
    broker_transport_options={
        "visibility_timeout": celery_config.visibility_timeout_seconds,
        "priority_steps": [0, 3, 6, 9],
        "queue_order_strategy": "priority",
    },
    beat_schedule={
        "sweep-due-reminders": {
            "task": "delivery_worker.tasks.sweep_due_reminders",
            "schedule": float(delivery_config.reminder_sweep_interval_seconds),
            "options": {"queue": REMINDER_QUEUE},
        },
        "sweep-expired-reminders": {
            "task": "delivery_worker.tasks.sweep_expired_reminders",
            "schedule": crontab(minute=0),
            "options": {"queue": REMINDER_QUEUE},
        },
        "report-stale-sending": {
            "task": "delivery_worker.tasks.report_stale_sending",
            "schedule": crontab(minute="*/15"),
            "options": {"queue": REMINDER_QUEUE},
        },
    },
)

app.autodiscover_tasks(["delivery_worker"])


@signals.worker_init.connect
def _init_worker(**_kwargs: object) -> None:
    """Install the process context; resources are built on first use.

    Building lazily keeps engines, executors and the Kafka producer out
    of the parent process when the prefork pool is used.
    """
    setup_logging(delivery_config.log_level)

    context = AppContext(partial(build_resources, app, delivery_config))
    app.conf.update(_context=context)
    logger.info("Worker initialized")


@signals.worker_shutdown.connect
def _shutdown_worker(**_kwargs: object) -> None:
    """Clean up resources on worker shutdown."""
    context: AppContext | None = getattr(app.conf, "_context", None)
    if context is not None:
        context.close()
    logger.info("Worker shut down")
