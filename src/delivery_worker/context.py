"""Process-wide resources, built once and handed to the Celery tasks."""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any

from celery import Celery
from sqlalchemy.orm import Session, sessionmaker

from delivery_shared.config import KafkaConfig, PostgresConfig
from delivery_shared.db import create_db_engine, create_session_factory
from delivery_shared.enums import Channel

from delivery_worker.config import (
    CeleryConfig,
    DeliveryConfig,
    StoreResilienceConfig,
    resilience_config_for,
)
from delivery_worker.dispatcher import NotificationDispatcher
from delivery_worker.job_queue import CeleryJobQueue
from delivery_worker.metrics import DeliveryMetrics
from delivery_worker.providers import ProviderRegistry, create_default_registry
from delivery_worker.publisher import EventPublisher, KafkaEventPublisher
from delivery_worker.reminders import ReminderProcessor
from delivery_worker.renderer import create_default_templates
from delivery_worker.resilience import (
    CircuitBreaker,
    CircuitState,
    RetryManager,
)
from delivery_worker.store import DeliveryStore
from delivery_worker.worker import DeliveryWorker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Resources:
    config: DeliveryConfig
    session_factory: sessionmaker[Session]
    store: DeliveryStore
    store_breaker: CircuitBreaker | None
    workers: dict[Channel, DeliveryWorker]
    reminders: ReminderProcessor
    dispatcher: NotificationDispatcher
    metrics: DeliveryMetrics
    publisher: EventPublisher | None = None
    retry_managers: list[RetryManager] = field(default_factory=list)


class AppContext:
    """Lazily built, shared resources of one worker process.

    ``ensure_initialized`` runs *factory* exactly once.  Concurrent first
    callers all wait on the same cached future; a failed build is not
    cached, so the next caller tries again.
    """

    def __init__(self, factory: Callable[[], Resources]) -> None:
        self._factory = factory
        self._lock = threading.Lock()
        self._future: Future[Resources] | None = None

    def ensure_initialized(self) -> Resources:
        with self._lock:
            future = self._future
            owner = future is None
            if future is None:
                future = self._future = Future()

        if owner:
            try:
                future.set_result(self._factory())
            except BaseException as exc:
                with self._lock:
                    self._future = None
                future.set_exception(exc)
                raise
            logger.info("Worker context initialized")
        return future.result()

    @property
    def initialized(self) -> bool:
        future = self._future
        return future is not None and future.done() and future.exception() is None

    def worker_for(self, channel: str) -> DeliveryWorker:
        workers = self.ensure_initialized().workers
        try:
            return workers[Channel(channel)]
        except (KeyError, ValueError):
            raise ValueError(f"No worker for channel {channel!r}") from None

    @property
    def reminders(self) -> ReminderProcessor:
        return self.ensure_initialized().reminders

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self.ensure_initialized().dispatcher

    @property
    def store(self) -> DeliveryStore:
        return self.ensure_initialized().store

    @property
    def config(self) -> DeliveryConfig:
        return self.ensure_initialized().config

    def breakers(self) -> list[CircuitBreaker]:
        resources = self.ensure_initialized()
        breakers = [worker.breaker for worker in resources.workers.values()]
        if resources.store_breaker is not None:
            breakers.append(resources.store_breaker)
        return breakers

    def health_report(self) -> dict[str, Any]:
        """Roll every breaker into one healthy/degraded/unhealthy status."""
        resources = self.ensure_initialized()
        breakers = self.breakers()
        circuits = {b.name: b.health() for b in breakers}
        states = {h.state for h in circuits.values()}
        if CircuitState.OPEN in states:
            status = "unhealthy"
        elif CircuitState.HALF_OPEN in states or not all(
            h.is_healthy for h in circuits.values()
        ):
            status = "degraded"
        else:
            status = "healthy"
        return {
            "status": status,
            "circuits": {
                b.name: {
                    **circuits[b.name].to_dict(),
                    "remaining_reset_seconds": round(b.remaining_reset_seconds(), 3),
                }
                for b in breakers
            },
            "metrics": resources.metrics.snapshot(),
        }

    def close(self) -> None:
        """Release resources if they were ever built."""
        if not self.initialized:
            return
        resources = self.ensure_initialized()
        if resources.publisher is not None:
            resources.publisher.close()
        for breaker in self.breakers():
            breaker.shutdown()
        for retry in resources.retry_managers:
            retry.shutdown()
        logger.info("Worker context closed")


def _log_state_change(
    name: str,
) -> Callable[[CircuitState, CircuitState, str], None]:
    def callback(old: CircuitState, new: CircuitState, reason: str) -> None:
        if new == CircuitState.OPEN:
            logger.error(
                "Channel circuit opened, provider calls suspended",
                extra={"circuit": name, "from_state": old, "reason": reason},
            )

    return callback


def _warn_if_outlasts_visibility(
    name: str, retry: RetryManager, visibility_timeout: float
) -> bool:
    """Warn when backoff alone can exceed the broker redelivery window."""
    total = retry.max_total_delay()
    if total < visibility_timeout:
        return False
    logger.warning(
        "Retry backoff can outlast the broker visibility timeout",
        extra={
            "channel": name,
            "max_total_delay": total,
            "visibility_timeout": visibility_timeout,
        },
    )
    return True


def build_resources(
    app: Celery,
    delivery_config: DeliveryConfig | None = None,
    *,
    registry: ProviderRegistry | None = None,
    publisher: EventPublisher | None = None,
) -> Resources:
    """Construct every shared resource from environment settings."""
    delivery_config = delivery_config or DeliveryConfig()

    pg_config = PostgresConfig()
    engine = create_db_engine(
        pg_config.dsn, pool_size=pg_config.pool_size, pool_pre_ping=True
    )
    session_factory = create_session_factory(engine)

    store_breaker = CircuitBreaker(
        "store", StoreResilienceConfig().breaker_config()
    )
    store = DeliveryStore(session_factory, store_breaker)

    if publisher is None:
        publisher = KafkaEventPublisher(KafkaConfig())
    registry = registry or create_default_registry()
    templates = create_default_templates()
    metrics = DeliveryMetrics()

    workers: dict[Channel, DeliveryWorker] = {}
    retry_managers: list[RetryManager] = []
    visibility_timeout = CeleryConfig().visibility_timeout_seconds
    for channel in Channel:
        settings = resilience_config_for(channel)
        breaker = CircuitBreaker(
            channel.value,
            settings.breaker_config(),
            on_state_change=_log_state_change(channel.value),
        )
        retry = RetryManager(settings.retry_config(), name=channel.value)
        retry_managers.append(retry)
        _warn_if_outlasts_visibility(channel.value, retry, visibility_timeout)
        workers[channel] = DeliveryWorker(
            channel,
            registry.get(channel),
            breaker,
            retry,
            store,
            publisher=publisher,
            metrics=metrics,
            templates=templates,
        )

    reminders = ReminderProcessor(
        session_factory,
        workers,
        retry_backoff_seconds=delivery_config.reminder_retry_backoff_seconds,
    )
    dispatcher = NotificationDispatcher(store, CeleryJobQueue(app))

    return Resources(
        config=delivery_config,
        session_factory=session_factory,
        store=store,
        store_breaker=store_breaker,
        workers=workers,
        reminders=reminders,
        dispatcher=dispatcher,
        metrics=metrics,
        publisher=publisher,
        retry_managers=retry_managers,
    )
