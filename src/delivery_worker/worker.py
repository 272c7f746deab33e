"""Per-channel delivery worker.

One job runs through four steps:

1. reconcile the store record (create if missing, move to SENDING)
2. deliver via ``retry.execute(lambda: breaker.call(provider.send))``
3. finalize the record (SENT or FAILED, conditional on prior status)
4. emit the lifecycle event and record metrics

Store and event failures never change the delivery outcome; they show
up as ``store_issues`` on the returned :class:`DeliveryOutcome` and in
the logs.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any
from uuid import UUID

from delivery_shared.enums import Channel, NotificationStatus
from delivery_shared.events import (
    DeliveryJob,
    LifecycleEvent,
    NotificationFailedEvent,
    NotificationSentEvent,
)

from delivery_worker.errors import DeliveryError, ErrorKind, classify, describe
from delivery_worker.metrics import DeliveryMetrics
from delivery_worker.providers import DeliveryProvider, DeliveryResult
from delivery_worker.publisher import EventPublisher
from delivery_worker.renderer import TemplateRegistry
from delivery_worker.resilience import CircuitBreaker, CircuitState, RetryManager
from delivery_worker.store import DeliveryStore, StoreIssue

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DeliveryOutcome:
    notification_id: UUID
    channel: Channel
    success: bool
    skipped: bool = False
    attempts: int = 0
    delivery_time_ms: float = 0.0
    message_id: str | None = None
    cost: Decimal = Decimal("0")
    provider: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    circuit_state: CircuitState = CircuitState.CLOSED
    store_issues: tuple[StoreIssue, ...] = ()
    response: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "notification_id": str(self.notification_id),
            "channel": self.channel.value,
            "success": self.success,
            "skipped": self.skipped,
            "attempts": self.attempts,
            "delivery_time_ms": self.delivery_time_ms,
            "message_id": self.message_id,
            "cost": str(self.cost),
            "provider": self.provider,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "circuit_state": self.circuit_state.value,
            "store_issues": len(self.store_issues),
        }


class DeliveryWorker:
    """Delivers jobs for one channel.

    The breaker and retry manager are shared by every thread working this
    channel; the worker itself keeps no per-job state between calls.
    """

    def __init__(
        self,
        channel: Channel,
        provider: DeliveryProvider,
        breaker: CircuitBreaker,
        retry: RetryManager,
        store: DeliveryStore,
        *,
        publisher: EventPublisher | None = None,
        metrics: DeliveryMetrics | None = None,
        templates: TemplateRegistry | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.channel = channel
        self._provider = provider
        self._breaker = breaker
        self._retry = retry
        self._store = store
        self._publisher = publisher
        self._metrics = metrics
        self._templates = templates
        self._clock = clock

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def process(self, job: DeliveryJob) -> DeliveryOutcome:
        if job.channel != self.channel:
            raise ValueError(
                f"{job.channel!r} job routed to the {self.channel!r} worker"
            )
        log_ctx = {"notification_id": str(job.id), "channel": self.channel.value}

        reconciliation = self._store.reconcile(job)
        issues = list(reconciliation.issues)
        if not reconciliation.should_send:
            logger.info(
                "Job already finalized, skipping",
                extra={**log_ctx, "reason": reconciliation.skip_reason},
            )
            # A duplicate of a delivered job still counts as delivered.
            already_sent = (
                reconciliation.record is not None
                and reconciliation.record.status == NotificationStatus.SENT
            )
            return DeliveryOutcome(
                notification_id=job.id,
                channel=self.channel,
                success=already_sent,
                skipped=True,
                error=reconciliation.skip_reason,
                circuit_state=self._breaker.state,
                store_issues=tuple(issues),
            )

        started = self._clock()
        try:
            job = self._render(job)
        except DeliveryError as exc:
            delivered, attempts, error = None, 0, exc
        else:
            retry_result = self._retry.execute(
                lambda: self._attempt(job), context=f"{self.channel}:{job.id}"
            )
            delivered = retry_result.result if retry_result.success else None
            attempts = retry_result.attempts
            error = retry_result.error
        elapsed_ms = (self._clock() - started) * 1000

        if delivered is not None:
            issues += self._store.finalize_sent(
                job,
                external_message_id=delivered.message_id,
                provider=delivered.provider,
                provider_response=delivered.response,
                cost=delivered.cost,
            )
            outcome = DeliveryOutcome(
                notification_id=job.id,
                channel=self.channel,
                success=True,
                attempts=attempts,
                delivery_time_ms=elapsed_ms,
                message_id=delivered.message_id,
                cost=delivered.cost,
                provider=delivered.provider,
                circuit_state=self._breaker.state,
                store_issues=tuple(issues),
                response=delivered.response,
            )
            logger.info(
                "Delivery succeeded",
                extra={
                    **log_ctx,
                    "attempts": attempts,
                    "provider": delivered.provider,
                    "message_id": delivered.message_id,
                    "delivery_time_ms": round(elapsed_ms, 3),
                },
            )
        else:
            if error is None:
                error = DeliveryError(
                    ErrorKind.UNKNOWN, "Delivery failed without a recorded error"
                )
            message = describe(error)
            kind = classify(error)
            issues += self._store.finalize_failed(job, message)
            outcome = DeliveryOutcome(
                notification_id=job.id,
                channel=self.channel,
                success=False,
                attempts=attempts,
                delivery_time_ms=elapsed_ms,
                provider=self._provider.name,
                error=message,
                error_kind=kind,
                circuit_state=self._breaker.state,
                store_issues=tuple(issues),
            )
            logger.error(
                "Delivery permanently failed",
                extra={
                    **log_ctx,
                    "attempts": attempts,
                    "error_kind": kind,
                    "reason": message,
                    "circuit_state": outcome.circuit_state,
                },
            )

        self._emit(job, outcome)
        if self._metrics is not None:
            self._metrics.record_delivery(
                self.channel,
                outcome.provider,
                success=outcome.success,
                latency_ms=elapsed_ms,
                error_kind=outcome.error_kind,
            )
        return outcome

    def _attempt(self, job: DeliveryJob) -> DeliveryResult:
        """One provider call through the breaker; raises on failure."""
        return self._breaker.call(
            lambda: self._provider.send(job).raise_for_error(),
            f"{self.channel}.send",
        ).unwrap()

    def _render(self, job: DeliveryJob) -> DeliveryJob:
        if job.content is not None or job.template_ref is None:
            return job
        if self._templates is None:
            raise DeliveryError(
                ErrorKind.VALIDATION,
                f"Job references template {job.template_ref!r} but no templates are loaded",
            )
        subject, body = self._templates.render(
            job.template_ref, self.channel, job.variables
        )
        return job.model_copy(
            update={"subject": job.subject or subject, "content": body}
        )

    def _emit(self, job: DeliveryJob, outcome: DeliveryOutcome) -> None:
        if self._publisher is None:
            return
        event: LifecycleEvent
        common = {
            "notification_id": job.id,
            "recipient_id": job.effective_recipient_id,
            "channel": self.channel,
            "attempts": outcome.attempts,
            "delivery_time_ms": outcome.delivery_time_ms,
            "cost": outcome.cost,
            "provider": outcome.provider,
        }
        if outcome.success:
            event = NotificationSentEvent(
                **common, external_message_id=outcome.message_id
            )
        else:
            event = NotificationFailedEvent(
                **common,
                error=outcome.error or "unknown error",
                error_kind=outcome.error_kind,
            )
        try:
            self._publisher.publish(event)
        except Exception:
            logger.exception(
                "Lifecycle event not published",
                extra={"notification_id": str(job.id), "event_type": event.event_type},
            )
