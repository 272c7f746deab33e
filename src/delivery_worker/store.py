"""Worker-side view of the delivery store.

Every call opens its own session and commits before returning.  The
plain methods raise like any data-access code; :meth:`DeliveryStore.reconcile`
and the ``finalize_*`` methods never do.  They capture failures as
:class:`StoreIssue` values so the delivery path can carry on and report
them afterwards.
"""

import datetime
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from delivery_shared.db import Notification, NotificationRepository
from delivery_shared.enums import NotificationStatus
from delivery_shared.events import DeliveryJob

from delivery_worker.errors import classify, describe
from delivery_worker.resilience import CircuitBreaker

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class StoreIssue:
    """A store operation that failed without stopping delivery."""

    operation: str
    notification_id: UUID
    error: str
    error_kind: str


@dataclass(slots=True)
class Reconciliation:
    """What the store knows about a job before it is sent."""

    record: Notification | None = None
    created: bool = False
    # Set when the record is already terminal and the job must not be sent.
    skip_reason: str | None = None
    issues: list[StoreIssue] = field(default_factory=list)

    @property
    def should_send(self) -> bool:
        return self.skip_reason is None


class DeliveryStore:
    """``find_by_id`` / ``create`` / ``update`` over the notifications table.

    When a *breaker* is given, every call goes through it, so a store
    outage fails fast instead of holding each worker for a connect
    timeout.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._breaker = breaker

    def find_by_id(self, notification_id: UUID) -> Notification | None:
        return self._run(
            "find_by_id",
            lambda repo: repo.find_by_id(notification_id),
        )

    def create(self, record: Notification) -> Notification:
        return self._run("create", lambda repo: repo.create(record))

    def update(self, notification_id: UUID, **fields: Any) -> Notification | None:
        return self._run(
            "update", lambda repo: repo.update(notification_id, **fields)
        )

    def transition(
        self,
        notification_id: UUID,
        status: NotificationStatus,
        *,
        increment_attempts: bool = False,
        **fields: Any,
    ) -> bool:
        return self._run(
            f"transition:{status}",
            lambda repo: repo.transition(
                notification_id,
                status,
                increment_attempts=increment_attempts,
                **fields,
            ),
        )

    def find_stale_sending(
        self, older_than: datetime.timedelta, limit: int = 100
    ) -> list[Notification]:
        return self._run(
            "find_stale_sending",
            lambda repo: repo.find_stale_sending(older_than, limit=limit),
        )

    def find_scheduled_ready(
        self, now: datetime.datetime | None = None, limit: int = 100
    ) -> list[Notification]:
        return self._run(
            "find_scheduled_ready",
            lambda repo: repo.find_scheduled_ready(limit=limit, now=now),
        )

    # -- delivery path, never raises ----------------------------------------

    def reconcile(self, job: DeliveryJob) -> Reconciliation:
        """Make sure a record exists for *job* and move it to SENDING.

        A missing record is created as PENDING.  A record already SENT or
        FAILED marks the job as a duplicate.  Store failures only add
        issues; the caller sends anyway.
        """
        outcome = Reconciliation()

        found, issue = self._capture(
            "find_by_id", job.id, lambda: self.find_by_id(job.id)
        )
        if issue is not None:
            outcome.issues.append(issue)
        elif found is None:
            created, issue = self._capture(
                "create", job.id, lambda: self.create(record_from_job(job))
            )
            if issue is not None:
                outcome.issues.append(issue)
            else:
                outcome.record = created
                outcome.created = True
        else:
            outcome.record = found

        record = outcome.record
        if record is not None and NotificationStatus(record.status).is_terminal:
            outcome.skip_reason = f"already {record.status}"
            return outcome

        if record is not None and record.status == NotificationStatus.SCHEDULED:
            _, issue = self._capture(
                "transition:pending",
                job.id,
                lambda: self.transition(job.id, NotificationStatus.PENDING),
            )
            if issue is not None:
                outcome.issues.append(issue)

        moved, issue = self._capture(
            "transition:sending",
            job.id,
            lambda: self.transition(
                job.id, NotificationStatus.SENDING, increment_attempts=True
            ),
        )
        if issue is not None:
            outcome.issues.append(issue)
        elif not moved and record is not None:
            # Lost a race: another worker may have finished this job.
            current, issue = self._capture(
                "find_by_id", job.id, lambda: self.find_by_id(job.id)
            )
            if issue is not None:
                outcome.issues.append(issue)
            elif current is not None:
                outcome.record = current
                if NotificationStatus(current.status).is_terminal:
                    outcome.skip_reason = f"already {current.status}"
        return outcome

    def finalize_sent(
        self,
        job: DeliveryJob,
        *,
        external_message_id: str | None,
        provider: str | None,
        provider_response: dict[str, Any] | None,
        cost: Decimal | None,
    ) -> list[StoreIssue]:
        applied, issue = self._capture(
            "mark_as_sent",
            job.id,
            lambda: self._run(
                "mark_as_sent",
                lambda repo: repo.mark_as_sent(
                    job.id,
                    external_message_id=external_message_id,
                    provider=provider,
                    provider_response=provider_response,
                    cost=cost,
                ),
            ),
        )
        if issue is not None:
            return [issue]
        if not applied:
            logger.warning(
                "Sent status not applied, record missing or already terminal",
                extra={"notification_id": str(job.id)},
            )
        return []

    def finalize_failed(
        self,
        job: DeliveryJob,
        error: str,
        *,
        provider_response: dict[str, Any] | None = None,
    ) -> list[StoreIssue]:
        applied, issue = self._capture(
            "mark_as_failed",
            job.id,
            lambda: self._run(
                "mark_as_failed",
                lambda repo: repo.mark_as_failed(
                    job.id, error, provider_response=provider_response
                ),
            ),
        )
        if issue is not None:
            return [issue]
        if not applied:
            logger.warning(
                "Failed status not applied, record missing or already terminal",
                extra={"notification_id": str(job.id)},
            )
        return []

    # -- internals ---------------------------------------------------------

    def _run(self, name: str, work: Callable[[NotificationRepository], T]) -> T:
        def in_session() -> T:
            with self._session_factory() as session:
                result = work(NotificationRepository(session))
                session.commit()
                return result

        if self._breaker is None:
            return in_session()
        return self._breaker.call(in_session, f"store.{name}").unwrap()

    @staticmethod
    def _capture(
        operation: str, notification_id: UUID, call: Callable[[], T]
    ) -> tuple[T | None, StoreIssue | None]:
        try:
            return call(), None
        except Exception as exc:
            issue = StoreIssue(
                operation=operation,
                notification_id=notification_id,
                error=describe(exc),
                error_kind=classify(exc),
            )
            logger.warning(
                "Store operation failed, continuing delivery",
                extra={
                    "notification_id": str(notification_id),
                    "operation": operation,
                    "error": issue.error,
                    "error_kind": issue.error_kind,
                },
            )
            return None, issue


def record_from_job(
    job: DeliveryJob, status: NotificationStatus = NotificationStatus.PENDING
) -> Notification:
    """Build the store record for *job*; attempts start at zero."""
    return Notification(
        id=job.id,
        channel=job.channel,
        recipient=job.recipient,
        recipient_id=job.effective_recipient_id,
        priority=job.priority,
        status=status,
        subject=job.subject,
        content=job.content,
        template_ref=job.template_ref,
        variables=job.variables,
        scheduled_at=job.scheduled_at,
        job_metadata=job.metadata.model_dump(mode="json"),
    )
