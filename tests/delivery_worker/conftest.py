"""Test fixtures for delivery_worker tests."""

import uuid
from collections.abc import Callable, Generator
from unittest.mock import MagicMock

import pytest
from sqlalchemy.orm import Session, sessionmaker

from delivery_shared.db.models import Notification
from delivery_shared.enums import Channel, NotificationStatus
from delivery_shared.events import DeliveryJob

from delivery_worker.metrics import DeliveryMetrics
from delivery_worker.providers.base import DeliveryProvider, DeliveryResult
from delivery_worker.publisher import KafkaEventPublisher
from delivery_worker.renderer import create_default_templates
from delivery_worker.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    RetryConfig,
    RetryManager,
)
from delivery_worker.store import DeliveryStore
from delivery_worker.worker import DeliveryWorker


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stands in for time.sleep: records delays and advances a clock."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.delays: list[float] = []
        self._clock = clock

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self._clock is not None:
            self._clock.advance(seconds)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def recording_sleep(clock: FakeClock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture()
def session_factory(db_session: Session) -> MagicMock:
    """Session factory that always returns the test session.

    Wraps db_session so that ``with session_factory() as session:``
    returns our transactional test session.
    """
    factory = MagicMock(spec=sessionmaker)
    ctx = MagicMock()
    ctx.__enter__ = MagicMock(return_value=db_session)
    ctx.__exit__ = MagicMock(return_value=False)
    factory.return_value = ctx
    return factory


@pytest.fixture()
def broken_session_factory() -> MagicMock:
    """Session factory whose every session fails to open."""
    return MagicMock(
        spec=sessionmaker, side_effect=ConnectionError("database unavailable")
    )


@pytest.fixture()
def mock_publisher() -> MagicMock:
    return MagicMock(spec=KafkaEventPublisher)


def make_provider(name: str = "stub") -> MagicMock:
    """Provider that reports success with a message id."""
    provider = MagicMock(spec=DeliveryProvider)
    provider.name = name
    provider.send.return_value = DeliveryResult(
        success=True, message_id="msg-1", provider=name
    )
    return provider


@pytest.fixture()
def mock_provider() -> MagicMock:
    return make_provider()


@pytest.fixture()
def make_worker(
    session_factory: MagicMock,
    mock_publisher: MagicMock,
    recording_sleep: RecordingSleep,
) -> Generator[Callable[..., DeliveryWorker], None, None]:
    """Build a worker with fast, deterministic resilience settings."""
    created: list[CircuitBreaker] = []

    def _make(
        channel: Channel = Channel.EMAIL,
        provider: DeliveryProvider | None = None,
        *,
        store: DeliveryStore | None = None,
        failure_threshold: int = 5,
        max_retries: int = 3,
        metrics: DeliveryMetrics | None = None,
    ) -> DeliveryWorker:
        breaker = CircuitBreaker(
            channel.value,
            CircuitBreakerConfig(
                failure_threshold=failure_threshold,
                timeout_seconds=5.0,
                reset_timeout_seconds=60.0,
            ),
        )
        created.append(breaker)
        retry = RetryManager(
            RetryConfig(
                max_retries=max_retries,
                initial_delay_seconds=1.0,
                max_delay_seconds=30.0,
                jitter_enabled=False,
                global_timeout_seconds=None,
            ),
            sleep=recording_sleep,
        )
        return DeliveryWorker(
            channel,
            provider or make_provider(),
            breaker,
            retry,
            store or DeliveryStore(session_factory),
            publisher=mock_publisher,
            metrics=metrics,
            templates=create_default_templates(),
        )

    yield _make
    for breaker in created:
        breaker.shutdown()


def make_job(channel: Channel = Channel.EMAIL, **overrides: object) -> DeliveryJob:
    recipients = {
        Channel.EMAIL: "user@example.com",
        Channel.SMS: "+33612345678",
        Channel.CHAT: "+33612345678",
    }
    fields: dict = {
        "channel": channel,
        "recipient": recipients[channel],
        "recipient_id": "user-1",
        "subject": "Hello",
        "content": "Your booking is confirmed",
    }
    fields.update(overrides)
    return DeliveryJob(**fields)


@pytest.fixture()
def job_factory() -> Callable[..., DeliveryJob]:
    return make_job


@pytest.fixture()
def provider_factory() -> Callable[..., MagicMock]:
    return make_provider


@pytest.fixture()
def sample_notification(db_session: Session) -> Notification:
    """Create a PENDING email notification in the test DB."""
    notification = Notification(
        id=uuid.uuid4(),
        channel=Channel.EMAIL,
        recipient="user@example.com",
        recipient_id="user-1",
        status=NotificationStatus.PENDING,
        subject="Hello",
        content="Your booking is confirmed",
    )
    db_session.add(notification)
    db_session.flush()
    return notification
