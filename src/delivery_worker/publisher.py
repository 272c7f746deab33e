"""Kafka producer for notification lifecycle events."""

import logging
from typing import Protocol

from confluent_kafka import KafkaException, Producer

from delivery_shared.config import KafkaConfig
from delivery_shared.events import LifecycleEvent

logger = logging.getLogger(__name__)


class EventPublisher(Protocol):
    def publish(self, event: LifecycleEvent) -> None: ...

    def close(self) -> None: ...


class KafkaEventPublisher:
    """Publishes ``notification.sent`` / ``notification.failed`` events.

    Events are keyed by notification id so all events for one
    notification land on the same partition.  Publishing is best-effort:
    errors are logged and never surface to the delivery path.
    """

    def __init__(self, config: KafkaConfig) -> None:
        self._topic = config.delivery_events_topic
        self._producer = Producer({
            "bootstrap.servers": config.bootstrap_servers,
            "client.id": config.client_id,
            "acks": "all",
            "enable.idempotence": True,
            "linger.ms": 5,
            "compression.type": "lz4",
        })

    def publish(self, event: LifecycleEvent) -> None:
        try:
            self._producer.produce(
                topic=self._topic,
                key=str(event.notification_id).encode("utf-8"),
                value=event.model_dump_json().encode("utf-8"),
                headers={"event_type": event.event_type.value},
                on_delivery=self._on_delivery,
            )
            self._producer.poll(0)
        except (BufferError, KafkaException):
            logger.exception(
                "Failed to enqueue lifecycle event",
                extra={
                    "notification_id": str(event.notification_id),
                    "event_type": event.event_type.value,
                },
            )

    def flush(self, timeout: float = 10.0) -> int:
        """Flush remaining messages. Returns number of unflushed messages."""
        return self._producer.flush(timeout=timeout)

    def close(self) -> None:
        """Flush remaining messages before shutdown."""
        remaining = self.flush()
        if remaining > 0:
            logger.warning(
                "Producer closed with unflushed messages",
                extra={"remaining": remaining},
            )

    @staticmethod
    def _on_delivery(err: object, msg: object) -> None:
        if err is not None:
            logger.error("Kafka delivery failed: %s", err)
