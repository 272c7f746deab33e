"""Tests for in-process delivery counters."""

import threading

from delivery_shared.enums import Channel

from delivery_worker.errors import ErrorKind
from delivery_worker.metrics import DeliveryMetrics


class TestDeliveryMetrics:
    def test_tallies_per_channel_and_provider(self) -> None:
        metrics = DeliveryMetrics()
        metrics.record_delivery(Channel.EMAIL, "smtp", success=True, latency_ms=10.0)
        metrics.record_delivery(
            Channel.EMAIL,
            "smtp",
            success=False,
            latency_ms=30.0,
            error_kind=ErrorKind.TIMEOUT,
        )

        snapshot = metrics.snapshot()
        email = snapshot["channels"]["email"]
        assert email["requests"] == 2
        assert email["failures"] == 1
        assert email["average_latency_ms"] == 20.0
        assert email["success_rate"] == 0.5
        assert snapshot["providers"]["smtp"]["requests"] == 2
        assert snapshot["errors"] == {"timeout": 1}

    def test_missing_provider_only_counts_channel(self) -> None:
        metrics = DeliveryMetrics()
        metrics.record_delivery(Channel.SMS, None, success=False, latency_ms=0.0)

        snapshot = metrics.snapshot()
        assert snapshot["channels"]["sms"]["requests"] == 1
        assert snapshot["providers"] == {}
        assert snapshot["errors"] == {}

    def test_concurrent_updates(self) -> None:
        metrics = DeliveryMetrics()

        def record() -> None:
            for _ in range(500):
                metrics.record_delivery(Channel.CHAT, "chat-api", success=True, latency_ms=1.0)

        threads = [threading.Thread(target=record) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert metrics.snapshot()["channels"]["chat"]["successes"] == 2000

    def test_reset(self) -> None:
        metrics = DeliveryMetrics()
        metrics.record_delivery(Channel.SMS, "sms-gateway", success=True, latency_ms=1.0)
        metrics.reset()
        assert metrics.snapshot() == {"channels": {}, "providers": {}, "errors": {}}
