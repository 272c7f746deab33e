"""In-process delivery counters for dashboards and health checks."""

import threading
from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Any


@dataclass(slots=True)
class _Tally:
    requests: int = 0
    successes: int = 0
    failures: int = 0
    total_latency_ms: float = 0.0

    @property
    def average_latency_ms(self) -> float:
        return self.total_latency_ms / self.requests if self.requests else 0.0

    @property
    def success_rate(self) -> float:
        return self.successes / self.requests if self.requests else 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "requests": self.requests,
            "successes": self.successes,
            "failures": self.failures,
            "average_latency_ms": round(self.average_latency_ms, 3),
            "success_rate": round(self.success_rate, 4),
        }


class DeliveryMetrics:
    """Thread-safe per-channel and per-provider delivery counters."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._channels: defaultdict[str, _Tally] = defaultdict(_Tally)
        self._providers: defaultdict[str, _Tally] = defaultdict(_Tally)
        self._errors: Counter[str] = Counter()

    def record_delivery(
        self,
        channel: str,
        provider: str | None,
        *,
        success: bool,
        latency_ms: float,
        error_kind: str | None = None,
    ) -> None:
        with self._lock:
            tallies = [self._channels[channel]]
            if provider:
                tallies.append(self._providers[provider])
            for tally in tallies:
                tally.requests += 1
                tally.total_latency_ms += latency_ms
                if success:
                    tally.successes += 1
                else:
                    tally.failures += 1
            if not success and error_kind:
                self._errors[error_kind] += 1

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "channels": {k: v.to_dict() for k, v in self._channels.items()},
                "providers": {k: v.to_dict() for k, v in self._providers.items()},
                "errors": dict(self._errors),
            }

    def reset(self) -> None:
        with self._lock:
            self._channels.clear()
            self._providers.clear()
            self._errors.clear()
