"""Per-channel circuit breaker.

One instance guards one external resource (an SMTP relay, an SMS
gateway, the store).  State lives in memory for the life of the process
and is shared by every worker thread on that channel.

    CLOSED ── failure_threshold consecutive counted failures ──> OPEN
    OPEN ──── reset_timeout elapsed, next call ────────────────> HALF_OPEN
    HALF_OPEN ── trial succeeds ──> CLOSED
    HALF_OPEN ── trial fails ─────> OPEN (opened_at refreshed)

Bookkeeping happens under a lock; the protected operation itself runs
outside it, on the breaker's executor, so a slow provider never blocks
other threads from reading or updating the breaker.
"""

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Generic, TypeVar

from delivery_shared.clock import utcnow

from delivery_worker.errors import DeliveryError, ErrorKind, counts_as_failure

logger = logging.getLogger(__name__)

T = TypeVar("T")

StateChangeCallback = Callable[["CircuitState", "CircuitState", str], None]


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True, slots=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    timeout_seconds: float = 10.0
    reset_timeout_seconds: float = 60.0
    is_failure: Callable[[BaseException], bool] = counts_as_failure
    response_history_size: int = 100
    max_concurrent_calls: int = 16

    def __post_init__(self) -> None:
        if self.failure_threshold <= 0:
            raise ValueError("failure_threshold must be > 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.reset_timeout_seconds <= 0:
            raise ValueError("reset_timeout_seconds must be > 0")
        if self.response_history_size <= 0:
            raise ValueError("response_history_size must be > 0")


@dataclass(slots=True)
class CircuitMetrics:
    consecutive_failures: int = 0
    total_failures: int = 0
    total_successes: int = 0
    total_opens: int = 0
    total_rejections: int = 0
    last_failure_at: datetime | None = None
    last_success_at: datetime | None = None
    # Breaker clock reading (monotonic by default), not wall time.
    opened_at: float | None = None
    response_times_ms: deque[float] = field(default_factory=lambda: deque(maxlen=100))

    @property
    def average_response_time_ms(self) -> float:
        if not self.response_times_ms:
            return 0.0
        return sum(self.response_times_ms) / len(self.response_times_ms)

    def copy(self) -> "CircuitMetrics":
        snapshot = CircuitMetrics(
            consecutive_failures=self.consecutive_failures,
            total_failures=self.total_failures,
            total_successes=self.total_successes,
            total_opens=self.total_opens,
            total_rejections=self.total_rejections,
            last_failure_at=self.last_failure_at,
            last_success_at=self.last_success_at,
            opened_at=self.opened_at,
        )
        snapshot.response_times_ms = deque(
            self.response_times_ms, maxlen=self.response_times_ms.maxlen
        )
        return snapshot


@dataclass(frozen=True, slots=True)
class CircuitHealth:
    name: str
    state: CircuitState
    consecutive_failures: int
    total_failures: int
    total_successes: int
    total_opens: int
    success_rate: float
    average_response_time_ms: float
    uptime_seconds: float

    @property
    def is_healthy(self) -> bool:
        return self.state == CircuitState.CLOSED and self.success_rate > 0.95

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
            "total_opens": self.total_opens,
            "success_rate": self.success_rate,
            "average_response_time_ms": self.average_response_time_ms,
            "uptime_seconds": self.uptime_seconds,
            "is_healthy": self.is_healthy,
        }


@dataclass(frozen=True, slots=True)
class CircuitResult(Generic[T]):
    """Outcome envelope of :meth:`CircuitBreaker.call`."""

    success: bool
    circuit_state: CircuitState
    execution_time_ms: float
    result: T | None = None
    error: BaseException | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def unwrap(self) -> T:
        """Return the result, or raise the recorded error.

        Lets a retry loop treat the envelope like a plain call.
        """
        if self.success:
            return self.result  # type: ignore[return-value]
        if self.error is None:
            raise RuntimeError("Failed circuit result carries no error")
        raise self.error


class CircuitBreaker:
    """Guards calls to one external resource.

    ``call`` never raises; it returns a :class:`CircuitResult`.  Only
    errors accepted by ``config.is_failure`` move the breaker.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        self._name = name
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._on_state_change = on_state_change
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._state_changed_at = clock()
        self._trial_in_flight = False
        self._metrics = self._fresh_metrics()
        self._executor = ThreadPoolExecutor(
            max_workers=self._config.max_concurrent_calls,
            thread_name_prefix=f"breaker-{name}",
        )

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def metrics(self) -> CircuitMetrics:
        """A point-in-time copy of the breaker's counters."""
        with self._lock:
            return self._metrics.copy()

    def call(
        self, operation: Callable[[], T], operation_name: str | None = None
    ) -> CircuitResult[T]:
        context = operation_name or "operation"

        with self._lock:
            rejection, is_trial = self._admit(context)
            admitted_state = self._state
        if rejection is not None:
            return CircuitResult(
                success=False,
                circuit_state=admitted_state,
                execution_time_ms=0.0,
                error=rejection,
                metadata=self._metadata(),
            )

        started = self._clock()
        try:
            result = self._run_with_timeout(operation, context)
        except Exception as exc:
            elapsed_ms = (self._clock() - started) * 1000
            with self._lock:
                self._record_failure(exc, elapsed_ms, is_trial)
                state = self._state
            return CircuitResult(
                success=False,
                circuit_state=state,
                execution_time_ms=elapsed_ms,
                error=exc,
                metadata=self._metadata(),
            )

        elapsed_ms = (self._clock() - started) * 1000
        with self._lock:
            self._record_success(elapsed_ms, is_trial)
            state = self._state
        return CircuitResult(
            success=True,
            circuit_state=state,
            execution_time_ms=elapsed_ms,
            result=result,
            metadata=self._metadata(),
        )

    def health(self) -> CircuitHealth:
        with self._lock:
            m = self._metrics
            total = m.total_successes + m.total_failures
            return CircuitHealth(
                name=self._name,
                state=self._state,
                consecutive_failures=m.consecutive_failures,
                total_failures=m.total_failures,
                total_successes=m.total_successes,
                total_opens=m.total_opens,
                success_rate=m.total_successes / total if total else 1.0,
                average_response_time_ms=m.average_response_time_ms,
                uptime_seconds=self._clock() - self._state_changed_at,
            )

    def remaining_reset_seconds(self) -> float:
        with self._lock:
            return self._remaining_reset()

    def reset(self) -> None:
        """Drop all counters and close the circuit."""
        with self._lock:
            self._metrics = self._fresh_metrics()
            self._trial_in_flight = False
            self._change_state(CircuitState.CLOSED, "Manual reset")

    def force_open(self, reason: str = "Manual override") -> None:
        with self._lock:
            self._change_state(CircuitState.OPEN, reason)

    def force_close(self, reason: str = "Manual override") -> None:
        with self._lock:
            self._metrics.consecutive_failures = 0
            self._trial_in_flight = False
            self._change_state(CircuitState.CLOSED, reason)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # -- internals, called with self._lock held ---------------------------

    def _fresh_metrics(self) -> CircuitMetrics:
        return CircuitMetrics(
            response_times_ms=deque(maxlen=self._config.response_history_size)
        )

    def _admit(self, context: str) -> tuple[DeliveryError | None, bool]:
        """Admit or reject one call; the flag marks the single recovery trial."""
        if self._state == CircuitState.OPEN:
            if self._remaining_reset() > 0:
                return self._reject(context), False
            self._change_state(CircuitState.HALF_OPEN, "Testing recovery after reset timeout")

        if self._state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                return self._reject(context), False
            self._trial_in_flight = True
            return None, True
        return None, False

    def _reject(self, context: str) -> DeliveryError:
        self._metrics.total_rejections += 1
        remaining = self._remaining_reset()
        return DeliveryError(
            ErrorKind.CIRCUIT_OPEN,
            f"Circuit breaker {self._name!r} is {self._state.value} for {context}. "
            f"Next retry in {remaining:.1f}s",
            retry_after=remaining,
        )

    def _remaining_reset(self) -> float:
        if self._state != CircuitState.OPEN or self._metrics.opened_at is None:
            return 0.0
        elapsed = self._clock() - self._metrics.opened_at
        return max(0.0, self._config.reset_timeout_seconds - elapsed)

    def _record_success(self, elapsed_ms: float, is_trial: bool) -> None:
        m = self._metrics
        m.consecutive_failures = 0
        m.total_successes += 1
        m.last_success_at = utcnow()
        m.response_times_ms.append(elapsed_ms)
        # Calls admitted before the circuit opened only update counters.
        if is_trial and self._state == CircuitState.HALF_OPEN:
            self._trial_in_flight = False
            self._change_state(CircuitState.CLOSED, "Recovery trial succeeded")

    def _record_failure(
        self, error: BaseException, elapsed_ms: float, is_trial: bool
    ) -> None:
        m = self._metrics
        was_trial = is_trial and self._state == CircuitState.HALF_OPEN
        if was_trial:
            self._trial_in_flight = False

        if not self._config.is_failure(error):
            logger.debug(
                "Error not counted against circuit",
                extra={"circuit": self._name, "error": str(error)},
            )
            return

        m.consecutive_failures += 1
        m.total_failures += 1
        m.last_failure_at = utcnow()
        m.response_times_ms.append(elapsed_ms)

        if was_trial:
            self._change_state(CircuitState.OPEN, "Recovery trial failed")
        elif (
            self._state == CircuitState.CLOSED
            and m.consecutive_failures >= self._config.failure_threshold
        ):
            self._change_state(
                CircuitState.OPEN,
                f"Failure threshold reached ({m.consecutive_failures} consecutive failures)",
            )

    def _change_state(self, new_state: CircuitState, reason: str) -> None:
        old_state = self._state
        if new_state == CircuitState.OPEN:
            # Re-opening from HALF_OPEN refreshes the reset window too.
            self._metrics.opened_at = self._clock()
            if old_state != CircuitState.OPEN:
                self._metrics.total_opens += 1
        elif new_state == CircuitState.CLOSED:
            self._metrics.consecutive_failures = 0
            self._metrics.opened_at = None

        if old_state == new_state:
            return
        self._state = new_state
        self._state_changed_at = self._clock()

        logger.warning(
            "Circuit breaker state changed",
            extra={
                "circuit": self._name,
                "from_state": old_state.value,
                "to_state": new_state.value,
                "reason": reason,
            },
        )
        if self._on_state_change is not None:
            try:
                self._on_state_change(old_state, new_state, reason)
            except Exception:
                logger.exception(
                    "State change callback failed", extra={"circuit": self._name}
                )

    # -- outside the lock --------------------------------------------------

    def _run_with_timeout(self, operation: Callable[[], T], context: str) -> T:
        future: Future[T] = self._executor.submit(operation)
        try:
            return future.result(timeout=self._config.timeout_seconds)
        except FutureTimeoutError:
            if future.done():
                # The operation raised its own TimeoutError.
                raise
            future.cancel()
            raise DeliveryError(
                ErrorKind.TIMEOUT,
                f"{context} timed out after {self._config.timeout_seconds}s",
            ) from None

    def _metadata(self) -> dict[str, Any]:
        with self._lock:
            m = self._metrics
            return {
                "consecutive_failures": m.consecutive_failures,
                "total_successes": m.total_successes,
                "last_failure_at": m.last_failure_at,
                "last_success_at": m.last_success_at,
            }
