"""Bounded exponential-backoff retry with jitter and a global time budget.

A :class:`RetryManager` holds no per-call state, so one instance per
channel is shared by every worker thread on that channel.  Each
``execute`` produces its own attempt trace.
"""

import logging
import random
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from delivery_worker.errors import (
    ErrorKind,
    NonRetriableError,
    RetryTimeoutError,
    classify,
    describe,
    is_retriable,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.25

RetryCallback = Callable[[int, BaseException, float], None]


@dataclass(frozen=True, slots=True)
class RetryConfig:
    max_retries: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_enabled: bool = True
    global_timeout_seconds: float | None = 300.0
    is_retriable: Callable[[BaseException], bool] = is_retriable
    on_retry: RetryCallback | None = None

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay_seconds < 0:
            raise ValueError("initial_delay_seconds must be >= 0")
        if self.max_delay_seconds < self.initial_delay_seconds:
            raise ValueError("max_delay_seconds must be >= initial_delay_seconds")
        if self.backoff_multiplier <= 0:
            raise ValueError("backoff_multiplier must be > 0")
        if self.global_timeout_seconds is not None and self.global_timeout_seconds <= 0:
            raise ValueError("global_timeout_seconds must be > 0 when set")


@dataclass(frozen=True, slots=True)
class AttemptDetail:
    attempt: int
    delay_seconds: float
    started_at: float
    error: str | None = None
    error_kind: ErrorKind | None = None


@dataclass(frozen=True, slots=True)
class RetryResult(Generic[T]):
    success: bool
    attempts: int
    total_time_ms: float
    attempt_details: tuple[AttemptDetail, ...] = field(default_factory=tuple)
    result: T | None = None
    error: BaseException | None = None


class RetryManager:
    """Re-attempts an operation up to ``max_retries + 1`` times."""

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        name: str = "retry",
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._config = config or RetryConfig()
        self._name = name
        self._sleep = sleep
        self._clock = clock
        self._rng = rng
        self._executor: ThreadPoolExecutor | None = None
        if self._config.global_timeout_seconds is not None:
            self._executor = ThreadPoolExecutor(thread_name_prefix=f"retry-{name}")

    @property
    def config(self) -> RetryConfig:
        return self._config

    def compute_delay(self, attempt: int) -> float:
        """Delay in seconds to wait after the 0-based *attempt* failed."""
        cfg = self._config
        delay = cfg.initial_delay_seconds * cfg.backoff_multiplier**attempt
        delay = min(delay, cfg.max_delay_seconds)
        if cfg.jitter_enabled:
            spread = delay * JITTER_RATIO
            delay += (self._rng() - 0.5) * 2 * spread
        return max(0.0, round(delay, 3))

    def max_total_delay(self) -> float:
        """Upper bound of the sum of backoff delays, ignoring jitter."""
        cfg = self._config
        total = sum(
            min(cfg.initial_delay_seconds * cfg.backoff_multiplier**i, cfg.max_delay_seconds)
            for i in range(cfg.max_retries)
        )
        if cfg.global_timeout_seconds is not None:
            return min(total, cfg.global_timeout_seconds)
        return total

    def execute(
        self, operation: Callable[[], T], context: str | None = None
    ) -> RetryResult[T]:
        cfg = self._config
        context = context or "operation"
        started = self._clock()
        deadline = (
            started + cfg.global_timeout_seconds
            if cfg.global_timeout_seconds is not None
            else None
        )
        details: list[AttemptDetail] = []
        last_error: BaseException | None = None

        for attempt in range(cfg.max_retries + 1):
            attempt_started = self._clock()
            if deadline is not None and attempt_started >= deadline:
                return self._timed_out(details, started, last_error, context)

            try:
                result = self._run(operation, deadline)
            except _GlobalDeadline:
                details.append(
                    AttemptDetail(
                        attempt=attempt + 1,
                        delay_seconds=0.0,
                        started_at=attempt_started,
                        error="global timeout",
                        error_kind=ErrorKind.TIMEOUT,
                    )
                )
                return self._timed_out(details, started, last_error, context)
            except Exception as exc:
                last_error = exc
            else:
                details.append(
                    AttemptDetail(
                        attempt=attempt + 1, delay_seconds=0.0, started_at=attempt_started
                    )
                )
                return RetryResult(
                    success=True,
                    attempts=attempt + 1,
                    total_time_ms=self._elapsed_ms(started),
                    attempt_details=tuple(details),
                    result=result,
                )

            kind = classify(last_error)
            message = describe(last_error)

            if not cfg.is_retriable(last_error):
                details.append(
                    AttemptDetail(
                        attempt=attempt + 1,
                        delay_seconds=0.0,
                        started_at=attempt_started,
                        error=message,
                        error_kind=kind,
                    )
                )
                logger.info(
                    "Non-retriable error, giving up",
                    extra={
                        "retry": self._name,
                        "context": context,
                        "attempt": attempt + 1,
                        "error_kind": kind,
                        "error": message,
                    },
                )
                return RetryResult(
                    success=False,
                    attempts=attempt + 1,
                    total_time_ms=self._elapsed_ms(started),
                    attempt_details=tuple(details),
                    error=NonRetriableError(last_error),
                )

            if attempt == cfg.max_retries:
                details.append(
                    AttemptDetail(
                        attempt=attempt + 1,
                        delay_seconds=0.0,
                        started_at=attempt_started,
                        error=message,
                        error_kind=kind,
                    )
                )
                break

            delay = self.compute_delay(attempt)
            # Honour a server or breaker hint (Retry-After, reset window).
            retry_after = getattr(last_error, "retry_after", None)
            if retry_after:
                delay = max(delay, round(retry_after, 3))
            details.append(
                AttemptDetail(
                    attempt=attempt + 1,
                    delay_seconds=delay,
                    started_at=attempt_started,
                    error=message,
                    error_kind=kind,
                )
            )
            if deadline is not None and self._clock() + delay >= deadline:
                return self._timed_out(details, started, last_error, context)

            if cfg.on_retry is not None:
                cfg.on_retry(attempt + 1, last_error, delay)
            logger.warning(
                "Attempt failed, retrying",
                extra={
                    "retry": self._name,
                    "context": context,
                    "attempt": attempt + 1,
                    "max_attempts": cfg.max_retries + 1,
                    "error_kind": kind,
                    "error": message,
                    "delay_seconds": delay,
                },
            )
            self._sleep(delay)

        logger.error(
            "All attempts failed",
            extra={
                "retry": self._name,
                "context": context,
                "attempts": cfg.max_retries + 1,
                "error": describe(last_error) if last_error else None,
            },
        )
        return RetryResult(
            success=False,
            attempts=cfg.max_retries + 1,
            total_time_ms=self._elapsed_ms(started),
            attempt_details=tuple(details),
            error=last_error,
        )

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def _run(self, operation: Callable[[], T], deadline: float | None) -> T:
        if deadline is None or self._executor is None:
            return operation()
        future = self._executor.submit(operation)
        try:
            return future.result(timeout=max(0.0, deadline - self._clock()))
        except FutureTimeoutError:
            if future.done():
                raise
            future.cancel()
            raise _GlobalDeadline() from None

    def _timed_out(
        self,
        details: list[AttemptDetail],
        started: float,
        last_error: BaseException | None,
        context: str,
    ) -> RetryResult:
        elapsed_ms = self._elapsed_ms(started)
        attempts = len(details)
        error = RetryTimeoutError(attempts, elapsed_ms)
        error.__cause__ = last_error
        logger.error(
            "Retry budget exhausted",
            extra={
                "retry": self._name,
                "context": context,
                "attempts": attempts,
                "elapsed_ms": elapsed_ms,
            },
        )
        return RetryResult(
            success=False,
            attempts=attempts,
            total_time_ms=elapsed_ms,
            attempt_details=tuple(details),
            error=error,
        )

    def _elapsed_ms(self, started: float) -> float:
        return (self._clock() - started) * 1000


class _GlobalDeadline(Exception):
    """Internal signal: the attempt outlived the global budget."""
