"""Retry executor with exponential backoff, jitter and circuit breaking."""

import asyncio
import random
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from rental_analysis.exceptions import (
    CircuitOpenError,
    NetworkError,
    RequestCancelledError,
    RequestTimeoutError,
    ResponseValidationError,
    ServerError,
)
from rental_analysis.monitoring.logger import StructuredLogger
from rental_analysis.resilience.backoff import compute_delay
from rental_analysis.resilience.cancellation import CancellationToken
from rental_analysis.resilience.circuit_breaker import CircuitBreaker, Reject


T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

RETRYABLE_SIGNATURES = (
    "network error",
    "timeout",
    "connection",
    "quota exceeded",
    "rate limit",
    "temporarily unavailable",
    "internal server error",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
)


def is_retryable_failure(failure: BaseException) -> bool:
    """
    Default retry condition.

    Transport failures, timeouts, rate limits and 5xx responses are retried;
    cancellations, validation errors and anything unrecognised are not.
    """
    if isinstance(failure, (RequestCancelledError, ResponseValidationError, CircuitOpenError)):
        return False
    if isinstance(failure, (NetworkError, RequestTimeoutError)):
        return True
    if isinstance(failure, ServerError):
        return failure.status_code in RETRYABLE_STATUS_CODES or failure.status_code >= 500
    message = str(failure).lower()
    return any(signature in message for signature in RETRYABLE_SIGNATURES)


def _no_op_on_retry(attempt: int, failure: BaseException, delay_ms: int) -> None:
    return None


@dataclass(frozen=True)
class RetryOptions:
    """Per-call retry policy. Use ``dataclasses.replace`` to derive variants."""
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_factor: float = 2.0
    retry_condition: Callable[[BaseException], bool] = field(default=is_retryable_failure)
    on_retry: Callable[[int, BaseException, int], None] = field(default=_no_op_on_retry)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got: {self.max_attempts}")
        if self.base_delay_ms <= 0:
            raise ValueError(f"base_delay_ms must be positive, got: {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= base_delay_ms ({self.base_delay_ms})"
            )
        if self.backoff_factor <= 1:
            raise ValueError(f"backoff_factor must be greater than 1, got: {self.backoff_factor}")

    def with_overrides(self, **overrides) -> "RetryOptions":
        return replace(self, **overrides)


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    """Outcome of ``RetryExecutor.execute``; exactly one of value/failure is meaningful."""
    succeeded: bool
    value: Optional[T] = None
    failure: Optional[BaseException] = None
    attempts_made: int = 0
    cumulative_delay_ms: int = 0


class RetryExecutor:
    """
    Runs an async operation, retrying retryable failures with backoff.

    Attempts never overlap: the backoff delay is awaited before the next
    attempt starts. When a breaker key is given, every attempt first asks
    the circuit breaker for permission and a rejection raises
    ``CircuitOpenError`` immediately.
    """

    def __init__(
        self,
        circuit_breaker: Optional[CircuitBreaker] = None,
        sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        logger: Optional[StructuredLogger] = None
    ):
        """
        Initialize retry executor.

        Args:
            circuit_breaker: Breaker registry consulted when a breaker key is passed
            sleeper: Async sleep function taking seconds (default: asyncio.sleep)
            rng: Random source for backoff jitter
            logger: Optional structured logger for telemetry
        """
        self.circuit_breaker = circuit_breaker
        self._sleep = sleeper
        self._rng = rng
        self.logger = logger

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        options: Optional[RetryOptions] = None,
        breaker_key: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> RetryResult[T]:
        """
        Execute operation with retry logic.

        Args:
            operation: Zero-argument coroutine function performing one attempt
            options: Retry policy (defaults to ``RetryOptions()``)
            breaker_key: Circuit breaker key guarding the operation
            cancel_token: Cooperative cancellation; once cancelled no further
                attempt or backoff delay is started

        Returns:
            RetryResult describing success or the last failure

        Raises:
            CircuitOpenError: If the breaker rejects an attempt
        """
        options = options or RetryOptions()
        if breaker_key is not None and self.circuit_breaker is None:
            raise ValueError("breaker_key given but no circuit breaker configured")

        cumulative_delay_ms = 0
        failure: Optional[BaseException] = None
        attempt = 0

        while attempt < options.max_attempts:
            if cancel_token is not None and cancel_token.is_cancelled():
                failure = cancel_token.error()
                break

            attempt += 1
            if breaker_key is not None:
                decision = self.circuit_breaker.before_call(breaker_key)
                if isinstance(decision, Reject):
                    raise CircuitOpenError(breaker_key, decision.remaining_cooldown_ms)

            try:
                value = await operation()
            except asyncio.CancelledError:
                if breaker_key is not None:
                    self.circuit_breaker.release(breaker_key)
                raise
            except Exception as exc:
                failure = exc
                self._record_failure(breaker_key, exc)
                if self.logger:
                    self.logger.attempt_failed(attempt, options.max_attempts, str(exc))

                if attempt >= options.max_attempts or not options.retry_condition(exc):
                    break
                if cancel_token is not None and cancel_token.is_cancelled():
                    failure = cancel_token.error()
                    break

                delay_ms = compute_delay(
                    attempt - 1,
                    options.base_delay_ms,
                    options.backoff_factor,
                    options.max_delay_ms,
                    self._rng
                )
                options.on_retry(attempt, exc, delay_ms)
                if self.logger:
                    self.logger.retry_scheduled(attempt, options.max_attempts, delay_ms, str(exc))

                try:
                    await self._pause(delay_ms, cancel_token)
                except (RequestCancelledError, RequestTimeoutError) as cancelled:
                    failure = cancelled
                    break
                cumulative_delay_ms += delay_ms
            else:
                if breaker_key is not None:
                    self.circuit_breaker.on_success(breaker_key)
                return RetryResult(
                    succeeded=True,
                    value=value,
                    attempts_made=attempt,
                    cumulative_delay_ms=cumulative_delay_ms
                )

        if self.logger:
            self.logger.retry_exhausted(attempt, cumulative_delay_ms, str(failure) if failure else None)
        return RetryResult(
            succeeded=False,
            failure=failure,
            attempts_made=attempt,
            cumulative_delay_ms=cumulative_delay_ms
        )

    def wrap(
        self,
        options: Optional[RetryOptions] = None,
        breaker_key: Optional[str] = None
    ) -> Callable[[Callable[[], Awaitable[T]]], Awaitable[RetryResult[T]]]:
        """Bind a policy so other network-calling components can reuse it."""
        async def run(operation: Callable[[], Awaitable[T]],
                      cancel_token: Optional[CancellationToken] = None) -> RetryResult[T]:
            return await self.execute(operation, options, breaker_key, cancel_token)
        return run

    def _record_failure(self, breaker_key: Optional[str], exc: Exception) -> None:
        if breaker_key is None:
            return
        if isinstance(exc, RequestCancelledError):
            # A user abort says nothing about the service's health
            self.circuit_breaker.release(breaker_key)
        else:
            self.circuit_breaker.on_failure(breaker_key, exc)

    async def _pause(self, delay_ms: int, cancel_token: Optional[CancellationToken]) -> None:
        if cancel_token is None:
            await self._sleep(delay_ms / 1000)
            return
        await cancel_token.run(self._sleep(delay_ms / 1000))
