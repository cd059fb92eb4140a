"""Retry, backoff and circuit-breaking primitives for network calls."""

from .backoff import compute_delay
from .cancellation import CancellationToken, CancelReason
from .circuit_breaker import Allow, CircuitBreaker, MonotonicClock, Reject
from .http_client import AsyncHTTPClient
from .retry_executor import RetryExecutor, RetryOptions, RetryResult, is_retryable_failure

__all__ = [
    "Allow",
    "AsyncHTTPClient",
    "CancelReason",
    "CancellationToken",
    "CircuitBreaker",
    "MonotonicClock",
    "Reject",
    "RetryExecutor",
    "RetryOptions",
    "RetryResult",
    "compute_delay",
    "is_retryable_failure",
]
