"""Exception hierarchy for the rental-analysis package.

All domain-specific exceptions inherit from ``RentalAnalysisError`` so
callers can catch the entire family with a single ``except`` clause.
"""

import json
from dataclasses import dataclass
from typing import Any, List, Optional


FETCH_FAILURE_SIGNATURE = "Failed to fetch"
USER_ABORT_SIGNATURE = "cancelled by user"


class RentalAnalysisError(Exception):
    """Base exception for all rental-analysis errors."""


# ---------------------------------------------------------------------------
# Transport errors
# ---------------------------------------------------------------------------


class NetworkError(RentalAnalysisError):
    """Raised when the transport fails before a response is received."""


class ServerError(RentalAnalysisError):
    """Raised for a non-2xx response from the remote service."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class RequestTimeoutError(RentalAnalysisError):
    """Raised when a single attempt exceeds its deadline."""

    def __init__(self, timeout_ms: int):
        super().__init__(f"Request timeout after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class RequestCancelledError(RentalAnalysisError):
    """Raised when the caller cancels an in-flight request."""

    def __init__(self, message: str = f"Analysis request {USER_ABORT_SIGNATURE}"):
        super().__init__(message)


# ---------------------------------------------------------------------------
# Response errors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ValidationIssue:
    """One schema mismatch, located by a dotted path."""
    path: str
    message: str
    kind: str = "value_error"


class ResponseValidationError(RentalAnalysisError):
    """Raised when a remote response does not match the expected schema.

    Keeps the original payload and every mismatch for diagnostics.
    """

    def __init__(self, message: str, raw: Any, issues: Optional[List[ValidationIssue]] = None):
        super().__init__(message)
        self.raw = raw
        self.issues = list(issues or [])

    def to_detailed_string(self) -> str:
        if self.issues:
            details = "\n".join(f"- {issue.path}: {issue.message}" for issue in self.issues)
        else:
            details = str(self)
        try:
            original = json.dumps(self.raw, indent=2, default=str)
        except (TypeError, ValueError):
            original = repr(self.raw)
        return f"{self}\nValidation Errors: {details}\nOriginal Response: {original}"


class RemoteAnalysisError(RentalAnalysisError):
    """Raised when the remote service answers ``success: false``."""


class SummaryMissingError(RentalAnalysisError):
    """Raised when a validated analysis has no narrative for its kind."""


# ---------------------------------------------------------------------------
# Circuit breaker errors
# ---------------------------------------------------------------------------


class CircuitOpenError(RentalAnalysisError):
    """Raised when the circuit breaker rejects a call."""

    def __init__(self, key: str, remaining_cooldown_ms: int, message: Optional[str] = None):
        super().__init__(
            message or f"Circuit breaker for {key} is open (retry in {remaining_cooldown_ms}ms)"
        )
        self.key = key
        self.remaining_cooldown_ms = remaining_cooldown_ms
