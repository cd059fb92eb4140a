"""Core data models for the remote analysis pipeline."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class AnalysisKind(str, Enum):
    """Shape of analysis expected back from the remote service."""
    FINANCIAL = "financial"
    RESERVATION = "reservation"
    COMBINED = "combined"


class ErrorKind(str, Enum):
    """Terminal failure taxonomy exposed to callers."""
    NETWORK_ERROR = "NETWORK_ERROR"
    SERVER_ERROR = "SERVER_ERROR"
    TIMEOUT = "TIMEOUT"
    USER_CANCELLED = "USER_CANCELLED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"


class OutcomeSource(str, Enum):
    """Where the narrative of an outcome came from."""
    REMOTE = "remote"
    LOCAL = "local"
    MANUAL = "manual"


class TransactionType(str, Enum):
    """Transaction direction."""
    INCOME = "income"
    EXPENSE = "expense"


class ReservationStatus(str, Enum):
    """Reservation lifecycle status."""
    INFORMATION = "information"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class AnalysisPayload:
    """
    Business records to summarize.

    The core treats records as opaque JSON-serializable mappings; only the
    local KPI fallback looks inside them.
    """
    transactions: List[Dict[str, Any]] = field(default_factory=list)
    reservations: List[Dict[str, Any]] = field(default_factory=list)

    def is_well_formed(self) -> bool:
        """Both collections are lists and at least one is non-empty."""
        if not isinstance(self.transactions, list) or not isinstance(self.reservations, list):
            return False
        return bool(self.transactions) or bool(self.reservations)

    def expected_kind(self) -> AnalysisKind:
        """Infer which response shape to expect from the non-empty collections."""
        if self.transactions and self.reservations:
            return AnalysisKind.COMBINED
        if self.transactions:
            return AnalysisKind.FINANCIAL
        return AnalysisKind.RESERVATION

    def to_request_body(self) -> Dict[str, Any]:
        return {"transactions": self.transactions, "reservations": self.reservations}


@dataclass(frozen=True)
class AnalysisOutcome:
    """Uniform result of one analysis request. Never mutated after return."""
    succeeded: bool
    narrative: Optional[str] = None
    sanitized: bool = False
    error_kind: Optional[ErrorKind] = None
    user_message: Optional[str] = None
    source: Optional[OutcomeSource] = None
    degraded: bool = False
    attempts_made: int = 0


@dataclass(frozen=True)
class DegradedModeSnapshot:
    """Read-only view of degraded-mode state for display (e.g. a countdown)."""
    is_degraded: bool
    remaining_cooldown_seconds: int
    consecutive_failures: int


@dataclass(frozen=True)
class AnalysisProgress:
    """Progress notification emitted while a request is running."""
    stage: str  # started | attempt | retrying | completed | failed
    attempt: int = 0
    max_attempts: int = 0
    delay_ms: Optional[int] = None
