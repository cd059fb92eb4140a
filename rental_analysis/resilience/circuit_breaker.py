"""Circuit breaker implementation with explicit state management."""

import math
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Union

from rental_analysis.models.data_models import CircuitState
from rental_analysis.monitoring.logger import StructuredLogger


class Clock(Protocol):
    """Clock interface for testable time management."""

    def now(self) -> float:
        """Return current time in seconds."""
        ...


class MonotonicClock:
    """Default clock implementation using time.monotonic."""

    def now(self) -> float:
        """Return current monotonic time in seconds."""
        return time.monotonic()


@dataclass(frozen=True)
class Allow:
    """Permission to call the guarded operation.

    ``trial`` is set when the call is the single HALF_OPEN probe.
    """
    key: str
    trial: bool = False


@dataclass(frozen=True)
class Reject:
    """Refusal to call the guarded operation."""
    key: str
    remaining_cooldown_ms: int


Decision = Union[Allow, Reject]


@dataclass
class CircuitBreakerState:
    """Internal state for a single circuit breaker."""
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    trial_in_flight: bool = False
    failure_threshold: Optional[int] = None
    reset_timeout_ms: Optional[int] = None


class CircuitBreaker:
    """
    Registry of circuit breakers keyed by service identifier.

    Each key moves through CLOSED/OPEN/HALF_OPEN:
    - Opens after ``failure_threshold`` consecutive failures while CLOSED
    - Stays open for ``reset_timeout_ms``
    - Then admits exactly one trial call (HALF_OPEN); concurrent callers are rejected
    - Closes on a successful trial or re-opens on a failed one

    Updates are serialized with a lock so keys can be used from several
    tasks or threads at once.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout_ms: int = 30000,
        clock: Optional[Clock] = None,
        logger: Optional[StructuredLogger] = None
    ):
        """
        Initialize circuit breaker registry.

        Args:
            failure_threshold: Number of consecutive failures before opening a circuit
            reset_timeout_ms: Time to wait before admitting a trial call
            clock: Clock interface for time management (defaults to MonotonicClock)
            logger: Optional structured logger for state transitions
        """
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be at least 1, got: {failure_threshold}")
        if reset_timeout_ms <= 0:
            raise ValueError(f"reset_timeout_ms must be positive, got: {reset_timeout_ms}")
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self.clock = clock or MonotonicClock()
        self.logger = logger
        self._circuits: Dict[str, CircuitBreakerState] = {}
        self._lock = threading.Lock()

    def _get_circuit(self, key: str) -> CircuitBreakerState:
        """Get or create circuit state for key."""
        if key not in self._circuits:
            self._circuits[key] = CircuitBreakerState()
        return self._circuits[key]

    def _threshold(self, circuit: CircuitBreakerState) -> int:
        if circuit.failure_threshold is not None:
            return circuit.failure_threshold
        return self.failure_threshold

    def _reset_timeout(self, circuit: CircuitBreakerState) -> int:
        if circuit.reset_timeout_ms is not None:
            return circuit.reset_timeout_ms
        return self.reset_timeout_ms

    def _remaining_ms(self, circuit: CircuitBreakerState, now: float) -> int:
        if circuit.opened_at is None:
            return 0
        elapsed_ms = (now - circuit.opened_at) * 1000
        return max(0, math.ceil(self._reset_timeout(circuit) - elapsed_ms))

    def _transition(self, key: str, circuit: CircuitBreakerState, state: CircuitState,
                    error: Optional[str] = None) -> None:
        if circuit.state == state:
            return
        previous = circuit.state
        circuit.state = state
        if self.logger:
            self.logger.circuit_transition(key, previous.value, state.value, error)

    def configure(
        self,
        key: str,
        failure_threshold: Optional[int] = None,
        reset_timeout_ms: Optional[int] = None
    ) -> None:
        """Override threshold or reset timeout for a single key."""
        if failure_threshold is not None and failure_threshold < 1:
            raise ValueError(f"failure_threshold must be at least 1, got: {failure_threshold}")
        if reset_timeout_ms is not None and reset_timeout_ms <= 0:
            raise ValueError(f"reset_timeout_ms must be positive, got: {reset_timeout_ms}")
        with self._lock:
            circuit = self._get_circuit(key)
            if failure_threshold is not None:
                circuit.failure_threshold = failure_threshold
            if reset_timeout_ms is not None:
                circuit.reset_timeout_ms = reset_timeout_ms

    def before_call(self, key: str) -> Decision:
        """
        Decide whether a call for key may proceed.

        Args:
            key: Service identifier

        Returns:
            - Allow if circuit is CLOSED
            - Allow(trial=True) for the first caller once the OPEN cooldown has elapsed
            - Reject with the remaining cooldown otherwise
        """
        with self._lock:
            circuit = self._get_circuit(key)
            now = self.clock.now()

            if circuit.state == CircuitState.CLOSED:
                return Allow(key)

            if circuit.state == CircuitState.OPEN:
                remaining = self._remaining_ms(circuit, now)
                if remaining > 0:
                    return Reject(key, remaining)
                self._transition(key, circuit, CircuitState.HALF_OPEN)
                circuit.trial_in_flight = True
                return Allow(key, trial=True)

            # HALF_OPEN: only one trial at a time
            if circuit.trial_in_flight:
                return Reject(key, 0)
            circuit.trial_in_flight = True
            return Allow(key, trial=True)

    def on_success(self, key: str) -> None:
        """Record a successful call for key."""
        with self._lock:
            circuit = self._get_circuit(key)
            circuit.trial_in_flight = False
            circuit.consecutive_failures = 0
            if circuit.state == CircuitState.HALF_OPEN:
                circuit.opened_at = None
                self._transition(key, circuit, CircuitState.CLOSED)

    def on_failure(self, key: str, error: Optional[BaseException] = None) -> None:
        """Record a failed call for key."""
        with self._lock:
            circuit = self._get_circuit(key)
            now = self.clock.now()
            circuit.trial_in_flight = False
            circuit.consecutive_failures += 1
            message = str(error) if error is not None else None

            if circuit.state == CircuitState.HALF_OPEN:
                # Failed trial - reopen with a fresh cooldown
                circuit.opened_at = now
                self._transition(key, circuit, CircuitState.OPEN, message)
            elif (circuit.state == CircuitState.CLOSED
                  and circuit.consecutive_failures >= self._threshold(circuit)):
                circuit.opened_at = now
                self._transition(key, circuit, CircuitState.OPEN, message)

    def release(self, key: str) -> None:
        """Free a trial slot without recording an outcome (the call was abandoned)."""
        with self._lock:
            circuit = self._get_circuit(key)
            circuit.trial_in_flight = False

    def state(self, key: str) -> CircuitState:
        """
        Get current circuit state for key.

        Returns:
            Current CircuitState (CLOSED, OPEN, or HALF_OPEN)
        """
        with self._lock:
            return self._get_circuit(key).state

    def consecutive_failures(self, key: str) -> int:
        with self._lock:
            return self._get_circuit(key).consecutive_failures

    def remaining_cooldown_ms(self, key: str) -> int:
        """Milliseconds until an OPEN circuit admits a trial call; 0 otherwise."""
        with self._lock:
            circuit = self._get_circuit(key)
            if circuit.state != CircuitState.OPEN:
                return 0
            return self._remaining_ms(circuit, self.clock.now())

    def reset(self, key: str) -> None:
        """Reset circuit breaker for key, keeping per-key overrides."""
        with self._lock:
            if key in self._circuits:
                old = self._circuits[key]
                self._circuits[key] = CircuitBreakerState(
                    failure_threshold=old.failure_threshold,
                    reset_timeout_ms=old.reset_timeout_ms,
                )
