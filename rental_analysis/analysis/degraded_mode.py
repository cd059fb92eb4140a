"""Request-level degraded mode: stop calling the remote service after repeated failures."""

import math
import threading
from typing import Any, Callable, Dict, List, Optional

from rental_analysis.analysis.local_metrics import generate_local_analysis
from rental_analysis.analysis.sanitizer import ContentSanitizer
from rental_analysis.models.data_models import AnalysisPayload, DegradedModeSnapshot
from rental_analysis.monitoring.logger import StructuredLogger
from rental_analysis.resilience.circuit_breaker import Clock, MonotonicClock


LocalMetricsFunction = Callable[[List[Dict[str, Any]], List[Dict[str, Any]], int], str]


class DegradedModeController:
    """
    Tracks consecutive terminal failures of user-initiated analysis requests.

    NORMAL -> DEGRADED once ``threshold`` failures accumulate; DEGRADED lasts
    ``cooldown_seconds`` and is left lazily by the first ``is_degraded`` check
    after it expires. Any success, manual retry or manual input returns to
    NORMAL with the counter cleared.
    """

    def __init__(
        self,
        threshold: int = 3,
        cooldown_seconds: float = 300.0,
        clock: Optional[Clock] = None,
        local_metrics: Optional[LocalMetricsFunction] = None,
        sanitizer: Optional[ContentSanitizer] = None,
        logger: Optional[StructuredLogger] = None
    ):
        if threshold < 1:
            raise ValueError(f"threshold must be at least 1, got: {threshold}")
        if cooldown_seconds <= 0:
            raise ValueError(f"cooldown_seconds must be positive, got: {cooldown_seconds}")
        self.threshold = threshold
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock or MonotonicClock()
        self.local_metrics = local_metrics or generate_local_analysis
        self.sanitizer = sanitizer or ContentSanitizer()
        self.logger = logger
        self._consecutive_failures = 0
        self._degraded_until: Optional[float] = None
        self._lock = threading.Lock()

    def _clear(self) -> None:
        self._consecutive_failures = 0
        self._degraded_until = None

    def is_degraded(self) -> bool:
        """True while the cooldown runs; the first call after expiry exits degraded mode."""
        with self._lock:
            if self._degraded_until is None:
                return False
            if self.clock.now() < self._degraded_until:
                return True
            failures = self._consecutive_failures
            self._clear()
        if self.logger:
            self.logger.degraded_mode("degraded_mode_exited", failures)
        return False

    def record_failure(self) -> bool:
        """
        Count one terminal request failure.

        Returns:
            True if this failure switched the controller into degraded mode
        """
        with self._lock:
            self._consecutive_failures += 1
            failures = self._consecutive_failures
            if self._degraded_until is not None or failures < self.threshold:
                return False
            self._degraded_until = self.clock.now() + self.cooldown_seconds
        if self.logger:
            self.logger.degraded_mode("degraded_mode_entered", failures, math.ceil(self.cooldown_seconds))
        return True

    def record_success(self) -> None:
        with self._lock:
            self._clear()

    def force_reset(self) -> None:
        """Return to NORMAL regardless of any running cooldown."""
        with self._lock:
            self._clear()

    def local_narrative(self, payload: AnalysisPayload, total_cabins: int) -> str:
        """Compute the offline narrative for ``payload`` without touching the network."""
        narrative = self.local_metrics(payload.transactions, payload.reservations, total_cabins)
        if self.logger:
            snapshot = self.snapshot()
            self.logger.degraded_mode(
                "degraded_mode_served_local",
                snapshot.consecutive_failures,
                snapshot.remaining_cooldown_seconds,
            )
        return narrative

    def accept_manual_input(self, text: str) -> str:
        """
        Accept a user-written narrative.

        Raises:
            ValueError: If ``text`` is empty or whitespace
        """
        if not text or not text.strip():
            raise ValueError("Manual analysis text must not be empty")
        self.force_reset()
        return self.sanitizer.sanitize(text.strip())

    def snapshot(self) -> DegradedModeSnapshot:
        with self._lock:
            now = self.clock.now()
            degraded = self._degraded_until is not None and now < self._degraded_until
            remaining = math.ceil(self._degraded_until - now) if degraded else 0
            return DegradedModeSnapshot(
                is_degraded=degraded,
                remaining_cooldown_seconds=remaining,
                consecutive_failures=self._consecutive_failures,
            )
