"""Structured logging for analysis pipeline monitoring."""

import json
import logging
from typing import Any, Optional


class StructuredLogger:
    """Structured logger with uniform schema."""

    def __init__(self, name: str = "rental_analysis", level: str = "INFO"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)

    def log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        """
        Log structured event.

        Standard keys: event, service, attempt, max_attempts, delay_ms,
                      error, error_kind, cb_state, consecutive_failures
        """
        log_data = {"event": event, **kwargs}
        self.logger.log(level, json.dumps(log_data, default=str))

    def warning(self, event: str, **kwargs: Any) -> None:
        self.log(event, level=logging.WARNING, **kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        self.log(event, level=logging.ERROR, **kwargs)

    def debug(self, event: str, **kwargs: Any) -> None:
        self.log(event, level=logging.DEBUG, **kwargs)

    def circuit_transition(self, service: str, previous: str, state: str, error: Optional[str] = None) -> None:
        level = logging.WARNING if state == "open" else logging.INFO
        self.log("circuit_transition", level=level, service=service,
                 previous_state=previous, cb_state=state, error=error)

    def retry_scheduled(self, attempt: int, max_attempts: int, delay_ms: int, error: str) -> None:
        self.log("retry_scheduled", attempt=attempt, max_attempts=max_attempts,
                 delay_ms=delay_ms, error=error)

    def attempt_failed(self, attempt: int, max_attempts: int, error: str) -> None:
        self.warning("retry_attempt_failed", attempt=attempt, max_attempts=max_attempts, error=error)

    def retry_exhausted(self, attempts: int, cumulative_delay_ms: int, error: Optional[str]) -> None:
        self.error("retry_exhausted", attempts=attempts,
                   cumulative_delay_ms=cumulative_delay_ms, error=error)

    def degraded_mode(self, event: str, consecutive_failures: int, remaining_seconds: int = 0) -> None:
        self.warning(event, consecutive_failures=consecutive_failures,
                     remaining_cooldown_seconds=remaining_seconds)
