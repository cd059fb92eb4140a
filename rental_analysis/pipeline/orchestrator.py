"""Analysis orchestrator coordinating the remote call and its fallbacks."""

import asyncio
import math
import random
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from rental_analysis.analysis.degraded_mode import DegradedModeController, LocalMetricsFunction
from rental_analysis.analysis.fallback import FallbackStrategy, user_message_for
from rental_analysis.analysis.validator import ResponseValidator
from rental_analysis.exceptions import (
    FETCH_FAILURE_SIGNATURE,
    CircuitOpenError,
    NetworkError,
    RemoteAnalysisError,
    RequestCancelledError,
    RequestTimeoutError,
    ResponseValidationError,
    ServerError,
)
from rental_analysis.models.config import AnalysisConfig
from rental_analysis.models.data_models import (
    AnalysisKind,
    AnalysisOutcome,
    AnalysisPayload,
    AnalysisProgress,
    DegradedModeSnapshot,
    ErrorKind,
    OutcomeSource,
)
from rental_analysis.monitoring.logger import StructuredLogger
from rental_analysis.resilience.cancellation import CancellationToken, CancelReason
from rental_analysis.resilience.circuit_breaker import CircuitBreaker, Clock, MonotonicClock
from rental_analysis.resilience.http_client import AsyncHTTPClient
from rental_analysis.resilience.retry_executor import RetryExecutor, RetryOptions, is_retryable_failure


@dataclass
class AnalysisOptions:
    """Per-request overrides; unset fields fall back to the configuration."""
    expected_kind: Optional[Union[AnalysisKind, str]] = None
    timeout_ms: Optional[int] = None
    max_attempts: Optional[int] = None
    on_retry: Optional[Callable[[int, BaseException, int], None]] = None
    on_progress: Optional[Callable[[AnalysisProgress], None]] = None


class AnalysisOrchestrator:
    """
    Single entry point for requesting an analysis of business records.

    Composes the retry executor, circuit breaker, validator, sanitizer and
    degraded-mode controller, and always answers with an ``AnalysisOutcome``
    instead of raising. Callers are expected to issue one request at a time.
    """

    def __init__(
        self,
        config: Optional[AnalysisConfig] = None,
        http_client: Optional[AsyncHTTPClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        degraded_mode: Optional[DegradedModeController] = None,
        validator: Optional[ResponseValidator] = None,
        fallback: Optional[FallbackStrategy] = None,
        local_metrics: Optional[LocalMetricsFunction] = None,
        clock: Optional[Clock] = None,
        sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        logger: Optional[StructuredLogger] = None
    ):
        """
        Initialize orchestrator.

        Args:
            config: Analysis configuration (defaults to ``AnalysisConfig()``)
            http_client: Client used for the remote call; entered once per attempt
            circuit_breaker: Breaker registry shared with other callers
            degraded_mode: Request-level failure tracker
            validator: Response schema validator
            fallback: Summary extraction and failure classification
            local_metrics: Offline narrative function for degraded mode
            clock: Clock shared by the breaker and degraded-mode defaults
            sleeper: Async sleep used between attempts
            rng: Random source for backoff jitter
            logger: Structured logger (defaults to one at ``config.log_level``)
        """
        self.config = config or AnalysisConfig()
        self.logger = logger or StructuredLogger(level=self.config.log_level)
        self.clock = clock or MonotonicClock()
        self.http_client = http_client or AsyncHTTPClient(
            connect_timeout=self.config.connect_timeout,
            read_timeout=self.config.request_timeout_ms / 1000,
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=self.config.circuit_breaker_failure_threshold,
            reset_timeout_ms=self.config.circuit_breaker_reset_timeout_ms,
            clock=self.clock,
            logger=self.logger,
        )
        self.validator = validator or ResponseValidator(logger=self.logger)
        self.fallback = fallback or FallbackStrategy()
        self.degraded_mode = degraded_mode or DegradedModeController(
            threshold=self.config.degradation_threshold,
            cooldown_seconds=self.config.degraded_cooldown_seconds,
            clock=self.clock,
            local_metrics=local_metrics,
            sanitizer=self.fallback.sanitizer,
            logger=self.logger,
        )
        self.executor = RetryExecutor(
            circuit_breaker=self.circuit_breaker,
            sleeper=sleeper,
            rng=rng,
            logger=self.logger,
        )
        self._token: Optional[CancellationToken] = None

    def _should_retry(self, failure: BaseException) -> bool:
        """Every non-2xx answer is worth another attempt; bad payloads never are."""
        if isinstance(failure, RemoteAnalysisError) or self.fallback.is_validation_error(failure):
            return False
        if isinstance(failure, ServerError):
            return True
        return is_retryable_failure(failure)

    @property
    def in_flight(self) -> bool:
        return self._token is not None

    def snapshot(self) -> DegradedModeSnapshot:
        return self.degraded_mode.snapshot()

    def cancel_in_flight(self) -> bool:
        """
        Cancel the running request, if any.

        Returns:
            True if a request was running and is now cancelled
        """
        token = self._token
        if token is None or token.is_cancelled():
            return False
        self.logger.log("analysis_cancel_requested")
        token.cancel(CancelReason.USER)
        return True

    async def request_analysis(
        self,
        payload: AnalysisPayload,
        options: Optional[AnalysisOptions] = None
    ) -> AnalysisOutcome:
        """
        Request an analysis of ``payload``.

        Malformed payloads and unknown kinds are rejected without a network
        call. While degraded, the local KPI narrative is returned instead of
        calling the service. A call made while another request is running is
        refused without touching the running one.

        Returns:
            AnalysisOutcome describing the narrative or the classified failure
        """
        if self.in_flight:
            return self._busy_outcome()

        options = options or AnalysisOptions()
        kind = self._resolve_kind(payload, options)
        if kind is None:
            self.logger.warning("analysis_failure", error_kind=ErrorKind.INVALID_PAYLOAD.value)
            return AnalysisOutcome(
                succeeded=False,
                error_kind=ErrorKind.INVALID_PAYLOAD,
                user_message=user_message_for(ErrorKind.INVALID_PAYLOAD),
            )

        if self.degraded_mode.is_degraded():
            return self._local_outcome(payload, attempts_made=0)

        timeout_ms = options.timeout_ms or self.config.request_timeout_ms
        max_attempts = options.max_attempts or self.config.max_attempts
        token = CancellationToken()
        self._token = token
        attempts = 0

        def notify(stage: str, attempt: int = 0, delay_ms: Optional[int] = None) -> None:
            if options.on_progress:
                options.on_progress(AnalysisProgress(stage, attempt, max_attempts, delay_ms))

        def on_retry(attempt: int, failure: BaseException, delay_ms: int) -> None:
            if options.on_retry:
                options.on_retry(attempt, failure, delay_ms)
            notify("retrying", attempt, delay_ms)

        async def attempt_once() -> str:
            nonlocal attempts
            attempts += 1
            notify("attempt", attempts)
            return await self._attempt(payload, kind, token, timeout_ms)

        retry_options = RetryOptions(
            max_attempts=max_attempts,
            base_delay_ms=self.config.base_delay_ms,
            max_delay_ms=self.config.max_delay_ms,
            backoff_factor=self.config.backoff_factor,
            retry_condition=self._should_retry,
            on_retry=on_retry,
        )

        self.logger.log("analysis_start", expected_kind=kind.value, max_attempts=max_attempts,
                        timeout_ms=timeout_ms, service=self.config.service_key)
        notify("started")
        try:
            result = await self.executor.execute(
                attempt_once,
                retry_options,
                breaker_key=self.config.service_key,
                cancel_token=token,
            )
            failure = result.failure
        except CircuitOpenError as exc:
            result = None
            failure = exc
        finally:
            if self._token is token:
                self._token = None

        if result is not None and result.succeeded:
            self.degraded_mode.record_success()
            self.logger.log("analysis_success", attempts=attempts, expected_kind=kind.value)
            notify("completed", attempts)
            return AnalysisOutcome(
                succeeded=True,
                narrative=result.value,
                sanitized=True,
                source=OutcomeSource.REMOTE,
                attempts_made=attempts,
            )

        notify("failed", attempts)
        return self._failure_outcome(payload, failure, attempts, timeout_ms, max_attempts)

    async def retry_analysis(
        self,
        payload: AnalysisPayload,
        options: Optional[AnalysisOptions] = None
    ) -> AnalysisOutcome:
        """User-initiated retry: leave degraded mode, then request normally."""
        if self.in_flight:
            return self._busy_outcome()
        self.logger.log("manual_retry", **asdict(self.degraded_mode.snapshot()))
        self.degraded_mode.force_reset()
        return await self.request_analysis(payload, options)

    def submit_manual_analysis(self, text: str) -> AnalysisOutcome:
        """
        Accept a narrative written by the user in place of the remote analysis.

        Raises:
            ValueError: If ``text`` is empty
        """
        narrative = self.degraded_mode.accept_manual_input(text)
        self.logger.log("manual_analysis_accepted", length=len(narrative))
        return AnalysisOutcome(
            succeeded=True,
            narrative=narrative,
            sanitized=True,
            source=OutcomeSource.MANUAL,
        )

    @staticmethod
    def _resolve_kind(payload: AnalysisPayload, options: AnalysisOptions) -> Optional[AnalysisKind]:
        if not isinstance(payload, AnalysisPayload) or not payload.is_well_formed():
            return None
        try:
            return AnalysisKind(options.expected_kind or payload.expected_kind())
        except ValueError:
            return None

    def _busy_outcome(self) -> AnalysisOutcome:
        self.logger.warning("analysis_rejected_in_flight")
        return AnalysisOutcome(
            succeeded=False,
            user_message="An analysis is already in progress. Wait for it or cancel it first.",
        )

    async def _attempt(
        self,
        payload: AnalysisPayload,
        kind: AnalysisKind,
        token: CancellationToken,
        timeout_ms: int
    ) -> str:
        """One network attempt bounded by its own deadline and the request token."""
        attempt_token = token.child(timeout_ms)
        timer = asyncio.get_running_loop().call_later(
            timeout_ms / 1000, attempt_token.cancel, CancelReason.TIMEOUT
        )
        try:
            response = await attempt_token.run(self._post(payload, timeout_ms))
        finally:
            timer.cancel()
            token.detach(attempt_token)
        return self._read_response(response, kind)

    async def _post(self, payload: AnalysisPayload, timeout_ms: int) -> httpx.Response:
        try:
            async with self.http_client as client:
                return await client.post(self.config.endpoint_url, json=payload.to_request_body())
        except httpx.ConnectError as exc:
            raise NetworkError(f"{FETCH_FAILURE_SIGNATURE}: {exc}") from exc
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(timeout_ms) from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"Network error: {exc}") from exc

    def _read_response(self, response: httpx.Response, kind: AnalysisKind) -> str:
        try:
            body: Any = response.json()
        except ValueError:
            body = None

        if not response.is_success:
            message = body.get("error") if isinstance(body, dict) else None
            if not isinstance(message, str) or not message:
                message = f"Server error ({response.status_code})"
            raise ServerError(message, response.status_code)

        validated = self.validator.validate(response.text if body is None else body, kind)
        if not validated.success:
            raise RemoteAnalysisError(validated.error or "Analysis service reported a failure")
        return self.fallback.get_sanitized_summary(validated, kind)

    def _failure_outcome(
        self,
        payload: AnalysisPayload,
        failure: Optional[BaseException],
        attempts: int,
        timeout_ms: int,
        max_attempts: int
    ) -> AnalysisOutcome:
        message = str(failure) if failure is not None else "Unknown error"

        if failure is not None and self.fallback.is_validation_error(failure):
            error_kind = ErrorKind.VALIDATION_ERROR
            user_message = user_message_for(error_kind)
            details = failure.to_detailed_string() if isinstance(failure, ResponseValidationError) else message
            self.logger.error("analysis_validation_failed", error=message, details=details)
        elif isinstance(failure, RemoteAnalysisError):
            error_kind = ErrorKind.SERVER_ERROR
            user_message = user_message_for(error_kind, message=message)
        elif isinstance(failure, CircuitOpenError):
            error_kind = ErrorKind.CIRCUIT_OPEN
            user_message = user_message_for(
                error_kind, remaining_seconds=math.ceil(failure.remaining_cooldown_ms / 1000)
            )
        else:
            classification = self.fallback.classify_terminal_failure(
                message,
                was_aborted=isinstance(failure, RequestTimeoutError),
                timeout_ms=timeout_ms,
                max_attempts=max_attempts,
            )
            error_kind = classification.error_kind
            user_message = classification.user_message

        self.logger.warning("analysis_failure", error_kind=error_kind.value, attempts=attempts, error=message)

        # A user abort says nothing about the service's health
        if not isinstance(failure, RequestCancelledError) and self.degraded_mode.record_failure():
            return self._local_outcome(payload, attempts_made=attempts)

        return AnalysisOutcome(
            succeeded=False,
            error_kind=error_kind,
            user_message=user_message,
            attempts_made=attempts,
        )

    def _local_outcome(self, payload: AnalysisPayload, attempts_made: int) -> AnalysisOutcome:
        narrative = self.degraded_mode.local_narrative(payload, self.config.total_cabins)
        remaining = self.degraded_mode.snapshot().remaining_cooldown_seconds
        return AnalysisOutcome(
            succeeded=True,
            narrative=narrative,
            sanitized=False,
            user_message=(
                "The analysis service is unavailable after repeated failures. Showing a local KPI "
                f"analysis; remote analysis resumes in {remaining}s."
            ),
            source=OutcomeSource.LOCAL,
            degraded=True,
            attempts_made=attempts_made,
        )
