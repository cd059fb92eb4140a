"""Unit tests for AnalysisOrchestrator.

Tests cover:
- Retry scenarios against a scripted transport
- Failure classification and degraded mode
- Timeouts, user cancellation and the circuit breaker
- Manual retry and manual analysis input
"""

import asyncio
import json
from unittest.mock import Mock

import httpx
import pytest

from rental_analysis.analysis.fallback import FallbackStrategy
from rental_analysis.exceptions import ResponseValidationError
from rental_analysis.models.data_models import AnalysisKind, AnalysisPayload, ErrorKind, OutcomeSource
from rental_analysis.monitoring.logger import StructuredLogger
from rental_analysis.pipeline.orchestrator import AnalysisOptions, AnalysisOrchestrator
from rental_analysis.resilience.circuit_breaker import CircuitBreaker
from rental_analysis.resilience.http_client import AsyncHTTPClient
from tests.fixtures.sample_data import (
    combined_response,
    get_sample_reservations,
    get_sample_transactions,
    report_response,
)


class ScriptedHandler:
    """MockTransport handler replaying responses; the last one repeats."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses[min(len(self.requests), len(self.responses)) - 1]
        if isinstance(item, type) and issubclass(item, Exception):
            raise item("scripted transport failure", request=request)
        return item


def ok(body=None) -> httpx.Response:
    return httpx.Response(200, json=body if body is not None else combined_response())


def server_error(status: int = 500, message: str = "Internal Server Error") -> httpx.Response:
    return httpx.Response(status, json={"error": message})


@pytest.fixture
def payload():
    return AnalysisPayload(get_sample_transactions(), get_sample_reservations())


@pytest.fixture
def logger():
    return Mock(spec=StructuredLogger)


@pytest.fixture
def make_orchestrator(sample_config, fake_clock, sleeper, rng, logger):
    def build(handler, config=None, **kwargs):
        kwargs.setdefault("clock", fake_clock)
        return AnalysisOrchestrator(
            config=config or sample_config,
            http_client=AsyncHTTPClient(transport=httpx.MockTransport(handler)),
            sleeper=sleeper,
            rng=rng,
            logger=logger,
            **kwargs,
        )
    return build


@pytest.fixture
def single_attempt_config(sample_config):
    return sample_config.model_copy(update={"max_attempts": 1})


class TestRetryScenarios:

    @pytest.mark.asyncio
    async def test_succeeds_after_one_server_error(self, make_orchestrator, payload, sleeper):
        handler = ScriptedHandler(server_error(), ok())
        orchestrator = make_orchestrator(handler)

        outcome = await orchestrator.request_analysis(payload)

        assert outcome.succeeded is True
        assert outcome.narrative == "<p>Good quarter</p>"
        assert outcome.sanitized is True
        assert outcome.source == OutcomeSource.REMOTE
        assert outcome.degraded is False
        assert outcome.attempts_made == 2
        assert handler.calls == 2
        assert len(sleeper.delays_ms) == 1
        assert 1000 <= sleeper.delays_ms[0] < 1100

    @pytest.mark.asyncio
    async def test_network_errors_exhaust_attempts(self, make_orchestrator, payload, sleeper):
        handler = ScriptedHandler(httpx.ReadError)
        orchestrator = make_orchestrator(handler)

        outcome = await orchestrator.request_analysis(payload)

        assert outcome.succeeded is False
        assert outcome.error_kind == ErrorKind.MAX_RETRIES_EXCEEDED
        assert outcome.user_message.startswith("Analysis failed after 3 attempts: Network error:")
        assert outcome.attempts_made == 3
        assert handler.calls == 3
        assert len(sleeper.delays) == 2
        assert 2000 <= sleeper.delays_ms[1] < 2200

    @pytest.mark.asyncio
    async def test_unreachable_server_is_network_error(self, make_orchestrator, payload):
        handler = ScriptedHandler(httpx.ConnectError)
        orchestrator = make_orchestrator(handler)

        outcome = await orchestrator.request_analysis(payload)

        assert outcome.error_kind == ErrorKind.NETWORK_ERROR
        assert outcome.user_message == "Cannot connect to the analysis server. Check that it is running."
        assert handler.calls == 3

    @pytest.mark.asyncio
    async def test_persistent_server_errors(self, make_orchestrator, payload):
        handler = ScriptedHandler(server_error(503, "Simulated error (503)"))
        orchestrator = make_orchestrator(handler)

        outcome = await orchestrator.request_analysis(payload)

        assert outcome.error_kind == ErrorKind.MAX_RETRIES_EXCEEDED
        assert outcome.user_message == "Analysis failed after 3 attempts: Simulated error (503)"
        assert handler.calls == 3

    @pytest.mark.asyncio
    async def test_error_status_without_json_body(self, make_orchestrator, payload):
        handler = ScriptedHandler(httpx.Response(502, text="<html>Bad Gateway</html>"))
        orchestrator = make_orchestrator(handler)

        outcome = await orchestrator.request_analysis(payload, AnalysisOptions(max_attempts=1))

        assert outcome.user_message == "Analysis failed after 1 attempts: Server error (502)"

    @pytest.mark.asyncio
    async def test_per_request_max_attempts(self, make_orchestrator, payload):
        handler = ScriptedHandler(server_error())
        orchestrator = make_orchestrator(handler)

        outcome = await orchestrator.request_analysis(payload, AnalysisOptions(max_attempts=2))

        assert outcome.attempts_made == 2
        assert handler.calls == 2


class TestResponseHandling:

    @pytest.mark.asyncio
    async def test_posts_records_as_json(self, make_orchestrator, payload):
        handler = ScriptedHandler(ok())
        orchestrator = make_orchestrator(handler)

        await orchestrator.request_analysis(payload)

        request = handler.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "http://analysis.test/api/analyze"
        assert json.loads(request.content) == {
            "transactions": get_sample_transactions(),
            "reservations": get_sample_reservations(),
        }

    @pytest.mark.asyncio
    async def test_remote_narrative_is_sanitized(self, make_orchestrator, payload):
        handler = ScriptedHandler(ok(combined_response("<p>Ok</p><script>alert(1)</script>")))
        orchestrator = make_orchestrator(handler)

        outcome = await orchestrator.request_analysis(payload)

        assert outcome.narrative == "<p>Ok</p>"

    @pytest.mark.asyncio
    async def test_kind_inferred_from_payload(self, make_orchestrator):
        handler = ScriptedHandler(ok(report_response("financial", "Steady income")))
        orchestrator = make_orchestrator(handler)

        outcome = await orchestrator.request_analysis(AnalysisPayload(get_sample_transactions(), []))

        assert outcome.narrative == "Steady income"

    @pytest.mark.asyncio
    async def test_expected_kind_override(self, make_orchestrator, payload):
        handler = ScriptedHandler(ok(report_response("reservation", "Busy weekends")))
        orchestrator = make_orchestrator(handler)

        outcome = await orchestrator.request_analysis(
            payload, AnalysisOptions(expected_kind=AnalysisKind.RESERVATION)
        )

        assert outcome.narrative == "Busy weekends"

    @pytest.mark.asyncio
    async def test_service_reported_failure_is_not_retried(self, make_orchestrator, payload):
        handler = ScriptedHandler(ok({"success": False, "error": "Quota exceeded"}))
        orchestrator = make_orchestrator(handler)

        outcome = await orchestrator.request_analysis(payload)

        assert outcome.error_kind == ErrorKind.SERVER_ERROR
        assert outcome.user_message == "The analysis service reported an error: Quota exceeded"
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_schema_mismatch_is_validation_error(self, make_orchestrator, payload, logger):
        body = combined_response()
        del body["data"]["executiveSummary"]
        handler = ScriptedHandler(ok(body))
        orchestrator = make_orchestrator(handler)

        outcome = await orchestrator.request_analysis(payload)

        assert outcome.succeeded is False
        assert outcome.error_kind == ErrorKind.VALIDATION_ERROR
        assert "executiveSummary" not in outcome.user_message
        assert handler.calls == 1
        events = [c.args[0] for c in logger.error.call_args_list]
        assert "analysis_validation_failed" in events

    @pytest.mark.asyncio
    async def test_non_json_success_body_is_validation_error(self, make_orchestrator, payload):
        handler = ScriptedHandler(httpx.Response(200, text="<html>maintenance</html>"))
        orchestrator = make_orchestrator(handler)

        outcome = await orchestrator.request_analysis(payload)

        assert outcome.error_kind == ErrorKind.VALIDATION_ERROR

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_payload", [
        AnalysisPayload([], []),
        AnalysisPayload("not a list", []),
        None,
    ])
    async def test_invalid_payload_makes_no_call(self, make_orchestrator, bad_payload):
        handler = ScriptedHandler(ok())
        orchestrator = make_orchestrator(handler)

        outcome = await orchestrator.request_analysis(bad_payload)

        assert outcome.succeeded is False
        assert outcome.error_kind == ErrorKind.INVALID_PAYLOAD
        assert handler.calls == 0
        assert orchestrator.snapshot().consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_unknown_expected_kind_is_invalid_payload(self, make_orchestrator, payload):
        handler = ScriptedHandler(ok())
        orchestrator = make_orchestrator(handler)

        outcome = await orchestrator.request_analysis(payload, AnalysisOptions(expected_kind="weekly"))

        assert outcome.succeeded is False
        assert outcome.error_kind == ErrorKind.INVALID_PAYLOAD
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_unusable_answers_are_checked_through_fallback(self, make_orchestrator, payload):
        checked = []

        class RecordingFallback(FallbackStrategy):
            def is_validation_error(self, error):
                checked.append(error)
                return super().is_validation_error(error)

        body = combined_response()
        del body["data"]["executiveSummary"]
        handler = ScriptedHandler(ok(body))
        orchestrator = make_orchestrator(handler, fallback=RecordingFallback())

        outcome = await orchestrator.request_analysis(payload)

        assert outcome.error_kind == ErrorKind.VALIDATION_ERROR
        assert handler.calls == 1
        assert checked
        assert all(isinstance(error, ResponseValidationError) for error in checked)


class TestDegradedMode:

    @pytest.mark.asyncio
    async def test_third_failure_serves_local_analysis(self, make_orchestrator, payload, single_attempt_config):
        handler = ScriptedHandler(server_error(503))
        orchestrator = make_orchestrator(handler, config=single_attempt_config)

        first = await orchestrator.request_analysis(payload)
        second = await orchestrator.request_analysis(payload)
        third = await orchestrator.request_analysis(payload)

        assert first.succeeded is False and second.succeeded is False
        assert third.succeeded is True
        assert third.source == OutcomeSource.LOCAL
        assert third.degraded is True
        assert third.sanitized is False
        assert third.attempts_made == 1
        assert "Local KPI Analysis" in third.narrative
        assert "300s" in third.user_message
        assert handler.calls == 3

    @pytest.mark.asyncio
    async def test_no_network_while_degraded(self, make_orchestrator, payload, single_attempt_config):
        handler = ScriptedHandler(server_error(503))
        orchestrator = make_orchestrator(handler, config=single_attempt_config)
        for _ in range(3):
            await orchestrator.request_analysis(payload)

        outcome = await orchestrator.request_analysis(payload)

        assert outcome.source == OutcomeSource.LOCAL
        assert outcome.attempts_made == 0
        assert handler.calls == 3
        assert orchestrator.snapshot().is_degraded is True

    @pytest.mark.asyncio
    async def test_remote_resumes_after_cooldown(self, make_orchestrator, payload, single_attempt_config, fake_clock):
        handler = ScriptedHandler(server_error(503), server_error(503), server_error(503), ok())
        orchestrator = make_orchestrator(handler, config=single_attempt_config)
        for _ in range(3):
            await orchestrator.request_analysis(payload)

        fake_clock.advance(301)
        outcome = await orchestrator.request_analysis(payload)

        assert outcome.source == OutcomeSource.REMOTE
        assert outcome.degraded is False
        assert handler.calls == 4
        snapshot = orchestrator.snapshot()
        assert snapshot.is_degraded is False
        assert snapshot.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, make_orchestrator, payload, single_attempt_config):
        handler = ScriptedHandler(
            server_error(503), server_error(503), ok(), server_error(503), server_error(503)
        )
        orchestrator = make_orchestrator(handler, config=single_attempt_config)

        outcomes = [await orchestrator.request_analysis(payload) for _ in range(5)]

        assert [o.degraded for o in outcomes] == [False] * 5
        assert orchestrator.snapshot().consecutive_failures == 2

    @pytest.mark.asyncio
    async def test_retry_analysis_leaves_degraded_mode(self, make_orchestrator, payload, single_attempt_config, logger):
        handler = ScriptedHandler(server_error(503), server_error(503), server_error(503), ok())
        orchestrator = make_orchestrator(handler, config=single_attempt_config)
        for _ in range(3):
            await orchestrator.request_analysis(payload)

        outcome = await orchestrator.retry_analysis(payload)

        assert outcome.source == OutcomeSource.REMOTE
        assert orchestrator.snapshot().is_degraded is False
        assert handler.calls == 4
        events = [c.args[0] for c in logger.log.call_args_list]
        assert "manual_retry" in events

    @pytest.mark.asyncio
    async def test_manual_analysis_replaces_remote(self, make_orchestrator, payload, single_attempt_config):
        handler = ScriptedHandler(server_error(503))
        orchestrator = make_orchestrator(handler, config=single_attempt_config)
        for _ in range(3):
            await orchestrator.request_analysis(payload)

        outcome = orchestrator.submit_manual_analysis("<p>Strong June</p><script>x()</script>")

        assert outcome.succeeded is True
        assert outcome.source == OutcomeSource.MANUAL
        assert outcome.narrative == "<p>Strong June</p>"
        assert outcome.sanitized is True
        assert orchestrator.snapshot().is_degraded is False

    def test_manual_analysis_rejects_empty_text(self, make_orchestrator):
        orchestrator = make_orchestrator(ScriptedHandler(ok()))

        with pytest.raises(ValueError):
            orchestrator.submit_manual_analysis("   ")


class TestTimeoutsAndCancellation:

    @pytest.mark.asyncio
    async def test_slow_server_times_out(self, make_orchestrator, payload):
        calls = []

        async def slow_handler(request):
            calls.append(request)
            await asyncio.sleep(10)
            return ok()

        orchestrator = make_orchestrator(slow_handler)

        outcome = await asyncio.wait_for(
            orchestrator.request_analysis(payload, AnalysisOptions(timeout_ms=50, max_attempts=2)),
            timeout=5.0,
        )

        assert outcome.error_kind == ErrorKind.TIMEOUT
        assert outcome.user_message == "Request cancelled or timed out (0.05s). Please try again."
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_user_cancel(self, make_orchestrator, payload):
        started = asyncio.Event()
        calls = []

        async def hanging_handler(request):
            calls.append(request)
            started.set()
            await asyncio.sleep(10)
            return ok()

        orchestrator = make_orchestrator(hanging_handler)
        task = asyncio.create_task(orchestrator.request_analysis(payload))
        await asyncio.wait_for(started.wait(), timeout=2.0)

        assert orchestrator.in_flight is True
        assert orchestrator.cancel_in_flight() is True
        outcome = await asyncio.wait_for(task, timeout=2.0)

        assert outcome.error_kind == ErrorKind.USER_CANCELLED
        assert len(calls) == 1
        assert orchestrator.in_flight is False
        # A user abort is not a service failure
        assert orchestrator.snapshot().consecutive_failures == 0
        assert orchestrator.circuit_breaker.consecutive_failures("analysis-api") == 0

    @pytest.mark.asyncio
    async def test_second_request_refused_while_one_runs(self, make_orchestrator, payload):
        started = asyncio.Event()
        calls = []

        async def hanging_handler(request):
            calls.append(request)
            started.set()
            await asyncio.sleep(10)
            return ok()

        orchestrator = make_orchestrator(hanging_handler)
        first = asyncio.create_task(orchestrator.request_analysis(payload))
        await asyncio.wait_for(started.wait(), timeout=2.0)

        second = await orchestrator.request_analysis(payload)
        retried = await orchestrator.retry_analysis(payload)

        assert second.succeeded is False
        assert "already in progress" in second.user_message
        assert retried.succeeded is False
        assert len(calls) == 1

        # The running request is still the one cancel reaches
        assert orchestrator.cancel_in_flight() is True
        outcome = await asyncio.wait_for(first, timeout=2.0)
        assert outcome.error_kind == ErrorKind.USER_CANCELLED
        assert orchestrator.in_flight is False

    def test_cancel_without_request(self, make_orchestrator):
        orchestrator = make_orchestrator(ScriptedHandler(ok()))
        assert orchestrator.cancel_in_flight() is False


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_open_circuit_rejects_without_network(self, make_orchestrator, payload, fake_clock):
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout_ms=30000, clock=fake_clock)
        breaker.on_failure("analysis-api")
        handler = ScriptedHandler(ok())
        orchestrator = make_orchestrator(handler, circuit_breaker=breaker)

        outcome = await orchestrator.request_analysis(payload)

        assert outcome.error_kind == ErrorKind.CIRCUIT_OPEN
        assert "30s" in outcome.user_message
        assert outcome.attempts_made == 0
        assert handler.calls == 0

    @pytest.mark.asyncio
    async def test_breaker_opens_after_repeated_failures(self, make_orchestrator, payload, sample_config):
        config = sample_config.model_copy(update={"circuit_breaker_failure_threshold": 2})
        handler = ScriptedHandler(server_error(503))
        orchestrator = make_orchestrator(handler, config=config)

        outcome = await orchestrator.request_analysis(payload)

        assert outcome.error_kind == ErrorKind.CIRCUIT_OPEN
        assert handler.calls == 2


class TestProgress:

    @pytest.mark.asyncio
    async def test_progress_and_retry_hooks(self, make_orchestrator, payload):
        handler = ScriptedHandler(server_error(), ok())
        orchestrator = make_orchestrator(handler)
        progress = []
        retries = []

        await orchestrator.request_analysis(payload, AnalysisOptions(
            on_progress=progress.append,
            on_retry=lambda attempt, failure, delay_ms: retries.append((attempt, str(failure))),
        ))

        assert [(p.stage, p.attempt) for p in progress] == [
            ("started", 0),
            ("attempt", 1),
            ("retrying", 1),
            ("attempt", 2),
            ("completed", 2),
        ]
        assert all(p.max_attempts == 3 for p in progress)
        assert progress[2].delay_ms is not None
        assert retries == [(1, "Internal Server Error")]

    @pytest.mark.asyncio
    async def test_failed_stage_reported(self, make_orchestrator, payload):
        handler = ScriptedHandler(server_error())
        orchestrator = make_orchestrator(handler)
        progress = []

        await orchestrator.request_analysis(payload, AnalysisOptions(max_attempts=1, on_progress=progress.append))

        assert [p.stage for p in progress] == ["started", "attempt", "failed"]
