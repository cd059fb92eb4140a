"""Pytest configuration and shared fixtures."""

import random

import pytest

from tests.fixtures.fakes import FakeClock, RecordingSleeper


@pytest.fixture
def rng():
    """Seeded random source for deterministic jitter."""
    return random.Random(42)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def sleeper(fake_clock):
    """Sleeper that advances the fake clock instead of waiting."""
    return RecordingSleeper(fake_clock)


@pytest.fixture
def sample_config():
    """Provide a sample configuration for testing."""
    from rental_analysis.models.config import AnalysisConfig

    return AnalysisConfig(
        endpoint_url="http://analysis.test/api/analyze",
        request_timeout_ms=2000,
        connect_timeout=1.0,
        max_attempts=3,
        base_delay_ms=1000,
        max_delay_ms=10000,
        backoff_factor=2.0,
        circuit_breaker_failure_threshold=5,
        circuit_breaker_reset_timeout_ms=30000,
        degradation_threshold=3,
        degraded_cooldown_seconds=300,
        total_cabins=3,
    )
