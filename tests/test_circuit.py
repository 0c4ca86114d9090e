"""Tests for the facilitator circuit breaker."""

import pytest

from conftest import FakeClock
from x402_settlement.core.circuit import CircuitBreaker, CircuitState
from x402_settlement.core.errors import CircuitOpenError, ConfigError, FacilitatorError


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(failure_threshold=3, recovery_timeout=60, success_threshold=2, clock=clock)


def _outage():
    raise FacilitatorError("unreachable", operation="verify")


def _trip(breaker):
    for _ in range(breaker.failure_threshold):
        with pytest.raises(FacilitatorError):
            breaker.call(_outage)


class TestCircuitBreaker:
    """Test state transitions."""

    @pytest.mark.parametrize(
        "kwargs",
        [{"failure_threshold": 0}, {"recovery_timeout": -1}, {"success_threshold": 0}],
    )
    def test_rejects_non_positive_settings(self, kwargs):
        """Test that every threshold must be positive."""
        with pytest.raises(ConfigError):
            CircuitBreaker(**kwargs)

    def test_starts_closed(self, breaker):
        """Test the initial state and a passing call."""
        assert breaker.state is CircuitState.CLOSED
        assert breaker.call(lambda: "ok") == "ok"

    def test_opens_at_threshold(self, breaker):
        """Test that consecutive outages open the circuit."""
        _trip(breaker)
        assert breaker.state is CircuitState.OPEN
        assert breaker.retry_after() == 60

    def test_success_resets_failure_count(self, breaker):
        """Test that failures must be consecutive."""
        for _ in range(2):
            with pytest.raises(FacilitatorError):
                breaker.call(_outage)
        breaker.call(lambda: None)
        assert breaker.failure_count == 0
        with pytest.raises(FacilitatorError):
            breaker.call(_outage)
        assert breaker.state is CircuitState.CLOSED

    def test_open_circuit_skips_the_call(self, breaker, clock):
        """Test that an open circuit raises without running the function."""
        _trip(breaker)
        calls = []
        clock.advance(20)
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.call(lambda: calls.append(1), operation="settle")
        assert calls == []
        assert exc_info.value.operation == "settle"
        assert exc_info.value.retry_after == 40
        assert exc_info.value.is_transport_error is True

    def test_half_open_after_timeout(self, breaker, clock):
        """Test that successes in half-open close the circuit."""
        _trip(breaker)
        clock.advance(60)
        assert breaker.state is CircuitState.HALF_OPEN

        breaker.call(lambda: None)
        assert breaker.state is CircuitState.HALF_OPEN
        breaker.call(lambda: None)
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_failure_in_half_open_reopens(self, breaker, clock):
        """Test that one failure in half-open opens the circuit for another full timeout."""
        _trip(breaker)
        clock.advance(60)
        with pytest.raises(FacilitatorError):
            breaker.call(_outage)
        assert breaker.state is CircuitState.OPEN
        assert breaker.retry_after() == 60

    def test_client_errors_are_not_outages(self, breaker):
        """Test that a 4xx answer does not count toward opening."""

        def rejected():
            raise FacilitatorError("bad request", status_code=400, operation="verify")

        for _ in range(5):
            with pytest.raises(FacilitatorError):
                breaker.call(rejected)
        assert breaker.state is CircuitState.CLOSED

    def test_server_errors_are_outages(self, breaker):
        """Test that 5xx answers count toward opening."""

        def unavailable():
            raise FacilitatorError("unavailable", status_code=503, operation="verify")

        for _ in range(3):
            with pytest.raises(FacilitatorError):
                breaker.call(unavailable)
        assert breaker.state is CircuitState.OPEN

    def test_reset(self, breaker):
        """Test that reset closes an open circuit."""
        _trip(breaker)
        breaker.reset()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.call(lambda: 1) == 1
