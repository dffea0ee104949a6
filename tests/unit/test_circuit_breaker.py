"""Tests for the per-key circuit breaker."""

import pytest

from actionrail.core.errors import CircuitOpenError, NetworkError
from actionrail.core.models import CircuitPhase
from actionrail.resilience.circuit_breaker import CircuitBreaker


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    return CircuitBreaker(failure_threshold=3, reset_timeout_ms=1000, clock=clock)


class TestStateMachine:
    def test_opens_at_threshold(self, breaker: CircuitBreaker):
        breaker.record_failure("api")
        breaker.record_failure("api")
        assert breaker.phase("api") is CircuitPhase.CLOSED
        assert not breaker.is_open("api")
        breaker.record_failure("api")
        assert breaker.phase("api") is CircuitPhase.OPEN
        assert breaker.is_open("api")

    def test_success_resets_the_counter(self, breaker: CircuitBreaker):
        breaker.record_failure("api")
        breaker.record_failure("api")
        breaker.record_success("api")
        breaker.record_failure("api")
        breaker.record_failure("api")
        assert breaker.phase("api") is CircuitPhase.CLOSED

    def test_half_open_admits_one_trial(self, breaker: CircuitBreaker, clock):
        for _ in range(3):
            breaker.record_failure("api")
        clock.advance(0.5)
        assert breaker.is_open("api")
        clock.advance(0.5)
        assert not breaker.is_open("api")
        assert breaker.phase("api") is CircuitPhase.HALF_OPEN
        assert breaker.is_open("api")

    def test_trial_success_closes(self, breaker: CircuitBreaker, clock):
        for _ in range(3):
            breaker.record_failure("api")
        clock.advance(1)
        breaker.is_open("api")
        breaker.record_success("api")
        assert breaker.phase("api") is CircuitPhase.CLOSED
        assert breaker.stats("api")["failure_count"] == 0

    def test_trial_failure_reopens_and_restarts_timer(self, breaker: CircuitBreaker, clock):
        for _ in range(3):
            breaker.record_failure("api")
        clock.advance(1)
        breaker.is_open("api")
        breaker.record_failure("api")
        assert breaker.phase("api") is CircuitPhase.OPEN
        clock.advance(0.9)
        assert breaker.is_open("api")

    def test_abandoned_trial_is_replaced(self, breaker: CircuitBreaker, clock):
        for _ in range(3):
            breaker.record_failure("api")
        clock.advance(1)
        assert not breaker.is_open("api")
        clock.advance(1)
        assert not breaker.is_open("api")

    def test_keys_are_independent(self, breaker: CircuitBreaker):
        for _ in range(3):
            breaker.record_failure("a")
        assert breaker.is_open("a")
        assert not breaker.is_open("b")

    def test_per_key_configuration(self, breaker: CircuitBreaker):
        breaker.configure("fragile", failure_threshold=1)
        breaker.record_failure("fragile")
        assert breaker.is_open("fragile")
        assert breaker.stats("fragile")["failure_threshold"] == 1
        assert breaker.stats("fragile")["reset_timeout_ms"] == 1000


class TestListeners:
    def test_transitions_are_reported(self, breaker: CircuitBreaker, clock):
        seen = []
        breaker.add_listener(lambda key, old, new: seen.append((key, old, new)))
        for _ in range(3):
            breaker.record_failure("api")
        clock.advance(1)
        breaker.is_open("api")
        breaker.record_success("api")
        assert seen == [
            ("api", CircuitPhase.CLOSED, CircuitPhase.OPEN),
            ("api", CircuitPhase.OPEN, CircuitPhase.HALF_OPEN),
            ("api", CircuitPhase.HALF_OPEN, CircuitPhase.CLOSED),
        ]

    def test_failing_listener_does_not_break_the_breaker(self, breaker: CircuitBreaker):
        def broken(key, old, new):
            raise RuntimeError("boom")

        breaker.add_listener(broken)
        breaker.force_open("api")
        assert breaker.phase("api") is CircuitPhase.OPEN
        breaker.remove_listener(broken)
        breaker.force_closed("api")
        assert breaker.phase("api") is CircuitPhase.CLOSED


class TestExecute:
    @pytest.mark.asyncio
    async def test_records_outcomes(self, breaker: CircuitBreaker):
        async def ok():
            return "fine"

        async def fail():
            raise NetworkError("down", status_code=503)

        assert await breaker.execute("api", ok) == "fine"
        for _ in range(3):
            with pytest.raises(NetworkError):
                await breaker.execute("api", fail)
        with pytest.raises(CircuitOpenError):
            await breaker.execute("api", ok)

    @pytest.mark.asyncio
    async def test_non_retryable_failures_count_too(self, breaker: CircuitBreaker):
        async def client_error():
            raise NetworkError("bad request", status_code=400)

        for _ in range(3):
            with pytest.raises(NetworkError):
                await breaker.execute("api", client_error)
        assert breaker.phase("api") is CircuitPhase.OPEN


class TestAdministration:
    def test_reset_and_stats(self, breaker: CircuitBreaker):
        breaker.record_failure("a")
        breaker.record_success("b")
        assert set(breaker.all_stats()) == {"a", "b"}
        assert breaker.stats("missing") is None
        breaker.reset("a")
        assert set(breaker.all_stats()) == {"b"}
        breaker.reset_all()
        assert breaker.all_stats() == {}
