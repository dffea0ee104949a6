"""Per-key circuit breaker.

State machine, one independent instance per key:

    closed     calls pass; each failure increments a counter, each success
               resets it. Reaching ``failure_threshold`` opens the circuit.
    open       calls are rejected with CircuitOpenError. Once
               ``reset_timeout_ms`` has passed since the last failure, the
               next ``is_open`` check moves to half-open and lets that one
               call through.
    half-open  a single trial call is in flight. Success closes the circuit
               and zeroes the counter; failure re-opens it and restarts the
               timer. If the trial never reports back, another trial is
               admitted after a further ``reset_timeout_ms``.

Every failure is recorded, retryable or not.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, TypeVar

from actionrail.core.errors import CircuitOpenError
from actionrail.core.models import CircuitPhase, CircuitState

logger = logging.getLogger("actionrail.circuit_breaker")

T = TypeVar("T")

TransitionCallback = Callable[[str, CircuitPhase, CircuitPhase], Any]


class CircuitBreaker:
    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        reset_timeout_ms: int = 60_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self._clock = clock
        self._circuits: dict[str, CircuitState] = {}
        self._overrides: dict[str, tuple[int, int]] = {}
        self._trials: dict[str, float] = {}
        self._listeners: list[TransitionCallback] = []

    def configure(
        self,
        key: str,
        *,
        failure_threshold: int | None = None,
        reset_timeout_ms: int | None = None,
    ) -> None:
        """Set per-key thresholds. Unset values fall back to the breaker defaults."""
        self._overrides[key] = (
            failure_threshold or self.failure_threshold,
            reset_timeout_ms or self.reset_timeout_ms,
        )

    def add_listener(self, callback: TransitionCallback) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback: TransitionCallback) -> None:
        self._listeners = [c for c in self._listeners if c is not callback]

    def _settings(self, key: str) -> tuple[int, int]:
        return self._overrides.get(key, (self.failure_threshold, self.reset_timeout_ms))

    def _state(self, key: str) -> CircuitState:
        state = self._circuits.get(key)
        if state is None:
            state = CircuitState(key=key)
            self._circuits[key] = state
        return state

    def _transition(self, state: CircuitState, phase: CircuitPhase) -> None:
        if state.phase is phase:
            return
        old = state.phase
        state.phase = phase
        logger.info("Circuit %s: %s -> %s", state.key, old.value, phase.value)
        for cb in self._listeners:
            try:
                cb(state.key, old, phase)
            except Exception:
                logger.warning("Circuit listener error", exc_info=True)

    def _elapsed_ms(self, since: float | None) -> float:
        if since is None:
            return float("inf")
        return (self._clock() - since) * 1000

    # --- Contract ---

    def is_open(self, key: str) -> bool:
        """Whether a call for ``key`` must be rejected right now."""
        state = self._state(key)
        _, reset_timeout_ms = self._settings(key)

        if state.phase is CircuitPhase.OPEN:
            if self._elapsed_ms(state.last_failure_at) >= reset_timeout_ms:
                self._transition(state, CircuitPhase.HALF_OPEN)
                self._trials[key] = self._clock()
                return False
            return True

        if state.phase is CircuitPhase.HALF_OPEN:
            trial_started = self._trials.get(key)
            if trial_started is None or self._elapsed_ms(trial_started) >= reset_timeout_ms:
                self._trials[key] = self._clock()
                return False
            return True

        return False

    def release(self, key: str) -> None:
        """Give back a half-open trial that ended without reaching the backend.

        The phase is unchanged; the next ``is_open`` check admits a new trial.
        """
        self._trials.pop(key, None)

    def phase(self, key: str) -> CircuitPhase:
        return self._state(key).phase

    def record_success(self, key: str) -> None:
        state = self._state(key)
        state.success_count += 1
        state.last_success_at = self._clock()
        state.failure_count = 0
        self._trials.pop(key, None)
        self._transition(state, CircuitPhase.CLOSED)

    def record_failure(self, key: str) -> None:
        state = self._state(key)
        threshold, _ = self._settings(key)
        state.failure_count += 1
        state.last_failure_at = self._clock()
        self._trials.pop(key, None)

        if state.phase is CircuitPhase.HALF_OPEN:
            self._transition(state, CircuitPhase.OPEN)
        elif state.phase is CircuitPhase.CLOSED and state.failure_count >= threshold:
            logger.warning(
                "Circuit %s opened after %d consecutive failures", key, state.failure_count
            )
            self._transition(state, CircuitPhase.OPEN)

    async def execute(self, key: str, op: Callable[[], Awaitable[T]]) -> T:
        """Run ``op`` through the breaker, recording its outcome."""
        if self.is_open(key):
            raise CircuitOpenError(f"Circuit breaker is open for {key}", action_id=key)
        try:
            result = await op()
        except Exception:
            self.record_failure(key)
            raise
        self.record_success(key)
        return result

    # --- Administration ---

    def reset(self, key: str) -> None:
        self._circuits.pop(key, None)
        self._trials.pop(key, None)

    def reset_all(self) -> None:
        self._circuits.clear()
        self._trials.clear()

    def force_open(self, key: str) -> None:
        state = self._state(key)
        state.last_failure_at = self._clock()
        self._transition(state, CircuitPhase.OPEN)

    def force_closed(self, key: str) -> None:
        state = self._state(key)
        state.failure_count = 0
        self._trials.pop(key, None)
        self._transition(state, CircuitPhase.CLOSED)

    def stats(self, key: str) -> dict[str, Any] | None:
        state = self._circuits.get(key)
        if state is None:
            return None
        threshold, reset_timeout_ms = self._settings(key)
        data = state.to_dict()
        data.update({"failure_threshold": threshold, "reset_timeout_ms": reset_timeout_ms})
        return data

    def all_stats(self) -> dict[str, dict[str, Any]]:
        return {key: self.stats(key) for key in self._circuits}  # type: ignore[misc]
