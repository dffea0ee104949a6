"""Shared execution pipeline for every action kind.

``ActionExecutor.execute`` runs the checks common to all kinds before
handing over to the kind-specific ``_run``:

    1. structural validation (``validate``) and the ``enabled`` flag
    2. cancellation, checked before anything starts
    3. the rate-limit bucket for the action (or its custom key)

and then times the run and wraps its outcome in an ExecutionResult.
Failures propagate as exceptions; turning them into failed results is the
orchestrator's job.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, ClassVar, TypeVar

from actionrail.core.dispatcher import EventDispatcher
from actionrail.core.errors import ActionCancelledError, ValidationError, error_to_dict
from actionrail.core.models import ActionDefinition, ActionKind, ExecutionContext, ExecutionResult, RetryPolicy
from actionrail.resilience.rate_limiter import RateLimiter
from actionrail.resilience.retry import RetryCoordinator, should_retry_for
from actionrail.state.manager import StateManager

logger = logging.getLogger("actionrail.executor")

T = TypeVar("T")


@dataclass
class RunOutcome:
    data: Any = None
    cached: bool = False
    retry_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


def check_cancelled(context: ExecutionContext) -> None:
    token = context.cancel
    if token is not None and token.cancelled:
        raise ActionCancelledError(
            f"Action {context.action_id} cancelled: {token.reason}",
            action_id=context.action_id,
        )


async def run_cancellable(context: ExecutionContext, op: Callable[[], Awaitable[T]]) -> T:
    """Run ``op`` until it finishes or the context's cancellation signal fires."""
    check_cancelled(context)
    token = context.cancel
    if token is None:
        return await op()

    task = asyncio.ensure_future(op())
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
    if task.cancelled():
        raise ActionCancelledError(
            f"Action {context.action_id} cancelled: {token.reason}",
            action_id=context.action_id,
        )
    return task.result()


class ActionExecutor(ABC):
    kind: ClassVar[ActionKind]

    def __init__(
        self,
        *,
        state: StateManager,
        dispatcher: EventDispatcher | None = None,
        rate_limiter: RateLimiter | None = None,
        retry: RetryCoordinator | None = None,
        max_errors: int = 100,
    ) -> None:
        self.state = state
        self.dispatcher = dispatcher or EventDispatcher()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.retry = retry or RetryCoordinator()
        self._executions = 0
        self._failures = 0
        self._total_ms = 0.0
        self._timings: dict[str, list[float]] = {}
        self._errors: deque[dict[str, Any]] = deque(maxlen=max_errors)

    def validate(self, definition: ActionDefinition) -> list[str]:
        """Problems that make ``definition`` unrunnable by this executor."""
        errors = []
        if not definition.id:
            errors.append("id is required")
        if definition.kind is not self.kind:
            errors.append(f"{self.kind.value} executor cannot run a {definition.kind.value} action")
        return errors

    async def execute(self, definition: ActionDefinition, context: ExecutionContext) -> ExecutionResult:
        errors = self.validate(definition)
        if errors:
            raise ValidationError(
                f"Action {definition.id} is invalid: {'; '.join(errors)}",
                action_id=definition.id,
                errors=[{"path": "", "message": e} for e in errors],
            )
        if not definition.enabled:
            raise ValidationError(f"Action {definition.id} is disabled", code="ACTION_DISABLED", action_id=definition.id)
        check_cancelled(context)
        if definition.rate_limit is not None:
            self.rate_limiter.enforce(definition.rate_limit.key or definition.id, definition.rate_limit)

        started = time.perf_counter()
        self._executions += 1
        try:
            outcome = await self._run(definition, context)
        except Exception as exc:
            self._failures += 1
            self._track(definition, (time.perf_counter() - started) * 1000, exc)
            raise
        elapsed_ms = (time.perf_counter() - started) * 1000
        self._track(definition, elapsed_ms, None)
        return ExecutionResult(
            action_id=definition.id,
            success=True,
            data=outcome.data,
            elapsed_ms=elapsed_ms,
            cached=outcome.cached,
            retry_count=outcome.retry_count,
            metadata={"instance_id": context.instance_id, **outcome.metadata},
        )

    @abstractmethod
    async def _run(self, definition: Any, context: ExecutionContext) -> RunOutcome: ...

    async def with_retry(
        self,
        op: Callable[[], Awaitable[T]],
        policy: RetryPolicy | None,
        outcome: RunOutcome,
    ) -> T:
        """Run ``op`` under ``policy`` (if any), counting retries into ``outcome``."""
        if policy is None:
            return await op()

        def count(attempt: int, delay_ms: float, exc: BaseException) -> None:
            outcome.retry_count = attempt

        return await self.retry.execute(op, policy, should_retry_for(policy.retry_on), on_retry=count)

    def _track(self, definition: ActionDefinition, elapsed_ms: float, error: BaseException | None) -> None:
        self._total_ms += elapsed_ms
        if definition.telemetry.track_timing:
            self._timings.setdefault(definition.id, []).append(elapsed_ms)
            logger.info("%s finished in %.1fms", definition.id, elapsed_ms)
        if error is not None and definition.telemetry.track_errors:
            self._errors.append({"action_id": definition.id, "error": error_to_dict(error), "at": time.time()})

    def stats(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "executions": self._executions,
            "failures": self._failures,
            "avg_elapsed_ms": self._total_ms / self._executions if self._executions else 0.0,
            "timings": {k: {"count": len(v), "avg_ms": sum(v) / len(v)} for k, v in self._timings.items()},
            "recent_errors": list(self._errors),
        }
