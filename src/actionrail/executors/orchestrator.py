"""Resolves action ids and composes executions.

The orchestrator owns the dispatcher that action lifecycle events go out
on (``action.started``, ``action.completed``, ``action.failed``,
``action.notify``, ``trigger.handled``). Failures are shaped by the
definition's ``on_error`` mode:

    bubble    the exception propagates from ``execute_action``
    notify    a failed result, plus an ``action.notify`` event
    fallback  a successful result carrying the definition's fallback value
    silent    a failed result, logged at debug level

Sequence, parallel, conditional and trigger runs never raise for a single
action's failure; it becomes a failed ExecutionResult in its slot.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Iterable

from actionrail.core.dispatcher import EventDispatcher
from actionrail.core.errors import ActionError, StateError, error_to_dict
from actionrail.core.loader import parse_definition
from actionrail.core.models import (
    MISSING,
    ActionDefinition,
    ActionKind,
    ConditionalStep,
    ErrorMode,
    ExecutionContext,
    ExecutionResult,
    TriggerEvent,
    TriggerSource,
    TriggerType,
)
from actionrail.core.registry import ActionRegistry
from actionrail.executors.base import ActionExecutor
from actionrail.executors.local import LocalExecutor
from actionrail.processors import expression, jsonpath
from actionrail.state.manager import StateManager

logger = logging.getLogger("actionrail.orchestrator")

_BRACKETS = re.compile(r"\[[^\]]*\]")
_PLAIN_PATH = re.compile(r"\$[\w.*$-]*")


def is_plain_path(condition: str) -> bool:
    """True for a lone JSONPath such as ``$.form.make`` or ``$.items[?(@.id > 1)]``.

    Operators and whitespace only count outside brackets, so a filter does
    not turn a path into an expression.
    """
    return _PLAIN_PATH.fullmatch(_BRACKETS.sub("", condition)) is not None


class Orchestrator:
    def __init__(
        self,
        *,
        state: StateManager,
        executors: Iterable[ActionExecutor],
        registry: ActionRegistry | None = None,
        dispatcher: EventDispatcher | None = None,
        max_concurrency: int = 5,
    ) -> None:
        self.state = state
        self.registry = registry or ActionRegistry()
        self.dispatcher = dispatcher or EventDispatcher()
        self.max_concurrency = max_concurrency
        self._executors: dict[ActionKind, ActionExecutor] = {e.kind: e for e in executors}

    # --- Definitions ---

    def register(self, definition: ActionDefinition | dict[str, Any]) -> ActionDefinition:
        if isinstance(definition, dict):
            definition = parse_definition(definition)
        self.registry.register(definition)
        return definition

    def unregister(self, action_id: str) -> ActionDefinition:
        return self.registry.unregister(action_id)

    def load(self, definitions: Iterable[ActionDefinition | dict[str, Any]]) -> list[ActionDefinition]:
        return [self.register(d) for d in definitions]

    def executor_for(self, definition: ActionDefinition) -> ActionExecutor:
        executor = self._executors.get(definition.kind)
        if executor is None:
            raise ActionError(f"No executor for {definition.kind.value} actions", code="NO_EXECUTOR", action_id=definition.id)
        return executor

    def executor_stats(self) -> dict[str, Any]:
        return {kind.value: executor.stats() for kind, executor in self._executors.items()}

    # --- Contexts ---

    def new_context(
        self,
        action_id: str,
        *,
        trigger_source: TriggerSource = TriggerSource.MANUAL,
        previous_results: Any = None,
        **kwargs: Any,
    ) -> ExecutionContext:
        return ExecutionContext(
            action_id=action_id,
            state=self.state.snapshot(),
            trigger_source=trigger_source,
            previous_results=previous_results,
            **kwargs,
        )

    def _context_for(self, action_id: str, parent: ExecutionContext | None, **changes: Any) -> ExecutionContext:
        if parent is None:
            return self.new_context(action_id, **changes)
        changes.setdefault("state", self.state.snapshot())
        return parent.derive(action_id, **changes)

    # --- Single action ---

    async def execute_action(self, action_id: str, context: ExecutionContext | None = None) -> ExecutionResult:
        """Run one action. An unknown id raises ActionNotFoundError."""
        definition = self.registry.get(action_id)
        if context is None or context.action_id != action_id:
            context = self._context_for(action_id, context)
        executor = self.executor_for(definition)

        await self.dispatcher.emit("action.started", {"action_id": action_id, "context": context.to_dict()})
        started = time.perf_counter()
        try:
            result = await executor.execute(definition, context)
        except Exception as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000
            return await self._handle_failure(definition, context, exc, elapsed_ms)
        await self.dispatcher.emit("action.completed", {"action_id": action_id, "result": result.to_dict()})
        return result

    async def _handle_failure(
        self,
        definition: ActionDefinition,
        context: ExecutionContext,
        exc: Exception,
        elapsed_ms: float,
    ) -> ExecutionResult:
        mode = definition.on_error
        await self.dispatcher.emit(
            "action.failed",
            {"action_id": definition.id, "error": error_to_dict(exc), "on_error": mode.value},
        )
        metadata = {"instance_id": context.instance_id, "on_error": mode.value}

        if mode is ErrorMode.BUBBLE:
            raise exc
        if mode is ErrorMode.FALLBACK:
            logger.info("Action %s failed, using fallback value: %s", definition.id, exc)
            return ExecutionResult(
                action_id=definition.id,
                success=True,
                data=definition.fallback,
                error=exc,
                elapsed_ms=elapsed_ms,
                fallback=True,
                metadata=metadata,
            )
        if mode is ErrorMode.NOTIFY:
            await self.dispatcher.emit(
                "action.notify",
                {"action_id": definition.id, "message": str(exc), "error": error_to_dict(exc)},
            )
        else:
            logger.debug("Action %s failed silently: %s", definition.id, exc)
        return ExecutionResult(
            action_id=definition.id,
            success=False,
            error=exc,
            elapsed_ms=elapsed_ms,
            metadata=metadata,
        )

    async def _safe(self, action_id: str, context: ExecutionContext) -> ExecutionResult:
        started = time.perf_counter()
        try:
            return await self.execute_action(action_id, context)
        except Exception as exc:
            return ExecutionResult(
                action_id=action_id,
                success=False,
                error=exc,
                elapsed_ms=(time.perf_counter() - started) * 1000,
            )

    # --- Composition ---

    async def execute_sequence(
        self,
        action_ids: list[str],
        context: ExecutionContext | None = None,
        *,
        continue_on_error: bool = False,
    ) -> list[ExecutionResult]:
        """Run actions one after another.

        Each action sees the state as left by the previous one, and the
        previous successful result's data as ``previous_results``.
        """
        results: list[ExecutionResult] = []
        previous = context.previous_results if context is not None else None
        for action_id in action_ids:
            ctx = self._context_for(action_id, context, previous_results=previous)
            result = await self._safe(action_id, ctx)
            results.append(result)
            if result.success:
                previous = result.data
            elif not continue_on_error:
                logger.info("Sequence stopped at %s", action_id)
                break
        return results

    async def execute_parallel(
        self,
        action_ids: list[str],
        context: ExecutionContext | None = None,
        max_concurrency: int | None = None,
    ) -> list[ExecutionResult]:
        """Run actions in batches of ``max_concurrency``; results keep input order."""
        limit = max(1, max_concurrency or self.max_concurrency)
        results: list[ExecutionResult] = []
        for start in range(0, len(action_ids), limit):
            batch = action_ids[start : start + limit]
            contexts = [self._context_for(action_id, context) for action_id in batch]
            results.extend(await asyncio.gather(*(self._safe(a, c) for a, c in zip(batch, contexts))))
        return results

    def evaluate_condition(self, condition: str, state: dict[str, Any]) -> bool:
        """A bare JSONPath checks that a value exists there; anything else is an expression."""
        condition = condition.strip()
        if is_plain_path(condition) and jsonpath.validate_path(condition):
            value = jsonpath.get(state, condition, MISSING)
            return value is not MISSING and value is not None
        return bool(expression.evaluate(condition, {"$": state, "state": state}))

    async def execute_conditional(
        self,
        steps: list[ConditionalStep | dict[str, Any]],
        context: ExecutionContext | None = None,
    ) -> list[ExecutionResult]:
        """Run each step whose guard holds, in order. Skipped steps produce no result."""
        results: list[ExecutionResult] = []
        for raw in steps:
            step = raw if isinstance(raw, ConditionalStep) else ConditionalStep(raw["condition"], raw["action_id"])
            try:
                should_run = self.evaluate_condition(step.condition, self.state.snapshot())
            except (ActionError, StateError) as exc:
                results.append(ExecutionResult(action_id=step.action_id, success=False, error=exc))
                continue
            if should_run:
                results.append(await self._safe(step.action_id, self._context_for(step.action_id, context)))
            else:
                logger.debug("Skipping %s: condition %r is false", step.action_id, step.condition)
        return results

    async def handle_trigger(
        self,
        event: TriggerEvent | TriggerType | str,
        payload: dict[str, Any] | None = None,
    ) -> list[ExecutionResult]:
        """Run every enabled action listening for the event, in parallel."""
        if not isinstance(event, TriggerEvent):
            event = TriggerEvent(type=TriggerType(event), payload=payload or {})
        definitions = self.registry.by_trigger(event.type)
        if not definitions:
            logger.debug("No actions registered for trigger %s", event.type.value)
            return []

        source = TriggerSource.MANUAL if event.type is TriggerType.MANUAL else TriggerSource.LIFECYCLE
        context = ExecutionContext(
            action_id=f"trigger:{event.type.value}",
            state=self.state.snapshot(),
            trigger_source=source,
            metadata={"trigger": event.type.value, "payload": event.payload, **event.metadata},
        )
        results = await self.execute_parallel([d.id for d in definitions], context)
        await self.dispatcher.emit(
            "trigger.handled",
            {"trigger": event.to_dict(), "results": [r.to_dict() for r in results]},
        )
        return results

    # --- Rollback ---

    async def rollback(self) -> list[dict[str, Any]]:
        executor = self._executors.get(ActionKind.LOCAL)
        if not isinstance(executor, LocalExecutor):
            return []
        return await executor.rollback()
