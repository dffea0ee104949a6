"""Local actions: calls into functions registered by the host.

A function takes ``(context, params)`` and may be sync or async. When a
definition names a ``rollback_function`` and the call succeeds, the
inverse is pushed onto a LIFO stack; ``rollback()`` unwinds it newest
first, logging and skipping any inverse that fails so the unwind always
completes.

Two functions are registered out of the box: ``log`` (writes
``params["message"]`` to the log) and ``emit`` (publishes
``params["event"]`` with ``params["data"]`` on the dispatcher).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from actionrail.core.errors import ActionNotFoundError
from actionrail.core.models import ActionKind, ExecutionContext, LocalAction
from actionrail.executors.base import ActionExecutor, RunOutcome, run_cancellable

logger = logging.getLogger("actionrail.executor.local")

LocalFunction = Callable[[ExecutionContext, dict[str, Any]], Any]


@dataclass
class RollbackEntry:
    action_id: str
    function: str
    params: dict[str, Any]
    context: ExecutionContext
    result: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)


class LocalExecutor(ActionExecutor):
    kind = ActionKind.LOCAL

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._functions: dict[str, LocalFunction] = {}
        self._rollback_stack: list[RollbackEntry] = []
        self.register_function("log", self._log)
        self.register_function("emit", self._emit)

    # --- Function registry ---

    def register_function(self, name: str, fn: LocalFunction) -> None:
        self._functions[name] = fn

    def unregister_function(self, name: str) -> bool:
        return self._functions.pop(name, None) is not None

    def has_function(self, name: str) -> bool:
        return name in self._functions

    def function_names(self) -> list[str]:
        return sorted(self._functions)

    @staticmethod
    async def _log(context: ExecutionContext, params: dict[str, Any]) -> dict[str, Any]:
        level = logging.getLevelName(str(params.get("level", "INFO")).upper())
        message = str(params.get("message", ""))
        logger.log(level if isinstance(level, int) else logging.INFO, "[%s] %s", context.action_id, message)
        return {"logged": message}

    async def _emit(self, context: ExecutionContext, params: dict[str, Any]) -> dict[str, Any]:
        event = params.get("event", "local.event")
        await self.dispatcher.emit(event, {"action_id": context.action_id, "data": params.get("data")})
        return {"emitted": event}

    # --- Execution ---

    def validate(self, definition: LocalAction) -> list[str]:  # type: ignore[override]
        errors = super().validate(definition)
        if errors:
            return errors
        if not definition.function:
            errors.append("function is required")
        elif definition.function not in self._functions:
            errors.append(f"function {definition.function!r} is not registered")
        if definition.rollback_function and definition.rollback_function not in self._functions:
            errors.append(f"rollback function {definition.rollback_function!r} is not registered")
        return errors

    async def _invoke(self, name: str, context: ExecutionContext, params: dict[str, Any]) -> Any:
        fn = self._functions.get(name)
        if fn is None:
            raise ActionNotFoundError(f"Local function {name!r} is not registered", action_id=context.action_id)
        result = fn(context, params)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    async def _run(self, definition: LocalAction, context: ExecutionContext) -> RunOutcome:
        outcome = RunOutcome(metadata={"function": definition.function})
        params = dict(definition.params)
        outcome.data = await run_cancellable(
            context,
            lambda: self.with_retry(lambda: self._invoke(definition.function, context, params), definition.retry, outcome),
        )
        if definition.rollback_function:
            self._rollback_stack.append(
                RollbackEntry(
                    action_id=definition.id,
                    function=definition.rollback_function,
                    params=dict(definition.rollback_params or {}),
                    context=context,
                    result=outcome.data,
                )
            )
            outcome.metadata["rollback_registered"] = True
        return outcome

    # --- Rollback ---

    @property
    def rollback_depth(self) -> int:
        return len(self._rollback_stack)

    async def rollback(self) -> list[dict[str, Any]]:
        """Run every registered inverse, newest first. Returns one report per entry."""
        reports = []
        while self._rollback_stack:
            entry = self._rollback_stack.pop()
            params = {**entry.params, "result": entry.result}
            try:
                await self._invoke(entry.function, entry.context, params)
            except Exception as exc:
                logger.warning("Rollback %s for %s failed", entry.function, entry.action_id, exc_info=True)
                reports.append({"action_id": entry.action_id, "function": entry.function, "success": False, "error": str(exc)})
            else:
                logger.info("Rolled back %s via %s", entry.action_id, entry.function)
                reports.append({"action_id": entry.action_id, "function": entry.function, "success": True})
        return reports

    def clear_rollback_stack(self) -> int:
        count = len(self._rollback_stack)
        self._rollback_stack.clear()
        return count
