"""State actions: one operation on the state document at one path.

    assign     write ``value`` (templated against the context state)
    merge      deep-merge objects, concatenate lists, otherwise replace
    delete     remove the path
    transform  compute the new value from ``{currentValue, fullState}``,
               either with a JSONPath (``jsonpath`` kind) or with the
               restricted expression language (``expression`` kind)

Every result reports the previous value next to the new one.
"""

from __future__ import annotations

import logging
from typing import Any

from actionrail.core.errors import StateError, ValidationError
from actionrail.core.models import (
    MISSING,
    ActionKind,
    ExecutionContext,
    PatchOp,
    StateAction,
    StateOperation,
    StatePatch,
    TransformKind,
)
from actionrail.executors.base import ActionExecutor, RunOutcome
from actionrail.processors import expression, jsonpath
from actionrail.processors.assignment import deep_merge
from actionrail.processors.template import expand_value

logger = logging.getLogger("actionrail.executor.state")


class StateExecutor(ActionExecutor):
    kind = ActionKind.STATE

    def validate(self, definition: StateAction) -> list[str]:  # type: ignore[override]
        errors = super().validate(definition)
        if errors:
            return errors
        if not jsonpath.validate_path(definition.path):
            errors.append(f"invalid path {definition.path!r}")
        elif not jsonpath.is_definite(jsonpath.parse(definition.path)):
            errors.append("path must address a single location")
        if definition.operation is StateOperation.TRANSFORM:
            if definition.transform is None:
                errors.append("transform is required for the transform operation")
            elif definition.transform.kind is TransformKind.EXPRESSION and not expression.is_valid(
                definition.transform.expression
            ):
                errors.append(f"invalid transform expression {definition.transform.expression!r}")
        if definition.operation is StateOperation.DELETE and not jsonpath.parse(definition.path):
            errors.append("cannot delete the root")
        return errors

    def transform(self, definition: StateAction, current: Any, full_state: dict[str, Any]) -> Any:
        spec = definition.transform
        if spec is None:
            raise ValidationError(
                f"Action {definition.id} has no transform", code="MISSING_TRANSFORM", action_id=definition.id
            )
        if spec.kind is TransformKind.JSONPATH:
            return jsonpath.get({"currentValue": current, "fullState": full_state}, spec.expression)
        return expression.evaluate(
            spec.expression,
            {
                "currentValue": current,
                "fullState": full_state,
                "value": current,
                "state": full_state,
            },
        )

    async def _run(self, definition: StateAction, context: ExecutionContext) -> RunOutcome:
        full_state = self.state.snapshot()
        previous = jsonpath.get(full_state, definition.path, MISSING)
        operation = definition.operation

        if operation is StateOperation.DELETE:
            if previous is MISSING:
                raise StateError(f"Cannot delete {definition.path}: path does not exist", code="PATH_NOT_FOUND", path=definition.path)
            patch = StatePatch(PatchOp.REMOVE, definition.path)
            new_value: Any = None
        else:
            if operation is StateOperation.ASSIGN:
                new_value = expand_value(definition.value, context.state)
            elif operation is StateOperation.MERGE:
                incoming = expand_value(definition.value, context.state)
                new_value = incoming if previous is MISSING else deep_merge(previous, incoming)
            else:
                new_value = self.transform(definition, None if previous is MISSING else previous, full_state)
            is_root = not jsonpath.parse(definition.path)
            op = PatchOp.REPLACE if previous is not MISSING or is_root else PatchOp.ADD
            patch = StatePatch(op, definition.path, new_value)

        event = self.state.apply_patches(
            [patch],
            {"source": "action", "action_id": definition.id, "instance_id": context.instance_id},
        )
        logger.debug("%s %s on %s", definition.id, operation.value, definition.path)
        data = {
            "operation": operation.value,
            "path": definition.path,
            "value": new_value,
            "previous_value": None if previous is MISSING else previous,
        }
        return RunOutcome(data=data, metadata={"event_id": event.id if event else None})
