"""Map values out of a response into state paths.

Applying assignments never touches the live state. It works on a
path-copied view of the state and returns the ``StatePatch`` list the state
manager should apply, so a batch of assignments lands as one event.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from actionrail.core.errors import StateError
from actionrail.core.models import MISSING, Assignment, PatchOp, StatePatch
from actionrail.processors import jsonpath
from actionrail.processors.expression import ExpressionError, evaluate

SOURCES = ("response", "computed")


@dataclass
class AssignmentOutcome:
    success: bool = True
    results: list[dict[str, Any]] = field(default_factory=list)
    patches: list[StatePatch] = field(default_factory=list)
    state: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "results": self.results,
            "patches": [p.to_dict() for p in self.patches],
            "errors": self.errors,
        }


def deep_merge(target: Any, source: Any) -> Any:
    """Merge ``source`` into ``target`` without mutating either.

    Objects merge key by key, recursively. Lists concatenate. Anything else
    (including mismatched types) is replaced by ``source``.
    """
    if isinstance(target, dict) and isinstance(source, dict):
        merged = dict(target)
        for key, value in source.items():
            merged[key] = deep_merge(target[key], value) if key in target else value
        return merged
    if isinstance(target, list) and isinstance(source, list):
        return [*target, *source]
    return source


def _extract(assignment: Assignment, response: Any, state: dict[str, Any], extra: dict[str, Any]) -> Any:
    if assignment.source == "computed":
        return evaluate(assignment.value_path, {"state": state, "response": response, **extra})
    return jsonpath.get(response, assignment.value_path, MISSING)


def apply_assignments(
    assignments: list[Assignment] | tuple[Assignment, ...],
    response: Any,
    state: dict[str, Any],
    *,
    names: dict[str, Any] | None = None,
) -> AssignmentOutcome:
    """Resolve every assignment and collect the patches that realize them.

    A missing required value is an error for that assignment only; the
    others still apply. ``names`` adds bindings for computed values and
    transforms.
    """
    extra = names or {}
    outcome = AssignmentOutcome(state=state)
    working = state

    for assignment in assignments:
        try:
            value = _extract(assignment, response, working, extra)
            if value is MISSING or value is None:
                if assignment.default is not MISSING:
                    value = assignment.default
                elif assignment.required:
                    raise StateError(
                        f"Required value not found at {assignment.value_path}",
                        code="REQUIRED_VALUE_MISSING",
                        path=assignment.state_path,
                    )
                else:
                    outcome.results.append(
                        {"state_path": assignment.state_path, "skipped": True, "value": None}
                    )
                    continue

            if assignment.transform:
                value = evaluate(
                    assignment.transform,
                    {"value": value, "state": working, "response": response, **extra},
                )

            previous = jsonpath.get(working, assignment.state_path, MISSING)
            if assignment.merge and previous is not MISSING:
                value = deep_merge(previous, value)

            working = jsonpath.assoc(working, assignment.state_path, value)
            op = PatchOp.REPLACE if previous is not MISSING else PatchOp.ADD
            outcome.patches.append(StatePatch(op=op, path=assignment.state_path, value=value))
            outcome.results.append(
                {
                    "state_path": assignment.state_path,
                    "value": value,
                    "previous_value": None if previous is MISSING else previous,
                    "merged": assignment.merge and previous is not MISSING,
                    "skipped": False,
                }
            )
        except (StateError, ExpressionError) as exc:
            outcome.success = False
            outcome.errors.append(f"{assignment.state_path}: {exc}")

    outcome.state = working
    return outcome


def preview_assignments(
    assignments: list[Assignment] | tuple[Assignment, ...],
    response: Any,
    state: dict[str, Any],
) -> list[dict[str, Any]]:
    """What each assignment would write, without producing anything to apply."""
    return apply_assignments(assignments, response, state).results


def validate_assignments(assignments: list[Assignment] | tuple[Assignment, ...]) -> list[str]:
    errors: list[str] = []
    for i, assignment in enumerate(assignments):
        if not assignment.state_path:
            errors.append(f"assignments[{i}]: state_path is required")
        elif not jsonpath.validate_path(assignment.state_path):
            errors.append(f"assignments[{i}]: invalid state_path {assignment.state_path!r}")
        elif not jsonpath.is_definite(jsonpath.parse(assignment.state_path)):
            errors.append(f"assignments[{i}]: state_path must address a single location")
        if assignment.source not in SOURCES:
            errors.append(f"assignments[{i}]: unknown source {assignment.source!r}")
        elif assignment.source == "response" and not jsonpath.validate_path(assignment.value_path):
            errors.append(f"assignments[{i}]: invalid value_path {assignment.value_path!r}")
    return errors
