"""``{{expr}}`` placeholder expansion.

An expression is resolved against a context document in one of three ways:

    {{$.user.id}}       JSONPath from the root
    {{user.id}}         dotted / bracketed path (``items[0].name``)
    {{userId}}          a top-level key

``variables`` maps placeholder names to expressions, so a definition can
write ``{{make}}`` and declare ``make -> $.form.make.value`` once.

A path that resolves to nothing renders as an empty string. A bare name
that is not in the context, or an expression that does not parse, leaves
the placeholder untouched so the problem stays visible in the output.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from actionrail.core.errors import StateError
from actionrail.core.models import MISSING
from actionrail.processors import jsonpath

logger = logging.getLogger("actionrail.template")

PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")

_UNRESOLVED = object()


def _resolve(expr: str, context: Any, variables: dict[str, str] | None) -> Any:
    expr = expr.strip()
    if variables and expr in variables:
        expr = variables[expr].strip()
    try:
        if expr.startswith("$") or "." in expr or "[" in expr:
            return jsonpath.get(context, expr, MISSING)
    except StateError:
        logger.debug("Unparseable template expression: %s", expr)
        return _UNRESOLVED
    if isinstance(context, dict) and expr in context:
        return context[expr]
    return _UNRESOLVED


def format_value(value: Any) -> str:
    if value is None or value is MISSING:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


def expand(template: str, context: Any, variables: dict[str, str] | None = None) -> str:
    """Substitute every placeholder in ``template``."""
    if not isinstance(template, str) or "{{" not in template:
        return template

    def substitute(match: re.Match[str]) -> str:
        value = _resolve(match.group(1), context, variables)
        if value is _UNRESOLVED:
            return match.group(0)
        return format_value(value)

    return PLACEHOLDER.sub(substitute, template)


def expand_value(value: Any, context: Any, variables: dict[str, str] | None = None) -> Any:
    """Expand templates inside strings, dicts and lists.

    A string that is exactly one placeholder is replaced by the resolved
    value itself, keeping its JSON type (``"{{$.count}}"`` -> ``3``).
    """
    if isinstance(value, str):
        match = PLACEHOLDER.fullmatch(value.strip())
        if match:
            resolved = _resolve(match.group(1), context, variables)
            if resolved is _UNRESOLVED:
                return value
            return None if resolved is MISSING else resolved
        return expand(value, context, variables)
    if isinstance(value, dict):
        return {k: expand_value(v, context, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_value(v, context, variables) for v in value]
    return value


def extract_variables(template: str) -> list[str]:
    """Placeholder expressions in order of first appearance, without duplicates."""
    seen: list[str] = []
    for match in PLACEHOLDER.finditer(template or ""):
        expr = match.group(1).strip()
        if expr not in seen:
            seen.append(expr)
    return seen


def has_variables(template: Any) -> bool:
    return isinstance(template, str) and PLACEHOLDER.search(template) is not None


def validate_template(template: str) -> list[str]:
    """Problems with a template: unbalanced braces, empty or unparseable expressions."""
    errors: list[str] = []
    if template.count("{{") != template.count("}}"):
        errors.append("Unbalanced template braces")
    for match in PLACEHOLDER.finditer(template):
        expr = match.group(1).strip()
        if not expr:
            errors.append("Empty template expression")
        elif (expr.startswith("$") or "." in expr or "[" in expr) and not jsonpath.validate_path(expr):
            errors.append(f"Invalid path in template expression: {expr}")
    return errors


def escape(text: str) -> str:
    return text.replace("{{", "\\{\\{").replace("}}", "\\}\\}")


def unescape(text: str) -> str:
    return text.replace("\\{\\{", "{{").replace("\\}\\}", "}}")
