"""Build action definitions from plain dicts, JSON files and directories.

The canonical format is snake_case with a ``kind`` of ``remote``, ``local``
or ``state``. camelCase keys are accepted on structural fields, as are the
legacy kind names ``server`` / ``client`` / ``system`` and a nested ``api``
block for remote actions. Free-form payloads (headers, params, body,
values, schemas) are taken verbatim.

Every problem in a definition is collected before raising, so a single
ValidationError lists them all.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Iterable

import httpx

from actionrail.core.errors import ValidationError
from actionrail.core.models import (
    MISSING,
    ActionDefinition,
    ActionKind,
    Assignment,
    BackoffStrategy,
    CachePolicy,
    CacheTier,
    CircuitBreakerPolicy,
    DedupPolicy,
    ErrorMode,
    LocalAction,
    RateLimitAlgorithm,
    RateLimitPolicy,
    RemoteAction,
    RetryPolicy,
    StateAction,
    StateOperation,
    TelemetryPolicy,
    TransformKind,
    TransformSpec,
    TriggerType,
    ValidationPolicy,
    ValidationRule,
)
from actionrail.processors import jsonpath
from actionrail.processors.template import PLACEHOLDER

logger = logging.getLogger("actionrail.loader")

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")

_KIND_ALIASES = {"server": "remote", "client": "local", "system": "state"}
_TRIGGER_ALIASES = {"onTreeLaunch": "onLaunch"}
_ERROR_MODE_ALIASES = {"toast": "notify"}
_TIER_ALIASES = {"localStorage": "local", "sessionStorage": "memory"}
_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL.sub("_", key).lower()


def _fields(data: dict[str, Any]) -> dict[str, Any]:
    return {_snake(k): v for k, v in data.items()}


def check_url(url: str) -> bool:
    """Whether ``url`` is an absolute http(s) address once placeholders are filled."""
    try:
        parsed = httpx.URL(PLACEHOLDER.sub("placeholder", url))
    except (httpx.InvalidURL, TypeError):
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.host)


class _Errors:
    def __init__(self) -> None:
        self.items: list[dict[str, Any]] = []

    def add(self, path: str, message: str) -> None:
        self.items.append({"path": path, "message": message})


def _enum(enum_cls: Any, value: Any, path: str, errors: _Errors, aliases: dict[str, str] | None = None) -> Any:
    if aliases and value in aliases:
        value = aliases[value]
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        errors.add(path, f"must be one of {allowed}, got {value!r}")
        return None


def _flag_policy(raw: Any, path: str, errors: _Errors) -> dict[str, Any] | None:
    """Policies may be given as ``true`` / ``false`` or as a settings dict."""
    if raw is None or raw is False:
        return None
    if raw is True:
        return {}
    if not isinstance(raw, dict):
        errors.add(path, "must be a boolean or an object")
        return None
    return _fields(raw)


def _retry(raw: Any, errors: _Errors) -> RetryPolicy | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        errors.add("retry", "must be an object")
        return None
    f = _fields(raw)
    strategy = _enum(BackoffStrategy, f.get("strategy", "exponential"), "retry.strategy", errors)
    max_attempts = f.get("max_attempts", f.get("max", 3))
    if not isinstance(max_attempts, int) or max_attempts < 0:
        errors.add("retry.max_attempts", "must be a non-negative integer")
        max_attempts = 0
    retry_on = f.get("retry_on", ("timeout", "5xx", "network"))
    return RetryPolicy(
        max_attempts=max_attempts,
        strategy=strategy or BackoffStrategy.EXPONENTIAL,
        backoff_ms=int(f.get("backoff_ms", 1000)),
        retry_on=tuple(retry_on),
    )


def _rate_limit(raw: Any, errors: _Errors) -> RateLimitPolicy | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        errors.add("rate_limit", "must be an object")
        return None
    f = _fields(raw)
    max_requests = f.get("max_requests", f.get("requests"))
    window_ms = f.get("window_ms", f.get("window"))
    if not isinstance(max_requests, int) or max_requests <= 0:
        errors.add("rate_limit.max_requests", "must be a positive integer")
    if not isinstance(window_ms, int) or window_ms <= 0:
        errors.add("rate_limit.window_ms", "must be a positive integer")
    algorithm = _enum(RateLimitAlgorithm, f.get("algorithm", f.get("strategy", "sliding")), "rate_limit.algorithm", errors)
    if not isinstance(max_requests, int) or not isinstance(window_ms, int):
        return None
    return RateLimitPolicy(
        max_requests=max_requests,
        window_ms=window_ms,
        algorithm=algorithm or RateLimitAlgorithm.SLIDING,
        key=f.get("key"),
    )


def _telemetry(raw: Any) -> TelemetryPolicy:
    if not isinstance(raw, dict):
        return TelemetryPolicy()
    f = _fields(raw)
    return TelemetryPolicy(
        track_timing=bool(f.get("track_timing", False)),
        track_errors=bool(f.get("track_errors", True)),
    )


def _triggers(raw: Any, errors: _Errors) -> frozenset[TriggerType]:
    if raw is None:
        return frozenset({TriggerType.MANUAL})
    if isinstance(raw, str):
        raw = [raw]
    found = set()
    for i, item in enumerate(raw):
        trigger = _enum(TriggerType, item, f"triggers[{i}]", errors, _TRIGGER_ALIASES)
        if trigger is not None:
            found.add(trigger)
    return frozenset(found)


def _common(f: dict[str, Any], errors: _Errors) -> dict[str, Any]:
    action_id = f.get("id")
    if not isinstance(action_id, str) or not action_id:
        errors.add("id", "is required and must be a non-empty string")
    on_error = _enum(ErrorMode, f.get("on_error", "bubble"), "on_error", errors, _ERROR_MODE_ALIASES)
    tags = f.get("tags") or ()
    return {
        "id": action_id or "",
        "name": f.get("name") or (action_id or ""),
        "description": f.get("description", ""),
        "category": f.get("category", ""),
        "tags": tuple(tags),
        "triggers": _triggers(f.get("triggers", f.get("trigger")), errors),
        "on_error": on_error or ErrorMode.BUBBLE,
        "fallback": f.get("fallback", f.get("fallback_value")),
        "enabled": bool(f.get("enabled", True)),
        "retry": _retry(f.get("retry"), errors),
        "rate_limit": _rate_limit(f.get("rate_limit"), errors),
        "telemetry": _telemetry(f.get("telemetry")),
    }


def _assignment(raw: Any, i: int, errors: _Errors) -> Assignment | None:
    path = f"assignments[{i}]"
    if not isinstance(raw, dict):
        errors.add(path, "must be an object")
        return None
    f = _fields(raw)
    state_path = f.get("state_path", f.get("target"))
    if not isinstance(state_path, str) or not jsonpath.validate_path(state_path):
        errors.add(f"{path}.state_path", f"invalid state path {state_path!r}")
        return None
    value_path = f.get("value_path", f.get("response_path", f.get("source_path", "$")))
    source = f.get("source", "response")
    if source not in ("response", "computed"):
        errors.add(f"{path}.source", "must be 'response' or 'computed'")
    return Assignment(
        state_path=state_path,
        value_path=value_path,
        source=source,
        merge=bool(f.get("merge", False)),
        required=bool(f.get("required", False)),
        default=raw["default"] if "default" in raw else raw.get("defaultValue", MISSING),
        transform=f.get("transform"),
    )


def _validation(raw: Any, errors: _Errors) -> ValidationPolicy | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        errors.add("validation", "must be an object")
        return None
    f = _fields(raw)
    rules = []
    for i, rule in enumerate(f.get("rules") or ()):
        r = _fields(rule) if isinstance(rule, dict) else {}
        if not r.get("path") or r.get("kind", r.get("type")) not in ("regex", "expression") or not r.get("pattern"):
            errors.add(f"validation.rules[{i}]", "needs path, kind (regex|expression) and pattern")
            continue
        rules.append(ValidationRule(r["path"], r.get("kind", r.get("type")), r["pattern"], r.get("message", "")))
    return ValidationPolicy(
        request_schema=f.get("request_schema", f.get("request")),
        response_schema=f.get("response_schema", f.get("response")),
        validate_response=bool(f.get("validate_response", False)),
        rules=tuple(rules),
    )


def _remote(f: dict[str, Any], common: dict[str, Any], errors: _Errors) -> RemoteAction | None:
    if isinstance(f.get("api"), dict):
        f = {**f, **_fields(f["api"])}
    url = f.get("url") or f.get("endpoint")
    method = str(f.get("method", "GET")).upper()
    if not url:
        errors.add("url", "is required")
    elif not check_url(url):
        errors.add("url", f"not a valid http(s) address: {url!r}")
    if method not in HTTP_METHODS:
        errors.add("method", f"unsupported HTTP method {method!r}")

    cache = _flag_policy(f.get("cache"), "cache", errors)
    breaker = _flag_policy(f.get("circuit_breaker"), "circuit_breaker", errors)
    dedup = _flag_policy(f.get("dedup", f.get("deduplicate")), "dedup", errors)
    auth = f.get("auth")
    if isinstance(auth, dict):
        auth = auth.get("profile") or auth.get("id")

    raw_assignments = f.get("assignments", f.get("state_assignments")) or ()
    assignments = [_assignment(a, i, errors) for i, a in enumerate(raw_assignments)]
    timeout = f.get("timeout_ms", f.get("timeout"))

    cache_policy = None
    if cache is not None:
        tier = _enum(CacheTier, cache.get("tier", cache.get("strategy", "memory")), "cache.tier", errors, _TIER_ALIASES)
        cache_policy = CachePolicy(
            enabled=bool(cache.get("enabled", True)),
            ttl_seconds=cache.get("ttl_seconds", cache.get("ttl")),
            key=cache.get("key"),
            tier=tier or CacheTier.MEMORY,
        )

    return RemoteAction(
        **common,
        url=url or "",
        method=method,
        headers=dict(f.get("headers") or {}),
        params=dict(f.get("params") or f.get("query") or {}),
        body=f.get("body"),
        timeout_ms=int(timeout) if timeout is not None else None,
        auth=auth,
        variables=dict(f.get("variables") or {}),
        cache=cache_policy,
        circuit_breaker=CircuitBreakerPolicy(
            enabled=bool(breaker.get("enabled", True)),
            failure_threshold=breaker.get("failure_threshold", breaker.get("threshold")),
            reset_timeout_ms=breaker.get("reset_timeout_ms", breaker.get("reset_timeout")),
            key=breaker.get("key"),
        )
        if breaker is not None
        else None,
        dedup=DedupPolicy(enabled=bool(dedup.get("enabled", True)), key=dedup.get("key")) if dedup is not None else None,
        validation=_validation(f.get("validation"), errors),
        assignments=tuple(a for a in assignments if a is not None),
    )


def _local(f: dict[str, Any], common: dict[str, Any], errors: _Errors) -> LocalAction | None:
    function = f.get("function", f.get("handler"))
    if not isinstance(function, str) or not function:
        errors.add("function", "is required")
    rollback = f.get("rollback")
    rollback_function = f.get("rollback_function")
    rollback_params = f.get("rollback_params")
    if isinstance(rollback, dict):
        rollback_function = rollback.get("function", rollback_function)
        rollback_params = rollback.get("params", rollback_params)
    return LocalAction(
        **common,
        function=function or "",
        params=dict(f.get("params") or {}),
        rollback_function=rollback_function,
        rollback_params=rollback_params,
    )


def _state(f: dict[str, Any], common: dict[str, Any], errors: _Errors) -> StateAction | None:
    operation = _enum(StateOperation, f.get("operation"), "operation", errors)
    path = f.get("path", f.get("target"))
    if not isinstance(path, str) or not jsonpath.validate_path(path):
        errors.add("path", f"invalid state path {path!r}")
    transform = f.get("transform")
    spec = None
    if isinstance(transform, str):
        spec = TransformSpec(TransformKind.EXPRESSION, transform)
    elif isinstance(transform, dict):
        kind = _enum(TransformKind, transform.get("kind", transform.get("type", "expression")), "transform.kind", errors)
        expression = transform.get("expression")
        if not expression:
            errors.add("transform.expression", "is required")
        elif kind is not None:
            spec = TransformSpec(kind, expression)
    if operation is StateOperation.TRANSFORM and spec is None:
        errors.add("transform", "is required for the transform operation")
    return StateAction(
        **common,
        operation=operation or StateOperation.ASSIGN,
        path=path or "$",
        value=f.get("value"),
        transform=spec,
    )


_BUILDERS = {
    ActionKind.REMOTE: _remote,
    ActionKind.LOCAL: _local,
    ActionKind.STATE: _state,
}


def parse_definition(data: Any) -> ActionDefinition:
    """Build one definition. Raises ValidationError listing every problem."""
    if not isinstance(data, dict):
        raise ValidationError("Action definition must be an object", code="INVALID_DEFINITION")
    errors = _Errors()
    f = _fields(data)
    kind = _enum(ActionKind, f.get("kind", f.get("type")), "kind", errors, _KIND_ALIASES)
    common = _common(f, errors)
    definition = _BUILDERS[kind](f, common, errors) if kind is not None else None
    if errors.items or definition is None:
        label = common["id"] or "<unnamed>"
        summary = "; ".join(f"{e['path']}: {e['message']}" for e in errors.items)
        raise ValidationError(
            f"Invalid action definition {label}: {summary}",
            code="INVALID_DEFINITION",
            action_id=common["id"] or None,
            errors=errors.items,
        )
    return definition


def definition_errors(data: Any) -> list[dict[str, Any]]:
    try:
        parse_definition(data)
    except ValidationError as exc:
        return exc.errors or [{"path": "", "message": exc.message}]
    return []


def _unwrap(document: Any) -> list[Any]:
    if isinstance(document, dict) and "actions" in document:
        document = document["actions"]
    if isinstance(document, dict):
        return [document]
    if isinstance(document, list):
        return document
    raise ValidationError("Expected an action object, a list, or {\"actions\": [...]}", code="INVALID_DEFINITION")


def load_definitions(items: Iterable[Any], *, strict: bool = True) -> list[ActionDefinition]:
    """Parse many definitions. With ``strict=False`` invalid ones are logged and skipped."""
    definitions = []
    for item in items:
        try:
            definitions.append(parse_definition(item))
        except ValidationError as exc:
            if strict:
                raise
            logger.warning("Skipping invalid action definition: %s", exc.message)
    return definitions


def read_file(path: Path | str) -> list[Any]:
    path = Path(path)
    if not path.is_file():
        raise ValidationError(f"Definition file not found: {path}", code="FILE_NOT_FOUND")
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValidationError(f"{path} is not valid JSON: {exc}", code="INVALID_JSON") from exc
    return _unwrap(document)


def load_file(path: Path | str, *, strict: bool = True) -> list[ActionDefinition]:
    return load_definitions(read_file(path), strict=strict)


def load_directory(path: Path | str, *, recursive: bool = False) -> list[ActionDefinition]:
    """Load every ``*.json`` file; files that fail to load are logged and skipped."""
    root = Path(path)
    if not root.is_dir():
        raise ValidationError(f"Definition directory not found: {root}", code="DIRECTORY_NOT_FOUND")
    pattern = "**/*.json" if recursive else "*.json"
    definitions: list[ActionDefinition] = []
    for file in sorted(root.glob(pattern)):
        try:
            definitions.extend(load_file(file))
        except ValidationError as exc:
            logger.warning("Skipping %s: %s", file, exc.message)
    return definitions


def load_path(path: Path | str, *, recursive: bool = False) -> list[ActionDefinition]:
    path = Path(path)
    if path.is_dir():
        return load_directory(path, recursive=recursive)
    return load_file(path)
