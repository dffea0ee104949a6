"""Domain models for action definitions, invocations and state history.

These are plain data containers. Action definitions are a closed tagged
union of three frozen variants (``RemoteAction``, ``LocalAction``,
``StateAction``); the orchestrator dispatches on the concrete type.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Union
from uuid import uuid4

from actionrail.core.errors import error_to_dict


class _Missing:
    """Sentinel for "no value", distinct from a JSON ``null``."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"

    def __deepcopy__(self, memo: dict[int, Any]) -> _Missing:
        return self


MISSING: Any = _Missing()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ActionKind(str, Enum):
    REMOTE = "remote"
    LOCAL = "local"
    STATE = "state"


class TriggerType(str, Enum):
    ON_LAUNCH = "onLaunch"
    ON_PAGE_ENTER = "onPageEnter"
    ON_PAGE_EXIT = "onPageExit"
    ON_COMPLETE = "onComplete"
    MANUAL = "manual"


class TriggerSource(str, Enum):
    LIFECYCLE = "lifecycle"
    DEPENDENCY = "dependency"
    MANUAL = "manual"


class ErrorMode(str, Enum):
    BUBBLE = "bubble"
    NOTIFY = "notify"
    FALLBACK = "fallback"
    SILENT = "silent"


class CircuitPhase(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class RateLimitAlgorithm(str, Enum):
    FIXED = "fixed"
    SLIDING = "sliding"


class CacheTier(str, Enum):
    MEMORY = "memory"
    LOCAL = "local"


class PatchOp(str, Enum):
    ADD = "add"
    REPLACE = "replace"
    REMOVE = "remove"


class StateOperation(str, Enum):
    ASSIGN = "assign"
    MERGE = "merge"
    DELETE = "delete"
    TRANSFORM = "transform"


class TransformKind(str, Enum):
    JSONPATH = "jsonpath"
    EXPRESSION = "expression"


# --- Policies ---


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings. ``max_attempts`` counts attempts beyond the first."""

    max_attempts: int = 3
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    backoff_ms: int = 1000
    retry_on: tuple[str, ...] = ("timeout", "5xx", "network")

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "strategy": self.strategy.value,
            "backoff_ms": self.backoff_ms,
            "retry_on": list(self.retry_on),
        }


@dataclass(frozen=True)
class RateLimitPolicy:
    max_requests: int
    window_ms: int
    algorithm: RateLimitAlgorithm = RateLimitAlgorithm.SLIDING
    key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_requests": self.max_requests,
            "window_ms": self.window_ms,
            "algorithm": self.algorithm.value,
            "key": self.key,
        }


@dataclass(frozen=True)
class CachePolicy:
    enabled: bool = True
    ttl_seconds: float | None = None
    key: str | None = None  # template, expanded against the context state
    tier: CacheTier = CacheTier.MEMORY

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "ttl_seconds": self.ttl_seconds,
            "key": self.key,
            "tier": self.tier.value,
        }


@dataclass(frozen=True)
class CircuitBreakerPolicy:
    enabled: bool = True
    failure_threshold: int | None = None
    reset_timeout_ms: int | None = None
    key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "failure_threshold": self.failure_threshold,
            "reset_timeout_ms": self.reset_timeout_ms,
            "key": self.key,
        }


@dataclass(frozen=True)
class DedupPolicy:
    enabled: bool = True
    key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "key": self.key}


@dataclass(frozen=True)
class TelemetryPolicy:
    track_timing: bool = False
    track_errors: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"track_timing": self.track_timing, "track_errors": self.track_errors}


@dataclass(frozen=True)
class ValidationRule:
    """A custom check on one field of the request body.

    ``kind`` is ``regex`` (``pattern`` must match the string value) or
    ``expression`` (``pattern`` is evaluated with ``value`` and ``data``
    bound and must be truthy).
    """

    path: str
    kind: str
    pattern: str
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "kind": self.kind, "pattern": self.pattern, "message": self.message}


@dataclass(frozen=True)
class ValidationPolicy:
    request_schema: dict[str, Any] | None = None
    response_schema: dict[str, Any] | None = None
    validate_response: bool = False
    rules: tuple[ValidationRule, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_schema": self.request_schema,
            "response_schema": self.response_schema,
            "validate_response": self.validate_response,
            "rules": [r.to_dict() for r in self.rules],
        }


@dataclass(frozen=True)
class Assignment:
    """Maps a value from a response (or the context) into a state path."""

    state_path: str
    value_path: str = "$"
    source: str = "response"  # "response" | "computed"
    merge: bool = False
    required: bool = False
    default: Any = MISSING
    transform: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "state_path": self.state_path,
            "value_path": self.value_path,
            "source": self.source,
            "merge": self.merge,
            "required": self.required,
            "transform": self.transform,
        }
        if self.default is not MISSING:
            data["default"] = self.default
        return data


@dataclass(frozen=True)
class TransformSpec:
    kind: TransformKind
    expression: str

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "expression": self.expression}


# --- Action definitions ---


@dataclass(frozen=True, kw_only=True)
class BaseAction:
    """Fields shared by every action kind."""

    kind: ClassVar[ActionKind]

    id: str
    name: str = ""
    description: str = ""
    category: str = ""
    tags: tuple[str, ...] = ()
    triggers: frozenset[TriggerType] = frozenset({TriggerType.MANUAL})
    on_error: ErrorMode = ErrorMode.BUBBLE
    fallback: Any = None
    enabled: bool = True
    retry: RetryPolicy | None = None
    rate_limit: RateLimitPolicy | None = None
    telemetry: TelemetryPolicy = field(default_factory=TelemetryPolicy)

    def _base_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "tags": list(self.tags),
            "triggers": sorted(t.value for t in self.triggers),
            "on_error": self.on_error.value,
            "fallback": self.fallback,
            "enabled": self.enabled,
            "retry": self.retry.to_dict() if self.retry else None,
            "rate_limit": self.rate_limit.to_dict() if self.rate_limit else None,
            "telemetry": self.telemetry.to_dict(),
        }


@dataclass(frozen=True, kw_only=True)
class RemoteAction(BaseAction):
    """Call an HTTP endpoint and map the response into state."""

    kind: ClassVar[ActionKind] = ActionKind.REMOTE

    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    timeout_ms: int | None = None
    auth: str | None = None
    variables: dict[str, str] = field(default_factory=dict)
    cache: CachePolicy | None = None
    circuit_breaker: CircuitBreakerPolicy | None = None
    dedup: DedupPolicy | None = None
    validation: ValidationPolicy | None = None
    assignments: tuple[Assignment, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data = self._base_dict()
        data.update(
            {
                "url": self.url,
                "method": self.method,
                "headers": dict(self.headers),
                "params": dict(self.params),
                "body": self.body,
                "timeout_ms": self.timeout_ms,
                "auth": self.auth,
                "variables": dict(self.variables),
                "cache": self.cache.to_dict() if self.cache else None,
                "circuit_breaker": self.circuit_breaker.to_dict() if self.circuit_breaker else None,
                "dedup": self.dedup.to_dict() if self.dedup else None,
                "validation": self.validation.to_dict() if self.validation else None,
                "assignments": [a.to_dict() for a in self.assignments],
            }
        )
        return data


@dataclass(frozen=True, kw_only=True)
class LocalAction(BaseAction):
    """Invoke a registered host function, optionally with an inverse for rollback."""

    kind: ClassVar[ActionKind] = ActionKind.LOCAL

    function: str
    params: dict[str, Any] = field(default_factory=dict)
    rollback_function: str | None = None
    rollback_params: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data = self._base_dict()
        data.update(
            {
                "function": self.function,
                "params": dict(self.params),
                "rollback_function": self.rollback_function,
                "rollback_params": self.rollback_params,
            }
        )
        return data


@dataclass(frozen=True, kw_only=True)
class StateAction(BaseAction):
    """Mutate the state document at one path."""

    kind: ClassVar[ActionKind] = ActionKind.STATE

    operation: StateOperation
    path: str
    value: Any = None
    transform: TransformSpec | None = None

    def to_dict(self) -> dict[str, Any]:
        data = self._base_dict()
        data.update(
            {
                "operation": self.operation.value,
                "path": self.path,
                "value": self.value,
                "transform": self.transform.to_dict() if self.transform else None,
            }
        )
        return data


ActionDefinition = Union[RemoteAction, LocalAction, StateAction]


# --- Invocation ---


class CancellationToken:
    """Cooperative cancellation signal carried by an ExecutionContext."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class ExecutionContext:
    """Per-invocation inputs. Never shared between concurrent invocations."""

    action_id: str
    state: dict[str, Any] = field(default_factory=dict)
    instance_id: str = field(default_factory=lambda: uuid4().hex[:12])
    started_at: datetime = field(default_factory=_now)
    trigger_source: TriggerSource = TriggerSource.MANUAL
    previous_results: Any = None
    cancel: CancellationToken | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def derive(self, action_id: str, **changes: Any) -> ExecutionContext:
        """A fresh context for another action, keeping the cancellation signal."""
        changes.setdefault("instance_id", uuid4().hex[:12])
        changes.setdefault("started_at", _now())
        return replace(self, action_id=action_id, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_id": self.action_id,
            "instance_id": self.instance_id,
            "started_at": self.started_at.isoformat(),
            "trigger_source": self.trigger_source.value,
            "previous_results": self.previous_results,
            "cancelled": bool(self.cancel and self.cancel.cancelled),
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of exactly one invocation."""

    action_id: str
    success: bool
    data: Any = None
    error: BaseException | None = None
    elapsed_ms: float = 0.0
    cached: bool = False
    retry_count: int = 0
    fallback: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_id": self.action_id,
            "success": self.success,
            "data": self.data,
            "error": error_to_dict(self.error) if self.error else None,
            "elapsed_ms": round(self.elapsed_ms, 3),
            "cached": self.cached,
            "retry_count": self.retry_count,
            "fallback": self.fallback,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class ConditionalStep:
    """A guard expression and the action to run when it holds."""

    condition: str
    action_id: str


@dataclass(frozen=True)
class TriggerEvent:
    type: TriggerType
    payload: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "payload": self.payload,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }


# --- Resilience records ---


@dataclass
class CircuitState:
    key: str
    phase: CircuitPhase = CircuitPhase.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_at: float | None = None
    last_success_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "phase": self.phase.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_at": self.last_failure_at,
            "last_success_at": self.last_success_at,
        }


@dataclass
class RateLimitBucket:
    used: int = 0
    window_start: float = 0.0
    last_refill: float = 0.0
    last_seen: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "used": self.used,
            "window_start": self.window_start,
            "last_refill": self.last_refill,
            "last_seen": self.last_seen,
        }


@dataclass
class CacheEntry:
    """A cached value. ``created_at`` is epoch seconds."""

    value: Any
    created_at: float
    ttl_seconds: float
    access_count: int = 0
    last_accessed: float | None = None

    def is_expired(self, now: float) -> bool:
        return now > self.created_at + self.ttl_seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": self.value,
            "created_at": self.created_at,
            "ttl_seconds": self.ttl_seconds,
            "access_count": self.access_count,
            "last_accessed": self.last_accessed,
        }


# --- State history ---


@dataclass(frozen=True)
class StatePatch:
    """One add/replace/remove mutation at a JSONPath location."""

    op: PatchOp
    path: str
    value: Any = MISSING

    @property
    def has_value(self) -> bool:
        return self.value is not MISSING

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"op": self.op.value, "path": self.path}
        if self.has_value:
            data["value"] = self.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StatePatch:
        return cls(
            op=PatchOp(data["op"]),
            path=data["path"],
            value=data["value"] if "value" in data else MISSING,
        )


@dataclass(frozen=True)
class StateEvent:
    id: str
    patches: tuple[StatePatch, ...]
    timestamp: datetime = field(default_factory=_now)
    before_checksum: str = ""
    after_checksum: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "patches": [p.to_dict() for p in self.patches],
            "before_checksum": self.before_checksum,
            "after_checksum": self.after_checksum,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateEvent:
        return cls(
            id=data["id"],
            patches=tuple(StatePatch.from_dict(p) for p in data.get("patches", [])),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            before_checksum=data.get("before_checksum", ""),
            after_checksum=data.get("after_checksum", ""),
            metadata=data.get("metadata", {}),
        )


@dataclass(frozen=True)
class StateSnapshot:
    """A named full copy of the state document."""

    id: str
    state: dict[str, Any]
    timestamp: datetime = field(default_factory=_now)
    checksum: str = ""
    event_id: str | None = None  # last event applied when the snapshot was taken
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state,
            "timestamp": self.timestamp.isoformat(),
            "checksum": self.checksum,
            "event_id": self.event_id,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateSnapshot:
        return cls(
            id=data["id"],
            state=data["state"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            checksum=data.get("checksum", ""),
            event_id=data.get("event_id"),
            metadata=data.get("metadata", {}),
        )
