"""Error taxonomy for action execution and state mutation.

Every failure an executor can surface is an ``ActionError`` subclass. The
``retryable`` flag and ``category`` string are what the retry coordinator's
classifiers look at; the circuit breaker ignores both and records every
failure.

State-layer failures (bad paths, invalid patches, checksum mismatches) are
``StateError`` and are never retried.
"""

from __future__ import annotations

from typing import Any


class ActionError(Exception):
    """Base class for all action execution failures."""

    category = "action"
    default_code = "ACTION_ERROR"
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        action_id: str | None = None,
        context: dict[str, Any] | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.action_id = action_id
        self.context = context or {}
        self.retryable = self.default_retryable if retryable is None else retryable

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "category": self.category,
            "action_id": self.action_id,
            "retryable": self.retryable,
            "context": self.context,
        }


class ValidationError(ActionError):
    """Bad definition or input. Never retried."""

    category = "validation"
    default_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        errors: list[dict[str, Any]] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.errors = errors or []

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class NetworkError(ActionError):
    """Transport failure or non-2xx response.

    Server errors (5xx) and connection failures are retryable. Client errors
    (4xx) are not.
    """

    default_code = "NETWORK_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        response_body: Any = None,
        **kwargs: Any,
    ) -> None:
        if "retryable" not in kwargs or kwargs["retryable"] is None:
            kwargs["retryable"] = status_code is None or status_code >= 500
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.response_body = response_body

    @property
    def category(self) -> str:  # type: ignore[override]
        if self.status_code is None:
            return "network"
        if self.status_code >= 500:
            return "server"
        return "client"

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["status_code"] = self.status_code
        return data


class AuthError(ActionError):
    """Authentication failed or an auth profile is unusable."""

    category = "auth"
    default_code = "AUTH_ERROR"


class ActionTimeoutError(ActionError):
    """The outbound call exceeded its timeout."""

    category = "timeout"
    default_code = "TIMEOUT_ERROR"
    default_retryable = True

    def __init__(self, message: str, *, timeout_ms: float | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.timeout_ms = timeout_ms


class CircuitOpenError(ActionError):
    """The circuit for this key is open; the call was rejected without running."""

    category = "circuit_open"
    default_code = "CIRCUIT_BREAKER_OPEN"


class RateLimitError(ActionError):
    """The rate-limit bucket for this key cannot admit the call."""

    category = "rate_limit"
    default_code = "RATE_LIMIT_EXCEEDED"
    default_retryable = True

    def __init__(
        self,
        message: str,
        *,
        limit: int,
        window_ms: int,
        reset_at: float,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.limit = limit
        self.window_ms = window_ms
        self.reset_at = reset_at

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({"limit": self.limit, "window_ms": self.window_ms, "reset_at": self.reset_at})
        return data


class ActionCancelledError(ActionError):
    """The invocation's cancellation signal fired."""

    category = "cancelled"
    default_code = "CANCELLED"


class ActionNotFoundError(ActionError, LookupError):
    category = "lookup"
    default_code = "ACTION_NOT_FOUND"


class DuplicateActionError(ActionError):
    category = "lookup"
    default_code = "DUPLICATE_ACTION"


class StateError(Exception):
    """A path or patch invariant was violated."""

    def __init__(self, message: str, *, code: str = "STATE_ERROR", path: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.path = path
        self.retryable = False
        self.category = "state"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "category": self.category,
            "path": self.path,
            "retryable": False,
        }


def error_to_dict(error: BaseException) -> dict[str, Any]:
    """Serialize any exception, using the taxonomy's shape where available."""
    if isinstance(error, (ActionError, StateError)):
        return error.to_dict()
    return {
        "type": type(error).__name__,
        "message": str(error),
        "code": "UNKNOWN_ERROR",
        "category": "unknown",
        "retryable": False,
    }
