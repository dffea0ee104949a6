"""Remote actions: templated HTTP calls behind the resilience pipeline.

Order of operations for one invocation:

    1. circuit check (open => CircuitOpenError, nothing is sent)
    2. expand url / headers / params / body against the context state
    3. request validation
    4. cache lookup; a hit returns the cached payload with ``cached=True``
       and hands a claimed half-open trial back to the breaker unused
    5. join an in-flight identical call, or start one; the shared call
       retries per policy, validates the response, applies assignments,
       fills the cache and records the circuit outcome exactly once
       however many callers are waiting on it

Assignments land as a single state event. If any assignment fails (for
instance a required value is missing) the action fails and no patch is
applied. A cache hit re-applies the assignments to the cached payload so
state ends up the same as after a live call.
"""

from __future__ import annotations

import logging
from typing import Any

from actionrail.core.errors import CircuitOpenError, ValidationError
from actionrail.core.loader import HTTP_METHODS, check_url
from actionrail.core.models import ActionKind, ExecutionContext, RemoteAction
from actionrail.core.serialization import checksum
from actionrail.executors.base import ActionExecutor, RunOutcome, run_cancellable
from actionrail.processors.assignment import apply_assignments, validate_assignments
from actionrail.processors.template import expand, expand_value
from actionrail.processors.validation import SchemaValidator
from actionrail.resilience.cache import CacheManager
from actionrail.resilience.circuit_breaker import CircuitBreaker
from actionrail.resilience.deduplicator import RequestDeduplicator
from actionrail.transport.client import HttpTransport

logger = logging.getLogger("actionrail.executor.remote")


class RemoteExecutor(ActionExecutor):
    kind = ActionKind.REMOTE

    def __init__(
        self,
        *,
        transport: HttpTransport,
        cache: CacheManager | None = None,
        breaker: CircuitBreaker | None = None,
        deduplicator: RequestDeduplicator | None = None,
        validator: SchemaValidator | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.transport = transport
        self.cache = cache or CacheManager()
        self.breaker = breaker or CircuitBreaker()
        self.deduplicator = deduplicator or RequestDeduplicator()
        self.validator = validator or SchemaValidator()

    def validate(self, definition: RemoteAction) -> list[str]:  # type: ignore[override]
        errors = super().validate(definition)
        if errors:
            return errors
        if not definition.url:
            errors.append("url is required")
        elif not check_url(definition.url):
            errors.append(f"invalid url {definition.url!r}")
        if not definition.method:
            errors.append("method is required")
        elif definition.method.upper() not in HTTP_METHODS:
            errors.append(f"unsupported method {definition.method!r}")
        errors.extend(validate_assignments(definition.assignments))
        return errors

    def breaker_key(self, definition: RemoteAction) -> str | None:
        policy = definition.circuit_breaker
        if policy is None or not policy.enabled:
            return None
        key = policy.key or definition.id
        if policy.failure_threshold or policy.reset_timeout_ms:
            self.breaker.configure(
                key,
                failure_threshold=policy.failure_threshold,
                reset_timeout_ms=policy.reset_timeout_ms,
            )
        return key

    async def _run(self, definition: RemoteAction, context: ExecutionContext) -> RunOutcome:
        breaker_key = self.breaker_key(definition)
        if breaker_key and self.breaker.is_open(breaker_key):
            raise CircuitOpenError(
                f"Circuit breaker is open for {breaker_key}",
                action_id=definition.id,
                context={"circuit": breaker_key},
            )

        state = context.state
        variables = definition.variables
        method = definition.method.upper()
        cache_key = None
        cache_policy = definition.cache
        try:
            url = expand(definition.url, state, variables)
            headers = {k: str(v) for k, v in expand_value(definition.headers, state, variables).items()}
            params = expand_value(definition.params, state, variables)
            body = expand_value(definition.body, state, variables)

            self.validator.validate_request(definition.validation, body, action_id=definition.id)

            if cache_policy is not None and cache_policy.enabled:
                if cache_policy.key:
                    cache_key = expand(cache_policy.key, state, variables)
                else:
                    cache_key = f"{definition.id}:{method}:{url}:{checksum({'params': params, 'body': body})[:16]}"
                entry = await self.cache.lookup(cache_key, cache_policy.tier)
                if entry is not None:
                    logger.debug("Cache hit for %s (%s)", definition.id, cache_key)
                    applied = self._assign(definition, entry.value, context)
                    if breaker_key:
                        self.breaker.release(breaker_key)
                    return RunOutcome(data=entry.value, cached=True, metadata={"cache_key": cache_key, **applied})
        except Exception:
            # nothing was sent, so a half-open trial goes back unused
            if breaker_key:
                self.breaker.release(breaker_key)
            raise

        async def call() -> tuple[Any, int, dict[str, Any]]:
            outcome = RunOutcome()
            try:
                response = await self.with_retry(
                    lambda: self.transport.request(
                        method,
                        url,
                        headers=headers,
                        params=params or None,
                        json=body,
                        timeout_ms=definition.timeout_ms,
                        auth_profile=definition.auth,
                        action_id=definition.id,
                    ),
                    definition.retry,
                    outcome,
                )
                self.validator.validate_response(definition.validation, response.data, action_id=definition.id)
                applied = self._assign(definition, response.data, context)
            except Exception:
                if breaker_key:
                    self.breaker.record_failure(breaker_key)
                raise
            if cache_key is not None:
                await self.cache.set(cache_key, response.data, cache_policy.ttl_seconds, cache_policy.tier)
            if breaker_key:
                self.breaker.record_success(breaker_key)
            return response.data, outcome.retry_count, {"status_code": response.status_code, **applied}

        dedup = definition.dedup
        if dedup is not None and dedup.enabled:
            dedup_key = expand(dedup.key, state, variables) if dedup.key else f"{definition.id}:{method}:{url}"
            data, retries, extra = await run_cancellable(context, lambda: self.deduplicator.execute(dedup_key, call))
        else:
            data, retries, extra = await run_cancellable(context, call)

        outcome = RunOutcome(data=data, retry_count=retries, metadata={"url": url, "method": method, **extra})
        if cache_key is not None:
            outcome.metadata["cache_key"] = cache_key
        return outcome

    def _assign(self, definition: RemoteAction, data: Any, context: ExecutionContext) -> dict[str, Any]:
        if not definition.assignments:
            return {}
        result = apply_assignments(
            definition.assignments,
            data,
            self.state.snapshot(),
            names={"context": context.to_dict(), "previous": context.previous_results},
        )
        if not result.success:
            raise ValidationError(
                f"Assignments for {definition.id} failed: {'; '.join(result.errors)}",
                code="ASSIGNMENT_FAILED",
                action_id=definition.id,
                errors=[{"path": "", "message": e} for e in result.errors],
            )
        event = self.state.apply_patches(
            result.patches,
            {"source": "action", "action_id": definition.id, "instance_id": context.instance_id},
        )
        return {"assignments": result.results, "event_id": event.id if event else None}
