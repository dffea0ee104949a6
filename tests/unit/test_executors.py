"""Tests for the remote, local and state executors."""

import asyncio
import json

import httpx
import pytest

from actionrail.core.dispatcher import EventDispatcher
from actionrail.core.errors import (
    ActionCancelledError,
    CircuitOpenError,
    NetworkError,
    RateLimitError,
    StateError,
    ValidationError,
)
from actionrail.core.models import (
    Assignment,
    BackoffStrategy,
    CachePolicy,
    CancellationToken,
    CircuitBreakerPolicy,
    DedupPolicy,
    ExecutionContext,
    LocalAction,
    RateLimitPolicy,
    RemoteAction,
    RetryPolicy,
    StateAction,
    StateOperation,
    TelemetryPolicy,
    TransformKind,
    TransformSpec,
    ValidationPolicy,
)
from actionrail.executors.local import LocalExecutor
from actionrail.executors.remote import RemoteExecutor
from actionrail.executors.state import StateExecutor
from actionrail.resilience.circuit_breaker import CircuitBreaker
from actionrail.resilience.retry import RetryCoordinator
from actionrail.state.manager import StateManager
from actionrail.transport.client import HttpTransport


class FakeApi:
    """MockTransport handler serving canned responses and recording requests."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []
        self.gate: asyncio.Event | None = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        template = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return httpx.Response(template.status_code, headers=template.headers, content=template.content)


async def _no_sleep(seconds: float) -> None:
    return None


def _remote_executor(api: FakeApi, state: StateManager, **kwargs) -> RemoteExecutor:
    return RemoteExecutor(
        transport=HttpTransport(transport=httpx.MockTransport(api)),
        state=state,
        retry=RetryCoordinator(sleep=_no_sleep),
        **kwargs,
    )


def _context(state: StateManager, action_id: str = "a", **kwargs) -> ExecutionContext:
    return ExecutionContext(action_id=action_id, state=state.snapshot(), **kwargs)


MAKES = RemoteAction(
    id="getMakes",
    url="https://api.example.com/makes/{{vehicle.year}}",
    params={"type": "{{$.vehicle.type}}"},
    assignments=(Assignment(state_path="$.makes", value_path="$.data"),),
)


@pytest.fixture
def state() -> StateManager:
    return StateManager({"vehicle": {"year": 2020, "type": "car"}})


class TestRemoteExecutor:
    @pytest.mark.asyncio
    async def test_templated_call_and_assignment(self, state):
        api = FakeApi(httpx.Response(200, json={"data": ["ford", "kia"]}))
        executor = _remote_executor(api, state)
        result = await executor.execute(MAKES, _context(state, "getMakes"))
        assert result.success
        assert result.data == {"data": ["ford", "kia"]}
        assert result.metadata["status_code"] == 200
        assert str(api.requests[0].url) == "https://api.example.com/makes/2020?type=car"
        assert state.get("$.makes") == ["ford", "kia"]
        assert state.history()[-1].metadata["action_id"] == "getMakes"

    @pytest.mark.asyncio
    async def test_post_body_is_templated(self, state):
        api = FakeApi(httpx.Response(200, json={}))
        action = RemoteAction(
            id="save",
            url="https://api.example.com/vehicles",
            method="POST",
            body={"year": "{{$.vehicle.year}}", "label": "{{vehicle.type}} ({{vehicle.year}})"},
        )
        await _remote_executor(api, state).execute(action, _context(state))
        assert api.requests[0].method == "POST"
        assert json.loads(api.requests[0].content) == {"year": 2020, "label": "car (2020)"}

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self, state):
        api = FakeApi(httpx.Response(503), httpx.Response(503), httpx.Response(200, json={"data": []}))
        action = RemoteAction(
            id="flaky",
            url="https://api.example.com/x",
            retry=RetryPolicy(max_attempts=3, strategy=BackoffStrategy.FIXED, backoff_ms=1),
        )
        result = await _remote_executor(api, state).execute(action, _context(state))
        assert result.retry_count == 2
        assert len(api.requests) == 3

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, state):
        api = FakeApi(httpx.Response(404))
        action = RemoteAction(id="missing", url="https://api.example.com/x", retry=RetryPolicy(max_attempts=3))
        with pytest.raises(NetworkError):
            await _remote_executor(api, state).execute(action, _context(state))
        assert len(api.requests) == 1

    @pytest.mark.asyncio
    async def test_cache_hit_skips_the_call_and_reapplies_assignments(self, state):
        api = FakeApi(httpx.Response(200, json={"data": ["ford"]}))
        action = RemoteAction(
            id="cached",
            url="https://api.example.com/makes",
            cache=CachePolicy(ttl_seconds=60, key="makes:{{vehicle.year}}"),
            assignments=(Assignment(state_path="$.makes", value_path="$.data"),),
        )
        executor = _remote_executor(api, state)
        first = await executor.execute(action, _context(state))
        state.delete_value("$.makes")
        second = await executor.execute(action, _context(state))
        assert not first.cached
        assert second.cached
        assert second.metadata["cache_key"] == "makes:2020"
        assert len(api.requests) == 1
        assert state.get("$.makes") == ["ford"]

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, state):
        api = FakeApi(httpx.Response(500), httpx.Response(200, json={"ok": True}))
        action = RemoteAction(id="c", url="https://api.example.com/x", cache=CachePolicy())
        executor = _remote_executor(api, state)
        with pytest.raises(NetworkError):
            await executor.execute(action, _context(state))
        result = await executor.execute(action, _context(state))
        assert result.data == {"ok": True}
        assert not result.cached

    @pytest.mark.asyncio
    async def test_circuit_opens_after_threshold(self, state, clock):
        api = FakeApi(httpx.Response(500))
        breaker = CircuitBreaker(clock=clock)
        action = RemoteAction(
            id="down",
            url="https://api.example.com/x",
            circuit_breaker=CircuitBreakerPolicy(failure_threshold=2, reset_timeout_ms=1000),
        )
        executor = _remote_executor(api, state, breaker=breaker)
        for _ in range(2):
            with pytest.raises(NetworkError):
                await executor.execute(action, _context(state))
        with pytest.raises(CircuitOpenError):
            await executor.execute(action, _context(state))
        assert len(api.requests) == 2

        api.responses = [httpx.Response(200, json={})]
        clock.advance(1.5)
        result = await executor.execute(action, _context(state))
        assert result.success
        assert not breaker.is_open("down")

    @pytest.mark.asyncio
    async def test_concurrent_identical_calls_are_deduplicated(self, state):
        api = FakeApi(httpx.Response(200, json={"data": [1]}))
        api.gate = asyncio.Event()
        action = RemoteAction(id="dup", url="https://api.example.com/x", dedup=DedupPolicy())
        executor = _remote_executor(api, state)
        tasks = [asyncio.create_task(executor.execute(action, _context(state))) for _ in range(3)]
        for _ in range(5):
            await asyncio.sleep(0)
        api.gate.set()
        results = await asyncio.gather(*tasks)
        assert len(api.requests) == 1
        assert all(r.data == {"data": [1]} for r in results)

    @pytest.mark.asyncio
    async def test_deduplicated_callers_share_the_retry_count(self, state):
        api = FakeApi(httpx.Response(503), httpx.Response(200, json={"data": [1]}))
        api.gate = asyncio.Event()
        action = RemoteAction(
            id="dup",
            url="https://api.example.com/x",
            dedup=DedupPolicy(),
            retry=RetryPolicy(max_attempts=2, strategy=BackoffStrategy.FIXED, backoff_ms=1),
        )
        executor = _remote_executor(api, state)
        tasks = [asyncio.create_task(executor.execute(action, _context(state))) for _ in range(3)]
        for _ in range(5):
            await asyncio.sleep(0)
        api.gate.set()
        results = await asyncio.gather(*tasks)
        assert len(api.requests) == 2
        assert [r.retry_count for r in results] == [1, 1, 1]
        assert all(r.data == {"data": [1]} for r in results)

    @pytest.mark.asyncio
    async def test_cache_hit_in_half_open_leaves_the_trial_for_a_live_call(self, state, clock):
        api = FakeApi(
            httpx.Response(200, json={"data": ["ford"]}),
            httpx.Response(500),
            httpx.Response(200, json={"data": ["kia"]}),
        )
        breaker = CircuitBreaker(clock=clock)
        policy = CircuitBreakerPolicy(key="makes-api", failure_threshold=1, reset_timeout_ms=1000)
        cached = RemoteAction(
            id="cached",
            url="https://api.example.com/makes",
            cache=CachePolicy(ttl_seconds=600, key="makes"),
            circuit_breaker=policy,
        )
        live = RemoteAction(id="live", url="https://api.example.com/models", circuit_breaker=policy)
        executor = _remote_executor(api, state, breaker=breaker)

        assert not (await executor.execute(cached, _context(state))).cached
        with pytest.raises(NetworkError):
            await executor.execute(live, _context(state))
        assert breaker.is_open("makes-api")

        clock.advance(1.5)
        hit = await executor.execute(cached, _context(state))
        assert hit.cached
        result = await executor.execute(live, _context(state))
        assert result.success
        assert result.data == {"data": ["kia"]}
        assert len(api.requests) == 3

    @pytest.mark.asyncio
    async def test_request_validation_blocks_the_call(self, state):
        api = FakeApi(httpx.Response(200))
        action = RemoteAction(
            id="v",
            url="https://api.example.com/x",
            method="POST",
            body={"email": "not-an-email"},
            validation=ValidationPolicy(
                request_schema={"type": "object", "properties": {"email": {"type": "string", "format": "email"}}}
            ),
        )
        with pytest.raises(ValidationError):
            await _remote_executor(api, state).execute(action, _context(state))
        assert api.requests == []

    @pytest.mark.asyncio
    async def test_response_validation(self, state):
        api = FakeApi(httpx.Response(200, json={"count": "many"}))
        action = RemoteAction(
            id="v",
            url="https://api.example.com/x",
            validation=ValidationPolicy(
                response_schema={"type": "object", "properties": {"count": {"type": "integer"}}},
                validate_response=True,
            ),
        )
        with pytest.raises(ValidationError):
            await _remote_executor(api, state).execute(action, _context(state))

    @pytest.mark.asyncio
    async def test_failed_required_assignment_leaves_state_alone(self, state):
        api = FakeApi(httpx.Response(200, json={"other": 1}))
        action = RemoteAction(
            id="strict",
            url="https://api.example.com/x",
            assignments=(
                Assignment(state_path="$.other", value_path="$.other"),
                Assignment(state_path="$.makes", value_path="$.data", required=True),
            ),
        )
        with pytest.raises(ValidationError) as exc_info:
            await _remote_executor(api, state).execute(action, _context(state))
        assert exc_info.value.code == "ASSIGNMENT_FAILED"
        assert not state.has("$.other")

    @pytest.mark.asyncio
    async def test_rate_limit(self, state):
        api = FakeApi(httpx.Response(200, json={}))
        action = RemoteAction(
            id="limited",
            url="https://api.example.com/x",
            rate_limit=RateLimitPolicy(max_requests=1, window_ms=60_000),
        )
        executor = _remote_executor(api, state)
        await executor.execute(action, _context(state))
        with pytest.raises(RateLimitError):
            await executor.execute(action, _context(state))
        assert len(api.requests) == 1

    @pytest.mark.asyncio
    async def test_cancelled_context(self, state):
        api = FakeApi(httpx.Response(200))
        token = CancellationToken()
        token.cancel("user left")
        action = RemoteAction(id="c", url="https://api.example.com/x")
        with pytest.raises(ActionCancelledError):
            await _remote_executor(api, state).execute(action, _context(state, cancel=token))
        assert api.requests == []

    @pytest.mark.asyncio
    async def test_cancellation_during_the_call(self, state):
        api = FakeApi(httpx.Response(200))
        api.gate = asyncio.Event()
        token = CancellationToken()
        action = RemoteAction(id="c", url="https://api.example.com/x")
        task = asyncio.create_task(_remote_executor(api, state).execute(action, _context(state, cancel=token)))
        for _ in range(5):
            await asyncio.sleep(0)
        token.cancel()
        with pytest.raises(ActionCancelledError):
            await task

    @pytest.mark.asyncio
    async def test_invalid_definition(self, state):
        action = RemoteAction(id="bad", url="not a url")
        with pytest.raises(ValidationError):
            await _remote_executor(FakeApi(httpx.Response(200)), state).execute(action, _context(state))

    @pytest.mark.asyncio
    async def test_disabled_action(self, state):
        action = RemoteAction(id="off", url="https://api.example.com/x", enabled=False)
        with pytest.raises(ValidationError) as exc_info:
            await _remote_executor(FakeApi(httpx.Response(200)), state).execute(action, _context(state))
        assert exc_info.value.code == "ACTION_DISABLED"


class TestLocalExecutor:
    @pytest.mark.asyncio
    async def test_sync_and_async_functions(self, state):
        executor = LocalExecutor(state=state)
        executor.register_function("add", lambda ctx, params: params["a"] + params["b"])

        async def greet(ctx, params):
            return f"hello {params['name']} from {ctx.action_id}"

        executor.register_function("greet", greet)
        added = await executor.execute(LocalAction(id="add", function="add", params={"a": 1, "b": 2}), _context(state, "add"))
        greeted = await executor.execute(
            LocalAction(id="greet", function="greet", params={"name": "ann"}), _context(state, "greet")
        )
        assert added.data == 3
        assert greeted.data == "hello ann from greet"

    @pytest.mark.asyncio
    async def test_unregistered_function(self, state):
        executor = LocalExecutor(state=state)
        with pytest.raises(ValidationError):
            await executor.execute(LocalAction(id="x", function="nope"), _context(state))

    @pytest.mark.asyncio
    async def test_builtin_emit(self, state):
        dispatcher = EventDispatcher()
        seen = []
        dispatcher.subscribe("form.saved", lambda t, d: seen.append(d))
        executor = LocalExecutor(state=state, dispatcher=dispatcher)
        action = LocalAction(id="notify", function="emit", params={"event": "form.saved", "data": {"id": 1}})
        result = await executor.execute(action, _context(state, "notify"))
        assert result.data == {"emitted": "form.saved"}
        assert seen == [{"action_id": "notify", "data": {"id": 1}}]

    @pytest.mark.asyncio
    async def test_retry_on_network_errors(self, state):
        attempts = []

        def flaky(ctx, params):
            attempts.append(1)
            if len(attempts) < 3:
                raise NetworkError("reset")
            return "ok"

        executor = LocalExecutor(state=state, retry=RetryCoordinator(sleep=_no_sleep))
        executor.register_function("flaky", flaky)
        action = LocalAction(id="f", function="flaky", retry=RetryPolicy(max_attempts=3, backoff_ms=1))
        result = await executor.execute(action, _context(state))
        assert result.data == "ok"
        assert result.retry_count == 2

    @pytest.mark.asyncio
    async def test_rollback_runs_newest_first_and_survives_failures(self, state):
        executor = LocalExecutor(state=state)
        undone = []

        def undo(ctx, params):
            if params.get("fail"):
                raise RuntimeError("cannot undo")
            undone.append((params["name"], params["result"]))

        executor.register_function("do", lambda ctx, params: params["name"])
        executor.register_function("undo", undo)
        for name, fail in (("first", False), ("second", True), ("third", False)):
            action = LocalAction(
                id=name,
                function="do",
                params={"name": name},
                rollback_function="undo",
                rollback_params={"name": name, "fail": fail},
            )
            await executor.execute(action, _context(state, name))
        assert executor.rollback_depth == 3

        reports = await executor.rollback()
        assert [r["action_id"] for r in reports] == ["third", "second", "first"]
        assert [r["success"] for r in reports] == [True, False, True]
        assert undone == [("third", "third"), ("first", "first")]
        assert executor.rollback_depth == 0

    @pytest.mark.asyncio
    async def test_stats_track_failures_and_timing(self, state):
        executor = LocalExecutor(state=state)

        def boom(ctx, params):
            raise RuntimeError("boom")

        executor.register_function("boom", boom)
        action = LocalAction(id="b", function="boom", telemetry=TelemetryPolicy(track_timing=True))
        with pytest.raises(RuntimeError):
            await executor.execute(action, _context(state))
        stats = executor.stats()
        assert stats["executions"] == 1
        assert stats["failures"] == 1
        assert stats["timings"]["b"]["count"] == 1
        assert stats["recent_errors"][0]["action_id"] == "b"


class TestStateExecutor:
    @pytest.mark.asyncio
    async def test_assign_with_template(self, state):
        executor = StateExecutor(state=state)
        action = StateAction(id="copy", operation=StateOperation.ASSIGN, path="$.summary.year", value="{{$.vehicle.year}}")
        result = await executor.execute(action, _context(state))
        assert state.get("$.summary.year") == 2020
        assert result.data["previous_value"] is None
        assert result.metadata["event_id"] == "evt_1"

    @pytest.mark.asyncio
    async def test_merge(self, state):
        executor = StateExecutor(state=state)
        action = StateAction(id="m", operation=StateOperation.MERGE, path="$.vehicle", value={"make": "kia"})
        result = await executor.execute(action, _context(state))
        assert state.get("$.vehicle") == {"year": 2020, "type": "car", "make": "kia"}
        assert result.data["previous_value"] == {"year": 2020, "type": "car"}

    @pytest.mark.asyncio
    async def test_delete(self, state):
        executor = StateExecutor(state=state)
        await executor.execute(StateAction(id="d", operation=StateOperation.DELETE, path="$.vehicle.type"), _context(state))
        assert not state.has("$.vehicle.type")
        with pytest.raises(StateError) as exc_info:
            await executor.execute(
                StateAction(id="d", operation=StateOperation.DELETE, path="$.vehicle.type"), _context(state)
            )
        assert exc_info.value.code == "PATH_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_root_delete_is_invalid(self, state):
        with pytest.raises(ValidationError):
            await StateExecutor(state=state).execute(
                StateAction(id="d", operation=StateOperation.DELETE, path="$"), _context(state)
            )

    @pytest.mark.asyncio
    async def test_expression_transform(self, state):
        executor = StateExecutor(state=state)
        action = StateAction(
            id="t",
            operation=StateOperation.TRANSFORM,
            path="$.vehicle.year",
            transform=TransformSpec(TransformKind.EXPRESSION, "currentValue + 1"),
        )
        result = await executor.execute(action, _context(state))
        assert state.get("$.vehicle.year") == 2021
        assert result.data["previous_value"] == 2020

    @pytest.mark.asyncio
    async def test_jsonpath_transform(self, state):
        executor = StateExecutor(state=state)
        action = StateAction(
            id="t",
            operation=StateOperation.TRANSFORM,
            path="$.kind",
            transform=TransformSpec(TransformKind.JSONPATH, "$.fullState.vehicle.type"),
        )
        await executor.execute(action, _context(state))
        assert state.get("$.kind") == "car"

    @pytest.mark.asyncio
    async def test_invalid_transform_expression(self, state):
        action = StateAction(
            id="t",
            operation=StateOperation.TRANSFORM,
            path="$.x",
            transform=TransformSpec(TransformKind.EXPRESSION, "__import__('os')"),
        )
        with pytest.raises(ValidationError):
            await StateExecutor(state=state).execute(action, _context(state))

    def test_transform_without_a_spec(self, state):
        action = StateAction(id="t", operation=StateOperation.TRANSFORM, path="$.x")
        with pytest.raises(ValidationError) as exc_info:
            StateExecutor(state=state).transform(action, 1, {})
        assert exc_info.value.code == "MISSING_TRANSFORM"
