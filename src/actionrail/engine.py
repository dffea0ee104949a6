"""Engine: every component wired together from one EngineConfig.

Usage:
    async with Engine(EngineConfig(db_path=":memory:")) as engine:
        engine.load([{"id": "getMakes", "kind": "remote", "url": "https://api.example.com/makes"}])
        result = await engine.execute("getMakes")

Components share one dispatcher, one state manager and one durable-local
store. Nothing is global: two engines in one process are fully isolated.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Iterable

from actionrail.core.config import EngineConfig
from actionrail.core.dispatcher import EventDispatcher
from actionrail.core.registry import ActionRegistry
from actionrail.core.loader import load_path
from actionrail.core.models import ActionDefinition, CircuitPhase, ExecutionContext, ExecutionResult, TriggerEvent, TriggerType
from actionrail.executors.local import LocalExecutor, LocalFunction
from actionrail.executors.orchestrator import Orchestrator
from actionrail.executors.remote import RemoteExecutor
from actionrail.executors.state import StateExecutor
from actionrail.processors.validation import SchemaValidator
from actionrail.resilience.cache import CacheManager
from actionrail.resilience.circuit_breaker import CircuitBreaker
from actionrail.resilience.deduplicator import RequestDeduplicator
from actionrail.resilience.rate_limiter import RateLimiter
from actionrail.resilience.retry import RetryCoordinator
from actionrail.state.manager import StateManager
from actionrail.storage.base import LocalStore
from actionrail.storage.sqlite import SQLiteStore
from actionrail.transport.auth import AuthManager, AuthProfile
from actionrail.transport.client import HttpTransport
from actionrail.transport.webhooks import WebhookConfig, WebhookValidator

logger = logging.getLogger("actionrail.engine")


class Engine:
    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        initial_state: dict[str, Any] | None = None,
        transport: HttpTransport | None = None,
        store: LocalStore | None = None,
        persistent: bool = True,
    ) -> None:
        self.config = config or EngineConfig()
        cfg = self.config

        if store is None and persistent:
            store = SQLiteStore(cfg.db_path)
        self.store = store
        self.dispatcher = EventDispatcher()
        self.state = StateManager(
            initial_state,
            max_history=cfg.max_history,
            max_checkpoints=cfg.max_checkpoints,
            store=store,
        )
        self.cache = CacheManager(
            max_entries=cfg.cache_max_entries,
            default_ttl_seconds=cfg.cache_default_ttl_seconds,
            store=store,
        )
        self.breaker = CircuitBreaker(
            failure_threshold=cfg.breaker_failure_threshold,
            reset_timeout_ms=cfg.breaker_reset_timeout_ms,
        )
        self.deduplicator = RequestDeduplicator(
            max_age_ms=cfg.dedup_max_age_ms,
            cleanup_interval_ms=cfg.dedup_cleanup_interval_ms,
        )
        self.rate_limiter = RateLimiter(idle_ms=cfg.rate_limit_idle_ms)
        self.retry = RetryCoordinator()
        self.validator = SchemaValidator()
        if transport is None:
            self.auth = AuthManager()
            transport = HttpTransport(auth=self.auth, timeout_ms=cfg.default_timeout_ms, user_agent=cfg.user_agent)
        else:
            self.auth = transport.auth
        self.transport = transport
        self.webhooks = WebhookValidator()

        shared: dict[str, Any] = {
            "state": self.state,
            "dispatcher": self.dispatcher,
            "rate_limiter": self.rate_limiter,
            "retry": self.retry,
        }
        self.remote = RemoteExecutor(
            transport=transport,
            cache=self.cache,
            breaker=self.breaker,
            deduplicator=self.deduplicator,
            validator=self.validator,
            **shared,
        )
        self.local = LocalExecutor(**shared)
        self.state_executor = StateExecutor(**shared)
        self.orchestrator = Orchestrator(
            state=self.state,
            executors=[self.remote, self.local, self.state_executor],
            dispatcher=self.dispatcher,
            max_concurrency=cfg.max_concurrency,
        )
        self._pending: set[asyncio.Task[Any]] = set()
        self.breaker.add_listener(self._on_circuit_transition)
        self.state.subscribe("$", self._on_state_change)

    def _publish(self, event_type: str, data: dict[str, Any]) -> None:
        """Emit from sync callbacks; dropped when no event loop is running."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop, %s not published", event_type)
            return
        task = loop.create_task(self.dispatcher.emit(event_type, data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _on_circuit_transition(self, key: str, old: CircuitPhase, new: CircuitPhase) -> None:
        self._publish("circuit.transition", {"key": key, "from": old.value, "to": new.value})

    def _on_state_change(self, path: str, new: Any, old: Any) -> None:
        last = self.state.events.last_event()
        self._publish(
            "state.changed",
            {
                "event": last.to_dict() if last else None,
                "checksum": self.state.checksum,
            },
        )

    # --- Lifecycle ---

    async def initialize(self) -> None:
        if self.store is not None:
            await self.store.initialize()
        logger.info("Engine ready (store=%s)", type(self.store).__name__ if self.store else "none")

    async def close(self) -> None:
        await self.transport.aclose()
        if self.store is not None:
            await self.store.close()

    async def __aenter__(self) -> Engine:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # --- Definitions ---

    @property
    def registry(self) -> ActionRegistry:
        return self.orchestrator.registry

    def register(self, definition: ActionDefinition | dict[str, Any]) -> ActionDefinition:
        return self.orchestrator.register(definition)

    def load(self, definitions: Iterable[ActionDefinition | dict[str, Any]]) -> list[ActionDefinition]:
        return self.orchestrator.load(definitions)

    def load_path(self, path: Path | str, *, recursive: bool = False) -> list[ActionDefinition]:
        return self.orchestrator.load(load_path(path, recursive=recursive))

    def register_function(self, name: str, fn: LocalFunction) -> None:
        self.local.register_function(name, fn)

    def register_auth(self, profile: AuthProfile | dict[str, Any]) -> None:
        if isinstance(profile, dict):
            profile = AuthProfile.from_dict(profile)
        self.auth.register(profile)

    def register_webhook(self, trigger: TriggerType | str, config: WebhookConfig | dict[str, Any]) -> None:
        """Require signed requests when ``trigger`` is fired over HTTP."""
        self.webhooks.set_config(TriggerType(trigger).value, config)

    # --- Execution ---

    async def execute(self, action_id: str, context: ExecutionContext | None = None) -> ExecutionResult:
        return await self.orchestrator.execute_action(action_id, context)

    async def sequence(self, action_ids: list[str], *, continue_on_error: bool = False) -> list[ExecutionResult]:
        return await self.orchestrator.execute_sequence(action_ids, continue_on_error=continue_on_error)

    async def parallel(self, action_ids: list[str], max_concurrency: int | None = None) -> list[ExecutionResult]:
        return await self.orchestrator.execute_parallel(action_ids, max_concurrency=max_concurrency)

    async def trigger(
        self,
        event: TriggerEvent | TriggerType | str,
        payload: dict[str, Any] | None = None,
    ) -> list[ExecutionResult]:
        return await self.orchestrator.handle_trigger(event, payload)

    def stats(self) -> dict[str, Any]:
        return {
            "actions": len(self.orchestrator.registry),
            "executors": self.orchestrator.executor_stats(),
            "state": self.state.stats(),
            "cache": self.cache.stats(),
            "circuits": self.breaker.all_stats(),
            "rate_limiter": self.rate_limiter.stats(),
            "deduplicator": self.deduplicator.stats(),
            "transport": self.transport.stats(),
            "webhooks": self.webhooks.stats(),
        }
