"""Configuration for the actionrail engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


DEFAULT_USER_AGENT = "actionrail-http/0.1.0"


@dataclass(frozen=True)
class EngineConfig:
    """Immutable configuration for one engine instance.

    Attributes:
        db_path: SQLite file backing the durable-local cache tier and saved bundles.
        max_history: Events kept in the state event log before the oldest is folded away.
        max_checkpoints: Named snapshots kept before the oldest is evicted.
        cache_max_entries: Global entry cap for the in-memory cache tier.
        cache_default_ttl_seconds: TTL used when a cache policy does not set one.
        dedup_max_age_ms: In-flight entries older than this are force-expired.
        dedup_cleanup_interval_ms: How often the deduplicator sweeps stale entries.
        default_timeout_ms: Outbound call timeout when a definition does not set one.
        max_concurrency: Batch size for parallel execution and trigger fan-out.
        breaker_failure_threshold: Default failures before a circuit opens.
        breaker_reset_timeout_ms: Default open period before a half-open trial.
        rate_limit_idle_ms: Buckets idle for longer than this are evicted.
        user_agent: User-Agent header sent on every outbound call.
        server_host: Host for the inspection API server.
        server_port: Port for the inspection API server.
    """

    db_path: Path = field(default_factory=lambda: Path(".actionrail") / "actionrail.db")
    max_history: int = 1000
    max_checkpoints: int = 50
    cache_max_entries: int = 1000
    cache_default_ttl_seconds: float = 300
    dedup_max_age_ms: int = 30_000
    dedup_cleanup_interval_ms: int = 10_000
    default_timeout_ms: int = 30_000
    max_concurrency: int = 5
    breaker_failure_threshold: int = 5
    breaker_reset_timeout_ms: int = 60_000
    rate_limit_idle_ms: int = 300_000
    user_agent: str = DEFAULT_USER_AGENT
    server_host: str = "127.0.0.1"
    server_port: int = 6275

    @property
    def server_url(self) -> str:
        return f"http://{self.server_host}:{self.server_port}"
