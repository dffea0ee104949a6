"""Abstract durable-local storage interface.

Backs the durable cache tier and persisted state bundles. Implementations
must be safe to share between the cache manager and the state manager of one
engine.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from actionrail.core.models import CacheEntry


class LocalStore(ABC):
    """Abstract base for durable-local storage."""

    @abstractmethod
    async def initialize(self) -> None:
        """Open the backend and create the cache and bundle tables."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the connection; the store may be initialized again later."""
        ...

    # --- Cache entries ---

    @abstractmethod
    async def cache_get(self, key: str) -> CacheEntry | None:
        ...

    @abstractmethod
    async def cache_set(self, key: str, entry: CacheEntry) -> None:
        ...

    @abstractmethod
    async def cache_touch(self, key: str, accessed_at: float) -> None:
        """Bump the access counter and last-access time."""
        ...

    @abstractmethod
    async def cache_delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def cache_keys(self) -> list[str]:
        ...

    @abstractmethod
    async def cache_clear(self) -> int:
        ...

    @abstractmethod
    async def cache_purge_expired(self, now: float) -> int:
        """Delete entries whose TTL has passed at ``now`` (epoch seconds)."""
        ...

    # --- State bundles ---

    @abstractmethod
    async def save_bundle(self, name: str, bundle: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def load_bundle(self, name: str) -> dict[str, Any] | None:
        ...

    @abstractmethod
    async def list_bundles(self) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def delete_bundle(self, name: str) -> bool:
        ...
