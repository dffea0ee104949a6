"""Collapse concurrent identical calls into one.

The first caller for a key runs the operation; anyone arriving while it is
in flight awaits the same future and receives the identical result or
exception. Waiters are shielded, so one waiter being cancelled does not
cancel the shared call.

Entries older than ``max_age_ms`` are force-expired by a lazy sweep: their
waiters fail with a timeout and the next caller starts a fresh call.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from actionrail.core.errors import ActionCancelledError, ActionTimeoutError

logger = logging.getLogger("actionrail.deduplicator")

T = TypeVar("T")


@dataclass
class _Pending:
    future: asyncio.Future[Any]
    started_at: float
    waiters: int = 0


def _fail(future: asyncio.Future[Any], exc: BaseException) -> None:
    if future.done():
        return
    future.set_exception(exc)
    # Mark as retrieved so an entry with no waiters does not log a warning.
    future.exception()


class RequestDeduplicator:
    def __init__(
        self,
        *,
        max_age_ms: int = 30_000,
        cleanup_interval_ms: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_age_ms = max_age_ms
        self.cleanup_interval_ms = cleanup_interval_ms
        self._clock = clock
        self._pending: dict[str, _Pending] = {}
        self._last_sweep = clock()
        self._executed = 0
        self._shared = 0

    async def execute(self, key: str, op: Callable[[], Awaitable[T]]) -> T:
        if (self._clock() - self._last_sweep) * 1000 >= self.cleanup_interval_ms:
            self.sweep()

        entry = self._pending.get(key)
        if entry is not None and not self._is_stale(entry):
            entry.waiters += 1
            self._shared += 1
            logger.debug("Joining in-flight request %s (%d waiters)", key, entry.waiters)
            return await asyncio.shield(entry.future)

        if entry is not None:
            self._expire(key, entry)

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        entry = _Pending(future=future, started_at=self._clock())
        self._pending[key] = entry
        self._executed += 1
        try:
            result = await op()
        except asyncio.CancelledError:
            _fail(future, ActionCancelledError(f"Shared request {key} was cancelled"))
            raise
        except BaseException as exc:
            _fail(future, exc)
            raise
        else:
            if not future.done():
                future.set_result(result)
            return result
        finally:
            if self._pending.get(key) is entry:
                del self._pending[key]

    def _is_stale(self, entry: _Pending) -> bool:
        return (self._clock() - entry.started_at) * 1000 >= self.max_age_ms

    def _expire(self, key: str, entry: _Pending) -> None:
        logger.warning("Expiring stale in-flight request %s", key)
        _fail(
            entry.future,
            ActionTimeoutError(
                f"Deduplicated request {key} exceeded {self.max_age_ms}ms",
                timeout_ms=self.max_age_ms,
            ),
        )
        if self._pending.get(key) is entry:
            del self._pending[key]

    def sweep(self) -> int:
        """Force-expire stale entries. Returns how many were removed."""
        self._last_sweep = self._clock()
        stale = [(k, e) for k, e in self._pending.items() if self._is_stale(e)]
        for key, entry in stale:
            self._expire(key, entry)
        return len(stale)

    def cancel(self, key: str) -> bool:
        """Fail every waiter on ``key`` with a cancellation error."""
        entry = self._pending.pop(key, None)
        if entry is None:
            return False
        _fail(entry.future, ActionCancelledError(f"Request {key} was cancelled"))
        return True

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    def pending_keys(self) -> list[str]:
        return list(self._pending)

    def clear(self) -> None:
        for key in list(self._pending):
            self.cancel(key)

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        ages = [(now - e.started_at) * 1000 for e in self._pending.values()]
        return {
            "pending": len(self._pending),
            "keys": list(self._pending),
            "oldest_age_ms": max(ages) if ages else 0.0,
            "executed": self._executed,
            "shared": self._shared,
        }
