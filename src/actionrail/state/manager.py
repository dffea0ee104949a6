"""The live state document and everything that changes it.

The StateManager is the only owner of the document. Readers get deep
copies; writers go through ``apply_patches``, which swaps in a new
path-copied document and records one event per call. Because the old
document is never mutated, checkpoints, history and undo entries can share
structure with it safely.

Subscribers watch a path and are called with ``(path, new, old)`` whenever
a patch lands at, above or below that path. Callbacks run synchronously;
a callback that returns a coroutine has it scheduled on the running loop.
Callback errors are logged and never reach the writer.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from actionrail.core.errors import StateError
from actionrail.core.models import MISSING, PatchOp, StateEvent, StatePatch, StateSnapshot
from actionrail.core.serialization import checksum, to_jsonable
from actionrail.processors import jsonpath
from actionrail.processors.assignment import deep_merge
from actionrail.state import patcher
from actionrail.state.events import EventStore
from actionrail.storage.base import LocalStore

logger = logging.getLogger("actionrail.state")

Subscriber = Callable[[str, Any, Any], Any]

BUNDLE_VERSION = 1


@dataclass
class _Subscription:
    path: str
    callback: Subscriber


@dataclass
class _UndoEntry:
    event_id: str
    forward: tuple[StatePatch, ...]
    inverse: tuple[StatePatch, ...]


class StateManager:
    def __init__(
        self,
        initial_state: dict[str, Any] | None = None,
        *,
        max_history: int = 1000,
        max_checkpoints: int = 50,
        store: LocalStore | None = None,
    ) -> None:
        self._document: dict[str, Any] = copy.deepcopy(initial_state) if initial_state else {}
        self.events = EventStore(self._document, max_history=max_history, max_snapshots=max_checkpoints)
        self.max_history = max_history
        self._store = store
        self._subscriptions: dict[int, _Subscription] = {}
        self._sub_ids = itertools.count(1)
        self._checkpoint_ids = itertools.count(1)
        self._undo: list[_UndoEntry] = []
        self._redo: list[_UndoEntry] = []
        self._pending: set[asyncio.Task[Any]] = set()

    # --- Reads ---

    def get_state(self) -> dict[str, Any]:
        return copy.deepcopy(self._document)

    def snapshot(self) -> dict[str, Any]:
        """Read copy handed to an ExecutionContext."""
        return copy.deepcopy(self._document)

    def get(self, path: str, default: Any = None) -> Any:
        value = jsonpath.get(self._document, path, MISSING)
        return default if value is MISSING else copy.deepcopy(value)

    def has(self, path: str) -> bool:
        return jsonpath.has(self._document, path)

    @property
    def checksum(self) -> str:
        return checksum(self._document)

    # --- Writes ---

    def apply_patches(
        self,
        patches: Iterable[StatePatch | dict[str, Any]],
        metadata: dict[str, Any] | None = None,
    ) -> StateEvent | None:
        """Apply a batch atomically and record it as one event.

        Returns None (and records nothing) for an empty batch. Raises
        StateError, leaving the document untouched, if any patch fails.
        """
        batch = [patcher.coerce_patch(p) for p in patches]
        if not batch:
            return None
        before = self._document
        after = patcher.apply_patches(before, batch)
        inverse = patcher.reverse_patches(batch, before)
        event = self._commit(batch, before, after, metadata)
        self._push_undo(_UndoEntry(event.id, tuple(batch), tuple(inverse)))
        self._redo.clear()
        self._notify_related(batch, before, after)
        return event

    def _commit(
        self,
        batch: list[StatePatch],
        before: dict[str, Any],
        after: dict[str, Any],
        metadata: dict[str, Any] | None,
    ) -> StateEvent:
        event = self.events.append(batch, before, after, metadata)
        self._document = after
        logger.debug("Applied %s with %d patch(es)", event.id, len(batch))
        return event

    def _push_undo(self, entry: _UndoEntry) -> None:
        self._undo.append(entry)
        if len(self._undo) > self.max_history:
            del self._undo[0]

    def set_value(self, path: str, value: Any, metadata: dict[str, Any] | None = None) -> StateEvent | None:
        op = PatchOp.REPLACE if self.has(path) or not jsonpath.parse(path) else PatchOp.ADD
        return self.apply_patches([StatePatch(op, path, value)], metadata)

    def delete_value(self, path: str, metadata: dict[str, Any] | None = None) -> StateEvent | None:
        return self.apply_patches([StatePatch(PatchOp.REMOVE, path)], metadata)

    def merge_value(self, path: str, value: Any, metadata: dict[str, Any] | None = None) -> StateEvent | None:
        current = jsonpath.get(self._document, path, MISSING)
        merged = value if current is MISSING else deep_merge(current, value)
        return self.set_value(path, merged, metadata)

    def replace_state(self, document: dict[str, Any], metadata: dict[str, Any] | None = None) -> StateEvent | None:
        return self.apply_patches([StatePatch(PatchOp.REPLACE, "$", document)], metadata)

    # --- Subscriptions ---

    def subscribe(self, path: str, callback: Subscriber, *, immediate: bool = False) -> Callable[[], None]:
        """Watch ``path``. Returns a function that removes the subscription."""
        jsonpath.parse(path)
        sub_id = next(self._sub_ids)
        self._subscriptions[sub_id] = _Subscription(path, callback)
        if immediate:
            self._call(self._subscriptions[sub_id], self.get(path), None)

        def unsubscribe() -> None:
            self._subscriptions.pop(sub_id, None)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def _call(self, sub: _Subscription, new: Any, old: Any) -> None:
        try:
            result = sub.callback(sub.path, new, old)
            if asyncio.iscoroutine(result):
                task = asyncio.get_running_loop().create_task(result)
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
        except Exception:
            logger.warning("State subscriber for %s failed", sub.path, exc_info=True)

    def _values(self, sub: _Subscription, before: Any, after: Any) -> tuple[Any, Any]:
        old = jsonpath.get(before, sub.path, MISSING)
        new = jsonpath.get(after, sub.path, MISSING)
        return (
            None if new is MISSING else copy.deepcopy(new),
            None if old is MISSING else copy.deepcopy(old),
        )

    def _notify_related(self, batch: list[StatePatch], before: Any, after: Any) -> None:
        for sub in list(self._subscriptions.values()):
            if any(jsonpath.is_related(sub.path, p.path) for p in batch):
                new, old = self._values(sub, before, after)
                self._call(sub, new, old)

    def _notify_changed(self, before: Any, after: Any) -> None:
        for sub in list(self._subscriptions.values()):
            new, old = self._values(sub, before, after)
            if type(new) is not type(old) or new != old:
                self._call(sub, new, old)

    # --- Checkpoints ---

    def create_checkpoint(
        self,
        checkpoint_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> StateSnapshot:
        checkpoint_id = checkpoint_id or f"checkpoint_{next(self._checkpoint_ids)}"
        snapshot = self.events.create_snapshot(checkpoint_id, copy.deepcopy(self._document), metadata=metadata)
        logger.info("Created checkpoint %s", checkpoint_id)
        return snapshot

    def restore_checkpoint(self, checkpoint_id: str) -> StateEvent:
        """Replace the document with a checkpoint's copy.

        Recorded as a root ``replace`` event. Every subscriber whose
        watched value differs between the two documents is notified.
        """
        snapshot = self.events.get_snapshot(checkpoint_id)
        if snapshot is None:
            raise StateError(f"Unknown checkpoint {checkpoint_id!r}", code="CHECKPOINT_NOT_FOUND")
        before = self._document
        after = copy.deepcopy(snapshot.state)
        batch = [StatePatch(PatchOp.REPLACE, "$", after)]
        event = self._commit(batch, before, after, {"type": "checkpoint_restore", "checkpoint_id": checkpoint_id})
        self._push_undo(_UndoEntry(event.id, tuple(batch), (StatePatch(PatchOp.REPLACE, "$", before),)))
        self._redo.clear()
        self._notify_changed(before, after)
        logger.info("Restored checkpoint %s", checkpoint_id)
        return event

    def get_checkpoint(self, checkpoint_id: str) -> StateSnapshot | None:
        return self.events.get_snapshot(checkpoint_id)

    def list_checkpoints(self) -> list[dict[str, Any]]:
        return [
            {
                "id": s.id,
                "timestamp": s.timestamp.isoformat(),
                "checksum": s.checksum,
                "event_id": s.event_id,
                "metadata": s.metadata,
            }
            for s in self.events.list_snapshots()
        ]

    def delete_checkpoint(self, checkpoint_id: str) -> bool:
        return self.events.delete_snapshot(checkpoint_id)

    # --- Undo / redo ---

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    def undo(self) -> StateEvent | None:
        if not self._undo:
            return None
        entry = self._undo.pop()
        event = self._replay_entry(list(entry.inverse), {"type": "undo", "reverts": entry.event_id})
        self._redo.append(entry)
        return event

    def redo(self) -> StateEvent | None:
        if not self._redo:
            return None
        entry = self._redo.pop()
        event = self._replay_entry(list(entry.forward), {"type": "redo", "reapplies": entry.event_id})
        self._undo.append(_UndoEntry(event.id, entry.forward, entry.inverse))
        return event

    def _replay_entry(self, batch: list[StatePatch], metadata: dict[str, Any]) -> StateEvent:
        before = self._document
        after = patcher.apply_patches(before, batch)
        event = self._commit(batch, before, after, metadata)
        self._notify_changed(before, after)
        return event

    # --- History ---

    def history(self, limit: int | None = None) -> list[StateEvent]:
        return self.events.recent(limit)

    def replay(self, to_event_id: str | None = None) -> dict[str, Any]:
        return copy.deepcopy(self.events.replay(to_event_id))

    # --- Bundles ---

    def export_bundle(self) -> dict[str, Any]:
        """The document, bounded history and checkpoints as one JSON-safe dict."""
        log = self.events.export()
        return to_jsonable(
            {
                "version": BUNDLE_VERSION,
                "document": self._document,
                "base": log["base"],
                "history": log["events"],
                "checkpoints": log["snapshots"],
                "metadata": {
                    "exported_at": datetime.now(timezone.utc).isoformat(),
                    "checksum": checksum(self._document),
                    "event_count": len(log["events"]),
                    "checkpoint_count": len(log["snapshots"]),
                },
            }
        )

    def import_bundle(self, bundle: dict[str, Any], *, validate_checksum: bool = True) -> None:
        """Replace the document, history and checkpoints with a bundle's.

        Undo/redo stacks are cleared. Subscribers whose values changed are
        notified.
        """
        if "document" not in bundle:
            raise StateError("Bundle has no document", code="INVALID_BUNDLE")
        document = bundle["document"]
        expected = bundle.get("metadata", {}).get("checksum")
        if validate_checksum and expected and checksum(document) != expected:
            raise StateError("Bundle checksum does not match its document", code="CHECKSUM_MISMATCH")

        before = self._document
        self.events.import_bundle(
            {
                "base": bundle.get("base", document if not bundle.get("history") else {}),
                "events": bundle.get("history", []),
                "snapshots": bundle.get("checkpoints", []),
            }
        )
        self._document = copy.deepcopy(document)
        self._undo.clear()
        self._redo.clear()
        self._notify_changed(before, self._document)
        logger.info("Imported state bundle (%d events)", len(self.events))

    async def save(self, name: str = "default") -> dict[str, Any]:
        if self._store is None:
            raise StateError("No durable store configured", code="NO_STORE")
        bundle = self.export_bundle()
        await self._store.save_bundle(name, bundle)
        return bundle["metadata"]

    async def load(self, name: str = "default", *, validate_checksum: bool = True) -> None:
        if self._store is None:
            raise StateError("No durable store configured", code="NO_STORE")
        bundle = await self._store.load_bundle(name)
        if bundle is None:
            raise StateError(f"No saved bundle named {name!r}", code="BUNDLE_NOT_FOUND")
        self.import_bundle(bundle, validate_checksum=validate_checksum)

    def stats(self) -> dict[str, Any]:
        return {
            "checksum": self.checksum,
            "subscribers": len(self._subscriptions),
            "can_undo": self.can_undo,
            "can_redo": self.can_redo,
            **self.events.stats(),
        }
