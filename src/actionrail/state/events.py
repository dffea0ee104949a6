"""Append-only log of applied state mutations.

Events are never edited once appended. History is bounded: when the log
exceeds ``max_history`` the oldest events are folded into a base document,
so ``replay`` reproduces any retained point exactly.

Snapshots are named full documents, also bounded, evicted oldest first.
"""

from __future__ import annotations

import itertools
import logging
from collections import OrderedDict, deque
from datetime import datetime
from typing import Any, Iterable

from actionrail.core.errors import StateError
from actionrail.core.models import StateEvent, StatePatch, StateSnapshot
from actionrail.core.serialization import checksum
from actionrail.processors import jsonpath
from actionrail.state.patcher import apply_patches

logger = logging.getLogger("actionrail.events")


class EventStore:
    def __init__(
        self,
        initial_state: dict[str, Any] | None = None,
        *,
        max_history: int = 1000,
        max_snapshots: int = 50,
    ) -> None:
        self.max_history = max_history
        self.max_snapshots = max_snapshots
        self._base: Any = initial_state if initial_state is not None else {}
        self._events: deque[StateEvent] = deque()
        self._snapshots: OrderedDict[str, StateSnapshot] = OrderedDict()
        self._seq = itertools.count(1)
        self._folded = 0

    # --- Events ---

    def next_id(self) -> str:
        return f"evt_{next(self._seq)}"

    def append(
        self,
        patches: Iterable[StatePatch],
        before: Any,
        after: Any,
        metadata: dict[str, Any] | None = None,
    ) -> StateEvent:
        event = StateEvent(
            id=self.next_id(),
            patches=tuple(patches),
            before_checksum=checksum(before),
            after_checksum=checksum(after),
            metadata=dict(metadata or {}),
        )
        self._events.append(event)
        self._trim(self.max_history)
        return event

    def _trim(self, keep: int) -> int:
        folded = 0
        while len(self._events) > keep:
            oldest = self._events.popleft()
            self._base = apply_patches(self._base, oldest.patches)
            folded += 1
        if folded:
            self._folded += folded
            logger.debug("Folded %d events into the history base", folded)
        return folded

    def __len__(self) -> int:
        return len(self._events)

    @property
    def events(self) -> list[StateEvent]:
        return list(self._events)

    @property
    def base(self) -> Any:
        """The document as it was before the oldest retained event."""
        return self._base

    def get_event(self, event_id: str) -> StateEvent | None:
        for event in self._events:
            if event.id == event_id:
                return event
        return None

    def last_event(self) -> StateEvent | None:
        return self._events[-1] if self._events else None

    def recent(self, limit: int | None = None) -> list[StateEvent]:
        events = list(self._events)
        return events if limit is None else events[-limit:]

    def events_between(self, start: datetime, end: datetime) -> list[StateEvent]:
        return [e for e in self._events if start <= e.timestamp <= end]

    def events_touching(self, path: str) -> list[StateEvent]:
        """Events with at least one patch at, above or below ``path``."""
        return [e for e in self._events if any(jsonpath.is_related(p.path, path) for p in e.patches)]

    def replay(self, to_event_id: str | None = None) -> Any:
        """Rebuild the document from the base, up to and including ``to_event_id``."""
        doc = self._base
        for event in self._events:
            doc = apply_patches(doc, event.patches)
            if event.id == to_event_id:
                return doc
        if to_event_id is not None:
            raise StateError(f"Unknown event {to_event_id!r}", code="EVENT_NOT_FOUND")
        return doc

    def compact(self, keep: int = 100) -> int:
        """Fold all but the newest ``keep`` events into the base. Returns how many were folded."""
        return self._trim(max(keep, 0))

    # --- Snapshots ---

    def create_snapshot(
        self,
        snapshot_id: str,
        state: dict[str, Any],
        *,
        metadata: dict[str, Any] | None = None,
    ) -> StateSnapshot:
        last = self.last_event()
        snapshot = StateSnapshot(
            id=snapshot_id,
            state=state,
            checksum=checksum(state),
            event_id=last.id if last else None,
            metadata=dict(metadata or {}),
        )
        self._snapshots.pop(snapshot_id, None)
        self._snapshots[snapshot_id] = snapshot
        while len(self._snapshots) > self.max_snapshots:
            evicted, _ = self._snapshots.popitem(last=False)
            logger.debug("Evicted snapshot %s (cap %d)", evicted, self.max_snapshots)
        return snapshot

    def get_snapshot(self, snapshot_id: str) -> StateSnapshot | None:
        return self._snapshots.get(snapshot_id)

    def list_snapshots(self) -> list[StateSnapshot]:
        return list(self._snapshots.values())

    def delete_snapshot(self, snapshot_id: str) -> bool:
        return self._snapshots.pop(snapshot_id, None) is not None

    # --- Export ---

    def export(self) -> dict[str, Any]:
        return {
            "base": self._base,
            "events": [e.to_dict() for e in self._events],
            "snapshots": [s.to_dict() for s in self._snapshots.values()],
        }

    def import_bundle(self, data: dict[str, Any]) -> None:
        """Replace the whole log with an exported one."""
        events = [StateEvent.from_dict(e) for e in data.get("events", [])]
        snapshots = [StateSnapshot.from_dict(s) for s in data.get("snapshots", [])]
        self._base = data.get("base", {})
        self._events = deque(events)
        self._snapshots = OrderedDict((s.id, s) for s in snapshots)
        highest = 0
        for event in events:
            suffix = event.id.rsplit("_", 1)[-1]
            if suffix.isdigit():
                highest = max(highest, int(suffix))
        self._seq = itertools.count(highest + 1)
        self._trim(self.max_history)
        while len(self._snapshots) > self.max_snapshots:
            self._snapshots.popitem(last=False)

    def stats(self) -> dict[str, Any]:
        return {
            "events": len(self._events),
            "max_history": self.max_history,
            "folded": self._folded,
            "snapshots": len(self._snapshots),
            "max_snapshots": self.max_snapshots,
            "oldest_event": self._events[0].id if self._events else None,
            "latest_event": self._events[-1].id if self._events else None,
        }
