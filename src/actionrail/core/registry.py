"""Action definitions indexed by id.

Definitions are immutable; replacing one means unregistering it and
registering the new version.
"""

from __future__ import annotations

import logging
from typing import Iterable, Iterator

from actionrail.core.errors import ActionNotFoundError, DuplicateActionError
from actionrail.core.models import ActionDefinition, ActionKind, TriggerType

logger = logging.getLogger("actionrail.registry")


class ActionRegistry:
    def __init__(self, definitions: Iterable[ActionDefinition] = ()) -> None:
        self._actions: dict[str, ActionDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: ActionDefinition) -> None:
        if definition.id in self._actions:
            raise DuplicateActionError(
                f"Action {definition.id!r} is already registered",
                action_id=definition.id,
            )
        self._actions[definition.id] = definition
        logger.debug("Registered %s action %s", definition.kind.value, definition.id)

    def unregister(self, action_id: str) -> ActionDefinition:
        definition = self._actions.pop(action_id, None)
        if definition is None:
            raise ActionNotFoundError(f"Action {action_id!r} is not registered", action_id=action_id)
        return definition

    def replace(self, definition: ActionDefinition) -> None:
        self._actions.pop(definition.id, None)
        self.register(definition)

    def get(self, action_id: str) -> ActionDefinition:
        try:
            return self._actions[action_id]
        except KeyError:
            raise ActionNotFoundError(f"Action {action_id!r} is not registered", action_id=action_id) from None

    def find(self, action_id: str) -> ActionDefinition | None:
        return self._actions.get(action_id)

    def all(self) -> list[ActionDefinition]:
        return list(self._actions.values())

    def by_kind(self, kind: ActionKind | str) -> list[ActionDefinition]:
        kind = ActionKind(kind)
        return [d for d in self._actions.values() if d.kind is kind]

    def by_trigger(self, trigger: TriggerType | str) -> list[ActionDefinition]:
        """Enabled actions that fire on ``trigger``, in registration order."""
        trigger = TriggerType(trigger)
        return [d for d in self._actions.values() if d.enabled and trigger in d.triggers]

    def by_tag(self, tag: str) -> list[ActionDefinition]:
        return [d for d in self._actions.values() if tag in d.tags]

    def search(self, text: str) -> list[ActionDefinition]:
        """Case-insensitive match on id, name, description, category and tags."""
        needle = text.lower()
        matches = []
        for definition in self._actions.values():
            haystack = " ".join(
                [definition.id, definition.name, definition.description, definition.category, *definition.tags]
            ).lower()
            if needle in haystack:
                matches.append(definition)
        return matches

    def clear(self) -> None:
        self._actions.clear()

    def __contains__(self, action_id: object) -> bool:
        return action_id in self._actions

    def __len__(self) -> int:
        return len(self._actions)

    def __iter__(self) -> Iterator[ActionDefinition]:
        return iter(list(self._actions.values()))
