"""Tests for the StateManager."""

import asyncio

import pytest

from actionrail.core.errors import StateError
from actionrail.state.manager import StateManager


@pytest.fixture
def manager() -> StateManager:
    return StateManager({"user": {"name": "ann", "tags": ["a"]}, "cart": []})


class TestReadsAndWrites:
    def test_reads_are_copies(self, manager: StateManager):
        state = manager.get_state()
        state["user"]["name"] = "changed"
        manager.get("$.user.tags").append("b")
        assert manager.get("$.user") == {"name": "ann", "tags": ["a"]}

    def test_get_default_and_has(self, manager: StateManager):
        assert manager.get("$.missing", "fallback") == "fallback"
        assert manager.has("$.user.name")
        assert not manager.has("$.user.age")

    def test_set_value_adds_or_replaces(self, manager: StateManager):
        manager.set_value("$.user.age", 30)
        manager.set_value("$.user.name", "bob")
        assert manager.get("$.user") == {"name": "bob", "tags": ["a"], "age": 30}

    def test_delete_and_merge(self, manager: StateManager):
        manager.delete_value("$.cart")
        manager.merge_value("$.user", {"address": {"city": "x"}, "tags": ["b"]})
        assert manager.get_state() == {"user": {"name": "ann", "tags": ["a", "b"], "address": {"city": "x"}}}

    def test_replace_state(self, manager: StateManager):
        manager.replace_state({"fresh": True})
        assert manager.get_state() == {"fresh": True}

    def test_empty_batch_records_nothing(self, manager: StateManager):
        assert manager.apply_patches([]) is None
        assert manager.history() == []

    def test_failed_batch_is_atomic(self, manager: StateManager):
        before = manager.checksum
        with pytest.raises(StateError):
            manager.apply_patches(
                [
                    {"op": "replace", "path": "$.user.name", "value": "bob"},
                    {"op": "remove", "path": "$.nothing"},
                ]
            )
        assert manager.checksum == before
        assert manager.get("$.user.name") == "ann"
        assert manager.history() == []

    def test_one_event_per_batch(self, manager: StateManager):
        event = manager.apply_patches(
            [{"op": "add", "path": "$.a", "value": 1}, {"op": "add", "path": "$.b", "value": 2}],
            metadata={"source": "test"},
        )
        assert event.id == "evt_1"
        assert len(event.patches) == 2
        assert event.metadata == {"source": "test"}
        assert event.after_checksum == manager.checksum


class TestSubscriptions:
    def test_related_paths_only(self, manager: StateManager):
        calls = []
        manager.subscribe("$.user.name", lambda p, new, old: calls.append((p, new, old)))
        manager.set_value("$.cart", [1])
        manager.set_value("$.user", {"name": "bob"})
        manager.set_value("$.user.name", "cy")
        assert calls == [("$.user.name", "bob", "ann"), ("$.user.name", "cy", "bob")]

    def test_unsubscribe(self, manager: StateManager):
        calls = []
        unsubscribe = manager.subscribe("$.cart", lambda *args: calls.append(args))
        assert manager.subscriber_count == 1
        unsubscribe()
        manager.set_value("$.cart", [1])
        assert calls == []
        assert manager.subscriber_count == 0

    def test_immediate(self, manager: StateManager):
        calls = []
        manager.subscribe("$.user.name", lambda *args: calls.append(args), immediate=True)
        assert calls == [("$.user.name", "ann", None)]

    def test_failing_subscriber_does_not_break_the_write(self, manager: StateManager):
        def broken(*_):
            raise RuntimeError("boom")

        calls = []
        manager.subscribe("$.cart", broken)
        manager.subscribe("$.cart", lambda *args: calls.append(args))
        manager.set_value("$.cart", [1])
        assert manager.get("$.cart") == [1]
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_async_subscriber(self, manager: StateManager):
        seen = []

        async def watcher(path, new, old):
            seen.append(new)

        manager.subscribe("$.cart", watcher)
        manager.set_value("$.cart", [1])
        await asyncio.sleep(0)
        assert seen == [[1]]


class TestCheckpoints:
    def test_checkpoint_is_isolated(self, manager: StateManager):
        snapshot = manager.create_checkpoint("before")
        manager.set_value("$.user.name", "bob")
        assert snapshot.state["user"]["name"] == "ann"
        assert manager.get_checkpoint("before").state["user"]["name"] == "ann"

    def test_generated_ids(self, manager: StateManager):
        assert manager.create_checkpoint().id == "checkpoint_1"
        assert manager.create_checkpoint().id == "checkpoint_2"
        assert [c["id"] for c in manager.list_checkpoints()] == ["checkpoint_1", "checkpoint_2"]

    def test_restore_notifies_changed_subscribers_only(self, manager: StateManager):
        manager.create_checkpoint("cp")
        manager.set_value("$.user.name", "bob")
        name_calls, cart_calls = [], []
        manager.subscribe("$.user.name", lambda *args: name_calls.append(args))
        manager.subscribe("$.cart", lambda *args: cart_calls.append(args))
        event = manager.restore_checkpoint("cp")
        assert manager.get("$.user.name") == "ann"
        assert name_calls == [("$.user.name", "ann", "bob")]
        assert cart_calls == []
        assert event.metadata["type"] == "checkpoint_restore"

    def test_restore_unknown(self, manager: StateManager):
        with pytest.raises(StateError) as exc_info:
            manager.restore_checkpoint("nope")
        assert exc_info.value.code == "CHECKPOINT_NOT_FOUND"

    def test_delete_checkpoint(self, manager: StateManager):
        manager.create_checkpoint("cp")
        assert manager.delete_checkpoint("cp")
        assert manager.get_checkpoint("cp") is None


class TestUndoRedo:
    def test_undo_and_redo(self, manager: StateManager):
        manager.set_value("$.user.name", "bob")
        manager.set_value("$.cart", [1, 2])
        manager.undo()
        assert manager.get("$.cart") == []
        manager.undo()
        assert manager.get("$.user.name") == "ann"
        assert not manager.can_undo
        manager.redo()
        assert manager.get("$.user.name") == "bob"
        assert manager.can_redo

    def test_nothing_to_undo(self, manager: StateManager):
        assert manager.undo() is None
        assert manager.redo() is None

    def test_new_write_clears_redo(self, manager: StateManager):
        manager.set_value("$.a", 1)
        manager.undo()
        assert manager.can_redo
        manager.set_value("$.b", 2)
        assert not manager.can_redo

    def test_undo_restore(self, manager: StateManager):
        manager.create_checkpoint("cp")
        manager.set_value("$.cart", [9])
        manager.restore_checkpoint("cp")
        manager.undo()
        assert manager.get("$.cart") == [9]

    def test_undo_is_recorded(self, manager: StateManager):
        manager.set_value("$.a", 1)
        event = manager.undo()
        assert event.metadata == {"type": "undo", "reverts": "evt_1"}
        assert len(manager.history()) == 2


class TestHistoryAndBundles:
    def test_replay(self, manager: StateManager):
        first = manager.set_value("$.a", 1)
        manager.set_value("$.a", 2)
        assert manager.replay(first.id)["a"] == 1
        assert manager.replay() == manager.get_state()
        assert [e.id for e in manager.history(1)] == ["evt_2"]

    def test_export_import(self, manager: StateManager):
        manager.set_value("$.a", 1)
        manager.create_checkpoint("cp")
        bundle = manager.export_bundle()
        assert bundle["metadata"]["event_count"] == 1

        other = StateManager()
        calls = []
        other.subscribe("$.a", lambda *args: calls.append(args))
        other.import_bundle(bundle)
        assert other.get_state() == manager.get_state()
        assert other.get_checkpoint("cp") is not None
        assert other.replay() == manager.get_state()
        assert calls == [("$.a", 1, None)]
        assert not other.can_undo

    def test_import_rejects_bad_checksum(self, manager: StateManager):
        bundle = manager.export_bundle()
        bundle["document"]["user"]["name"] = "tampered"
        with pytest.raises(StateError) as exc_info:
            StateManager().import_bundle(bundle)
        assert exc_info.value.code == "CHECKSUM_MISMATCH"
        StateManager().import_bundle(bundle, validate_checksum=False)

    def test_import_requires_document(self):
        with pytest.raises(StateError) as exc_info:
            StateManager().import_bundle({"history": []})
        assert exc_info.value.code == "INVALID_BUNDLE"

    @pytest.mark.asyncio
    async def test_save_and_load(self, manager: StateManager, store):
        manager._store = store
        manager.set_value("$.a", 1)
        metadata = await manager.save("main")
        assert metadata["event_count"] == 1

        restored = StateManager(store=store)
        await restored.load("main")
        assert restored.get_state() == manager.get_state()
        with pytest.raises(StateError) as exc_info:
            await restored.load("absent")
        assert exc_info.value.code == "BUNDLE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_save_without_store(self, manager: StateManager):
        with pytest.raises(StateError) as exc_info:
            await manager.save()
        assert exc_info.value.code == "NO_STORE"
