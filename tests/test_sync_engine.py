from __future__ import annotations

import asyncio
import copy
from collections.abc import Mapping, Sequence
from typing import Any

import pytest

from treesync import (
    ABSENT,
    BatchContext,
    DecodeError,
    EncodeError,
    InvariantViolation,
    MemoryStorage,
    MemoryStorageArea,
    StateTree,
    StorageChange,
    StoreError,
    SyncConfig,
    SyncEngine,
    SyncPhase,
    TreeSyncStateError,
)
from treesync._constants import STATE_UPDATE_KEY, STATE_VERSION_KEY
from treesync.codec import decode
from treesync.state import Mutation

_DEFAULT_STATE: dict[str, Any] = {"a": [], "b": {"c": 2}, "d": 8}
_SEEDED_STORE: dict[str, Any] = {"b": {"c": 3}, "d": 9, "a": ["a"], STATE_VERSION_KEY: 1}


class _RecordingArea(MemoryStorageArea):
    """Memory area that remembers every call it received."""

    def __init__(self, data: Mapping[str, Any] | None = None) -> None:
        super().__init__("local", data)
        self.get_calls: list[list[str] | None] = []
        self.set_calls: list[dict[str, Any]] = []
        self.remove_calls: list[list[str]] = []

    async def get(self, keys: Sequence[str] | None = None) -> dict[str, Any]:
        self.get_calls.append(None if keys is None else list(keys))
        return await super().get(keys)

    async def set(self, items: Mapping[str, Any]) -> None:
        self.set_calls.append(copy.deepcopy(dict(items)))
        await super().set(items)

    async def remove(self, keys: Sequence[str]) -> None:
        self.remove_calls.append(list(keys))
        await super().remove(keys)

    def reset_calls(self) -> None:
        self.get_calls.clear()
        self.set_calls.clear()
        self.remove_calls.clear()


class _FailingArea(_RecordingArea):
    def __init__(self, data: Mapping[str, Any] | None = None, *, fail_get: bool = False) -> None:
        super().__init__(data)
        self.fail_get = fail_get

    async def get(self, keys: Sequence[str] | None = None) -> dict[str, Any]:
        if self.fail_get:
            raise OSError("storage unavailable")
        return await super().get(keys)

    async def set(self, items: Mapping[str, Any]) -> None:
        raise OSError("quota exceeded")


def _default() -> dict[str, Any]:
    return copy.deepcopy(_DEFAULT_STATE)


def _config(*, leader: bool = True, errors: list[BaseException] | None = None, **overrides: Any) -> SyncConfig:
    kwargs: dict[str, Any] = {
        "instance_id": "test-1",
        "initial_state": _default(),
        "is_leader": leader,
        "on_error": errors.append if errors is not None else None,
    }
    if leader:
        kwargs.update(stored_version=1, persisted_keys=("b", "d"))
    kwargs.update(overrides)
    return SyncConfig(**kwargs)


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


async def _attached(
    area: MemoryStorageArea,
    *,
    leader: bool = True,
    errors: list[BaseException] | None = None,
    **overrides: Any,
) -> tuple[SyncEngine, StateTree]:
    tree = StateTree(_default())
    engine = SyncEngine(tree, area, _config(leader=leader, errors=errors, **overrides))
    engine.attach()
    await engine.wait_ready()
    await engine.drain()
    await _settle()
    return engine, tree


def _update_change(payload: str) -> StorageChange:
    return StorageChange(new_value=payload)


# ----------------------------------------------------------------------
# Bootstrap
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_leader_restores_persisted_keys_and_clears_the_rest() -> None:
    area = _RecordingArea(_SEEDED_STORE)

    engine, tree = await _attached(area, leader=True)

    assert tree.get() == {"a": [], "b": {"c": 3}, "d": 9}
    assert area.get_calls == [["b", "d", STATE_VERSION_KEY]]
    assert area.remove_calls == [["a"]]
    # Restored values are not written back.
    assert area.set_calls == []
    assert engine.phase is SyncPhase.SYNCED


@pytest.mark.asyncio
async def test_follower_restores_every_key_and_never_removes() -> None:
    area = _RecordingArea(_SEEDED_STORE)

    _engine, tree = await _attached(area, leader=False)

    assert tree.get() == {"a": ["a"], "b": {"c": 3}, "d": 9}
    assert area.get_calls == [["a", "b", "d", STATE_VERSION_KEY]]
    assert area.remove_calls == []
    assert area.set_calls == []


@pytest.mark.asyncio
async def test_leader_seeds_virgin_store_with_version() -> None:
    area = _RecordingArea()

    _engine, tree = await _attached(area, leader=True)

    assert area.set_calls == [{"a": [], "b": {"c": 2}, "d": 8, STATE_VERSION_KEY: 1}]
    assert area.remove_calls == []
    assert tree.get() == _DEFAULT_STATE


@pytest.mark.asyncio
async def test_follower_keeps_defaults_on_virgin_store() -> None:
    area = _RecordingArea()

    _engine, tree = await _attached(area, leader=False)

    assert area.set_calls == []
    assert area.remove_calls == []
    assert tree.get() == _DEFAULT_STATE


@pytest.mark.asyncio
async def test_bootstrap_fetch_failure_is_reported_and_engine_still_syncs() -> None:
    errors: list[BaseException] = []
    area = _FailingArea(fail_get=True)

    engine, tree = await _attached(area, leader=True, errors=errors)

    assert len(errors) == 1
    assert isinstance(errors[0], StoreError)
    assert errors[0].operation == "get"
    assert engine.phase is SyncPhase.SYNCED
    assert tree.get() == _DEFAULT_STATE


@pytest.mark.asyncio
async def test_bootstrap_seed_failure_is_reported() -> None:
    errors: list[BaseException] = []
    area = _FailingArea()

    await _attached(area, leader=True, errors=errors)

    assert [type(err) for err in errors] == [StoreError]
    assert isinstance(errors[0], StoreError)
    assert errors[0].operation == "set"


# ----------------------------------------------------------------------
# Local → remote
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_local_set_writes_top_level_key_and_update_record() -> None:
    area = _RecordingArea(_SEEDED_STORE)
    engine, tree = await _attached(area, leader=False)
    area.reset_calls()

    tree.set(("b", "c"), 5)
    await engine.drain()

    assert len(area.set_calls) == 1
    written = area.set_calls[0]
    assert set(written) == {"b", STATE_UPDATE_KEY}
    assert written["b"] == {"c": 5}
    update = decode(written[STATE_UPDATE_KEY])
    assert update.origin == "test-1"
    assert update.path == ("b", "c")
    assert update.value == 5
    assert update.merged is None


@pytest.mark.asyncio
async def test_local_merge_publishes_merge_descriptor() -> None:
    area = _RecordingArea(_SEEDED_STORE)
    engine, tree = await _attached(area, leader=False)
    area.reset_calls()

    tree.merge(("b",), {"e": 1})
    await engine.drain()

    (written,) = area.set_calls
    assert written["b"] == {"c": 3, "e": 1}
    update = decode(written[STATE_UPDATE_KEY])
    assert update.path == ("b",)
    assert update.merged == {"e": 1}


@pytest.mark.asyncio
async def test_local_root_set_writes_every_key_without_value() -> None:
    area = _RecordingArea(_SEEDED_STORE)
    engine, tree = await _attached(area, leader=False)
    area.reset_calls()

    tree.set((), {"a": ["a1"], "b": {"c": 3}, "d": 2})
    await engine.drain()

    (written,) = area.set_calls
    assert {key: value for key, value in written.items() if key != STATE_UPDATE_KEY} == {
        "a": ["a1"],
        "b": {"c": 3},
        "d": 2,
    }
    update = decode(written[STATE_UPDATE_KEY])
    assert update.path == ()
    assert not update.has_value
    assert update.merged is None


@pytest.mark.asyncio
async def test_deleting_top_level_key_writes_record_then_removes_key() -> None:
    area = _RecordingArea(_SEEDED_STORE)
    engine, tree = await _attached(area, leader=False)
    area.reset_calls()

    tree.set(("d",), ABSENT)
    await engine.drain()

    (written,) = area.set_calls
    assert set(written) == {STATE_UPDATE_KEY}
    assert decode(written[STATE_UPDATE_KEY]).value is ABSENT
    assert area.remove_calls == [["d"]]
    assert "d" not in area.snapshot()


@pytest.mark.asyncio
async def test_delete_then_set_in_same_tick_keeps_the_new_value() -> None:
    area = _RecordingArea(_SEEDED_STORE)
    engine, tree = await _attached(area, leader=False)
    area.reset_calls()

    tree.set(("d",), ABSENT)
    tree.set(("d",), 5)
    await engine.drain()

    assert [set(items) for items in area.set_calls] == [{STATE_UPDATE_KEY}, {"d", STATE_UPDATE_KEY}]
    assert area.remove_calls == [["d"]]
    assert area.snapshot()["d"] == 5
    assert tree.get(("d",)) == 5


@pytest.mark.asyncio
async def test_unserializable_local_value_is_reported_and_not_written() -> None:
    errors: list[BaseException] = []
    area = _RecordingArea(_SEEDED_STORE)
    engine, tree = await _attached(area, leader=False, errors=errors)
    area.reset_calls()

    tree.set(("d",), {1, 2})
    await engine.drain()

    assert area.set_calls == []
    assert len(errors) == 1
    assert isinstance(errors[0], EncodeError)
    assert tree.get(("d",)) == {1, 2}


@pytest.mark.asyncio
async def test_total_removal_is_reported_and_not_written() -> None:
    errors: list[BaseException] = []
    area = _RecordingArea(_SEEDED_STORE)
    engine, tree = await _attached(area, leader=False, errors=errors)
    area.reset_calls()

    tree.set((), ABSENT)
    await engine.drain()

    assert area.set_calls == []
    assert len(errors) == 1
    assert isinstance(errors[0], InvariantViolation)


@pytest.mark.asyncio
async def test_write_failure_is_reported_without_retry() -> None:
    errors: list[BaseException] = []
    area = _FailingArea(_SEEDED_STORE)
    engine, tree = await _attached(area, leader=False, errors=errors)

    tree.set(("d",), 10)
    await engine.drain()

    assert len(errors) == 1
    assert isinstance(errors[0], StoreError)
    assert errors[0].keys == ("d", STATE_UPDATE_KEY)
    assert isinstance(errors[0].__cause__, OSError)


@pytest.mark.asyncio
async def test_batch_slot_suppresses_publish_when_context_is_not_threaded() -> None:
    area = _RecordingArea(_SEEDED_STORE)
    engine, tree = await _attached(area, leader=False)
    area.reset_calls()

    engine.on_batch_start(BatchContext(origin="test-2"))
    engine.on_set(Mutation(path=("d",), state=tree.get(), value=9))
    engine.on_batch_finish(None)
    engine.on_set(Mutation(path=("d",), state=tree.get(), value=9))
    await engine.drain()

    assert len(area.set_calls) == 1


@pytest.mark.asyncio
async def test_error_callback_failure_does_not_propagate() -> None:
    def _broken(err: BaseException) -> None:
        raise RuntimeError("callback bug")

    area = _RecordingArea(_SEEDED_STORE)
    tree = StateTree(_default())
    engine = SyncEngine(tree, area, _config(leader=False, on_error=_broken))
    engine.attach()
    await engine.wait_ready()

    tree.set((), ABSENT)
    await engine.drain()

    assert engine.phase is SyncPhase.SYNCED


# ----------------------------------------------------------------------
# Remote → local
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_own_updates_are_ignored() -> None:
    area = _RecordingArea(_SEEDED_STORE)
    engine, tree = await _attached(area, leader=False)
    before = tree.get()
    area.reset_calls()

    area.dispatch(
        {
            STATE_UPDATE_KEY: _update_change('{"from":"test-1","path":["a"],"value":[{"y":1}]}'),
            "a": StorageChange(new_value=[{"y": 1}]),
        }
    )
    await engine.drain()

    assert tree.get() == before
    assert area.set_calls == []


@pytest.mark.asyncio
async def test_remote_set_is_applied_without_writing_back() -> None:
    area = _RecordingArea(_SEEDED_STORE)
    engine, tree = await _attached(area, leader=False)
    area.reset_calls()

    area.dispatch(
        {
            STATE_UPDATE_KEY: _update_change('{"from":"test-2","path":["a"],"value":[{"y":1}]}'),
            "a": StorageChange(new_value=[{"y": 1}]),
        }
    )
    await engine.drain()

    assert tree.get(("a",)) == [{"y": 1}]
    assert area.set_calls == []


@pytest.mark.asyncio
async def test_remote_merge_touches_only_merged_keys() -> None:
    area = _RecordingArea({**_SEEDED_STORE, "b": {"c": 3, "e": 7}})
    engine, tree = await _attached(area, leader=False)
    area.reset_calls()

    area.dispatch(
        {
            STATE_UPDATE_KEY: _update_change('{"from":"test-2","path":["b"],"value":{"c":4},"merged":{"c":4}}'),
            "b": StorageChange(new_value={"c": 4}),
        }
    )
    await engine.drain()

    assert tree.get() == {"a": ["a"], "b": {"c": 4, "e": 7}, "d": 9}
    assert area.set_calls == []


@pytest.mark.asyncio
async def test_remote_whole_tree_change_rebuilds_from_raw_values() -> None:
    area = _RecordingArea(_SEEDED_STORE)
    engine, tree = await _attached(area, leader=False)
    area.reset_calls()

    area.dispatch(
        {
            "a": StorageChange(new_value=["a1"]),
            "b": StorageChange(new_value={"c": 4}),
            "d": StorageChange(new_value=8),
            STATE_UPDATE_KEY: _update_change('{"from":"test-2","path":[]}'),
        }
    )
    await engine.drain()

    assert tree.get() == {"a": ["a1"], "b": {"c": 4}, "d": 8}
    assert area.set_calls == []


@pytest.mark.asyncio
async def test_own_whole_tree_change_is_ignored() -> None:
    area = _RecordingArea(_SEEDED_STORE)
    engine, tree = await _attached(area, leader=False)
    before = tree.get()

    area.dispatch(
        {
            "a": StorageChange(new_value=["a1"]),
            STATE_UPDATE_KEY: _update_change('{"from":"test-1","path":[]}'),
        }
    )
    await engine.drain()

    assert tree.get() == before


@pytest.mark.asyncio
async def test_notifications_without_update_record_are_ignored() -> None:
    errors: list[BaseException] = []
    area = _RecordingArea(_SEEDED_STORE)
    _engine, tree = await _attached(area, leader=False, errors=errors)
    before = tree.get()

    area.dispatch({"a": StorageChange(new_value=["zzz"])})
    area.dispatch({STATE_UPDATE_KEY: StorageChange(old_value="x")})

    assert tree.get() == before
    assert errors == []


@pytest.mark.asyncio
async def test_malformed_payload_is_reported_and_not_applied() -> None:
    errors: list[BaseException] = []
    area = _RecordingArea(_SEEDED_STORE)
    _engine, tree = await _attached(area, leader=False, errors=errors)
    before = tree.get()

    area.dispatch({STATE_UPDATE_KEY: _update_change("{not json"), "a": StorageChange(new_value=[1])})
    area.dispatch({STATE_UPDATE_KEY: _update_change('{"from":"test-2","path":[]}')})
    area.dispatch({STATE_UPDATE_KEY: _update_change('{"from":"test-2","path":["a"]}')})

    assert tree.get() == before
    assert len(errors) == 3
    assert all(isinstance(err, DecodeError) for err in errors)


@pytest.mark.asyncio
async def test_remote_update_on_missing_path_is_reported() -> None:
    errors: list[BaseException] = []
    area = _RecordingArea(_SEEDED_STORE)
    _engine, tree = await _attached(area, leader=False, errors=errors)

    area.dispatch({STATE_UPDATE_KEY: _update_change('{"from":"test-2","path":["zz","y"],"value":1}')})

    assert len(errors) == 1
    assert tree.get(("zz",)) is ABSENT


# ----------------------------------------------------------------------
# Lifecycle and convergence
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_lifecycle_phases() -> None:
    area = _RecordingArea()
    tree = StateTree(_default())
    engine = SyncEngine(tree, area, _config(leader=True))
    assert engine.phase is SyncPhase.UNINITIALIZED

    engine.attach()
    assert engine.phase is SyncPhase.LOADING
    assert area.has_listener(engine.listener)

    await engine.wait_ready()
    assert engine.phase is SyncPhase.SYNCED

    await engine.detach()
    assert engine.phase is SyncPhase.DETACHED
    assert not area.has_listener(engine.listener)

    with pytest.raises(TreeSyncStateError):
        engine.attach()


@pytest.mark.asyncio
async def test_detach_before_attach_releases_waiters() -> None:
    engine = SyncEngine(StateTree(_default()), _RecordingArea(), _config(leader=False))

    await engine.detach()
    await asyncio.wait_for(engine.wait_ready(), 1.0)

    assert engine.phase is SyncPhase.DETACHED


def test_attach_requires_running_loop() -> None:
    engine = SyncEngine(StateTree(_default()), _RecordingArea(), _config(leader=False))

    with pytest.raises(TreeSyncStateError):
        engine.attach()


@pytest.mark.asyncio
async def test_detached_engine_stops_syncing() -> None:
    area = _RecordingArea(_SEEDED_STORE)
    engine, tree = await _attached(area, leader=False)
    await engine.detach()
    area.reset_calls()

    tree.set(("d",), 1)
    area.dispatch(
        {
            STATE_UPDATE_KEY: _update_change('{"from":"test-2","path":["d"],"value":2}'),
            "d": StorageChange(new_value=2),
        }
    )
    await engine.drain()

    assert area.set_calls == []
    assert tree.get(("d",)) == 1


@pytest.mark.asyncio
async def test_destroying_the_tree_detaches_the_engine() -> None:
    area = _RecordingArea(_SEEDED_STORE)
    engine, tree = await _attached(area, leader=False)

    tree.destroy()

    assert engine.phase is SyncPhase.DETACHED
    assert not area.has_listener(engine.listener)


@pytest.mark.asyncio
async def test_engines_sharing_a_storage_converge() -> None:
    storage = MemoryStorage()
    leader_tree = StateTree(_default())
    follower_tree = StateTree(_default())
    leader = SyncEngine(leader_tree, storage, _config(leader=True))
    follower = SyncEngine(follower_tree, storage, _config(leader=False, instance_id="test-2"))

    async with leader, follower:
        follower_tree.set(("b", "c"), 10)
        await follower.drain()
        await _settle()
        assert leader_tree.get(("b", "c")) == 10

        leader_tree.merge(("b",), {"e": ABSENT, "f": [1]})
        await leader.drain()
        await _settle()
        assert follower_tree.get(("b",)) == {"c": 10, "f": [1]}

        leader_tree.set((), {"a": ["x"], "b": {"c": 1}, "d": 0})
        await leader.drain()
        await _settle()
        assert follower_tree.get() == {"a": ["x"], "b": {"c": 1}, "d": 0}

        follower_tree.set(("a",), ABSENT)
        await follower.drain()
        await _settle()
        assert leader_tree.get(("a",)) is ABSENT

    assert storage.local.snapshot()[STATE_VERSION_KEY] == 1
    assert "a" not in storage.local.snapshot()


@pytest.mark.asyncio
async def test_engine_listens_to_its_own_area_only() -> None:
    storage = MemoryStorage()
    tree = StateTree(_default())
    other_tree = StateTree(_default())
    engine = SyncEngine(tree, storage, _config(leader=True))
    other = SyncEngine(other_tree, storage, _config(leader=True, instance_id="test-2", area_name="sync"))

    async with engine, other:
        other_tree.set(("d",), 42)
        await other.drain()
        await _settle()

    assert tree.get(("d",)) == 8
    assert storage.sync.snapshot()["d"] == 42
