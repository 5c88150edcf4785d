from __future__ import annotations

import asyncio
from collections.abc import Mapping

import pytest

from treesync import MemoryStorage, StorageChange
from treesync.storage import compute_changes


def test_compute_changes_skips_unchanged_keys() -> None:
    changes = compute_changes({"a": [1], "b": 2}, updated={"a": [1], "b": 3, "c": 4}, removed=["a", "zz"])

    assert set(changes) == {"a", "b", "c"}
    assert changes["b"] == StorageChange(old_value=2, new_value=3)
    assert not changes["c"].has_old_value
    assert changes["a"].has_old_value
    assert not changes["a"].has_new_value


def test_storage_change_uses_camel_case_on_the_wire() -> None:
    change = StorageChange.model_validate({"oldValue": 1, "newValue": 2})

    assert change.old_value == 1
    assert change.model_dump(by_alias=True, exclude_unset=True) == {"oldValue": 1, "newValue": 2}


@pytest.mark.asyncio
async def test_writes_are_copied_and_notified_asynchronously() -> None:
    storage = MemoryStorage({"local": {"a": 1}})
    area = storage.local
    received: list[Mapping[str, StorageChange]] = []
    area.add_listener(received.append)

    value = {"c": 1}
    await area.set({"b": value, "a": 1})
    value["c"] = 2

    assert received == []
    await asyncio.sleep(0)

    assert len(received) == 1
    assert set(received[0]) == {"b"}
    assert await area.get(["b", "missing"]) == {"b": {"c": 1}}


@pytest.mark.asyncio
async def test_remove_and_clear_notify_removed_keys() -> None:
    area = MemoryStorage().area("sync")
    received: list[Mapping[str, StorageChange]] = []
    area.add_listener(received.append)

    await area.set({"a": 1, "b": 2})
    await area.remove(["a"])
    await area.clear()
    await asyncio.sleep(0)

    assert [set(changes) for changes in received] == [{"a", "b"}, {"a"}, {"b"}]
    assert area.snapshot() == {}


@pytest.mark.asyncio
async def test_failing_listener_does_not_block_others() -> None:
    area = MemoryStorage().local
    received: list[Mapping[str, StorageChange]] = []

    def _broken(changes: Mapping[str, StorageChange]) -> None:
        raise RuntimeError("boom")

    area.add_listener(_broken)
    area.add_listener(received.append)

    await area.set({"a": 1})
    await asyncio.sleep(0)

    assert len(received) == 1
