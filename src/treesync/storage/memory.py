"""In-process shared store.

Several sync engines attached to the same :class:`MemoryStorage` behave like
separate contexts of one application sharing a browser extension storage:
writes are copied, and change notifications are delivered asynchronously to
every listener of the area, including the writer's own.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from treesync._constants import DEFAULT_AREA
from treesync.storage.base import ListenerRegistry, apply_changes, compute_changes

_logger = logging.getLogger(__name__)


class MemoryStorageArea(ListenerRegistry):
    """Dict-backed storage area with an asynchronous change feed."""

    def __init__(self, name: str = DEFAULT_AREA, data: Mapping[str, Any] | None = None) -> None:
        super().__init__()
        self.name = name
        self._data: dict[str, Any] = copy.deepcopy(dict(data or {}))

    def snapshot(self) -> dict[str, Any]:
        """Return a copy of every stored key."""
        return copy.deepcopy(self._data)

    async def get(self, keys: Sequence[str] | None = None) -> dict[str, Any]:
        await asyncio.sleep(0)
        if keys is None:
            return self.snapshot()
        return {key: copy.deepcopy(self._data[key]) for key in keys if key in self._data}

    async def set(self, items: Mapping[str, Any]) -> None:
        await asyncio.sleep(0)
        changes = compute_changes(self._data, updated=items)
        apply_changes(self._data, changes)
        _logger.debug("Memory area %s set keys=%s changed=%s", self.name, list(items), list(changes))
        self._schedule(changes)

    async def remove(self, keys: Sequence[str]) -> None:
        await asyncio.sleep(0)
        changes = compute_changes(self._data, removed=keys)
        apply_changes(self._data, changes)
        _logger.debug("Memory area %s removed keys=%s", self.name, list(changes))
        self._schedule(changes)

    async def clear(self) -> None:
        await self.remove(list(self._data))

    def _schedule(self, changes: Mapping[str, Any]) -> None:
        if not changes:
            return
        asyncio.get_running_loop().call_soon(self.dispatch, changes)


class MemoryStorage:
    """Collection of named :class:`MemoryStorageArea` objects."""

    def __init__(self, areas: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        self._areas: dict[str, MemoryStorageArea] = {
            name: MemoryStorageArea(name, data) for name, data in (areas or {}).items()
        }

    def area(self, name: str) -> MemoryStorageArea:
        existing = self._areas.get(name)
        if existing is None:
            existing = MemoryStorageArea(name)
            self._areas[name] = existing
        return existing

    @property
    def local(self) -> MemoryStorageArea:
        return self.area("local")

    @property
    def sync(self) -> MemoryStorageArea:
        return self.area("sync")
