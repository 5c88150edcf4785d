"""Storage area protocol and helpers shared by the concrete stores."""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

from treesync.models import StorageChange

_logger = logging.getLogger(__name__)

ChangeCallback = Callable[[Mapping[str, StorageChange]], None]


@runtime_checkable
class StorageArea(Protocol):
    """One named key-value area of a shared store, with a change feed."""

    name: str

    async def get(self, keys: Sequence[str] | None = None) -> dict[str, Any]: ...

    async def set(self, items: Mapping[str, Any]) -> None: ...

    async def remove(self, keys: Sequence[str]) -> None: ...

    def add_listener(self, listener: ChangeCallback) -> None: ...

    def remove_listener(self, listener: ChangeCallback) -> None: ...


@runtime_checkable
class Storage(Protocol):
    """A store exposing named areas (``"local"``, ``"sync"``, ...)."""

    def area(self, name: str) -> StorageArea: ...


def compute_changes(
    current: Mapping[str, Any],
    *,
    updated: Mapping[str, Any] | None = None,
    removed: Iterable[str] = (),
) -> dict[str, StorageChange]:
    """Diff a write against *current*.

    Keys whose value does not change are left out, like a browser extension
    storage area does.
    """
    changes: dict[str, StorageChange] = {}
    for key, value in (updated or {}).items():
        if key in current:
            if current[key] == value:
                continue
            changes[key] = StorageChange(
                old_value=copy.deepcopy(current[key]),
                new_value=copy.deepcopy(value),
            )
        else:
            changes[key] = StorageChange(new_value=copy.deepcopy(value))
    for key in removed:
        if key in current:
            changes[key] = StorageChange(old_value=copy.deepcopy(current[key]))
    return changes


def apply_changes(target: dict[str, Any], changes: Mapping[str, StorageChange]) -> None:
    """Apply a diff produced by :func:`compute_changes` onto *target*."""
    for key, change in changes.items():
        if change.has_new_value:
            target[key] = copy.deepcopy(change.new_value)
        else:
            target.pop(key, None)


class ListenerRegistry:
    """Listener bookkeeping for storage areas."""

    def __init__(self) -> None:
        self._listeners: list[ChangeCallback] = []

    def add_listener(self, listener: ChangeCallback) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: ChangeCallback) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def has_listener(self, listener: ChangeCallback) -> bool:
        return listener in self._listeners

    def dispatch(self, changes: Mapping[str, StorageChange]) -> None:
        """Deliver *changes* to every listener; a failing listener does not stop the others."""
        for listener in list(self._listeners):
            try:
                listener(changes)
            except Exception:
                _logger.warning("Storage change listener failed", exc_info=True)
