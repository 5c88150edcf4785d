"""In-memory observable state tree.

The sync engine only relies on the :class:`TreeHooks` protocol and on
``get``/``set``/``merge``/``batch``; any tree offering those can be
synchronized. :class:`StateTree` is the reference implementation.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from treesync.exceptions import TreePathError
from treesync.models import ABSENT, Path

_logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Mutation:
    """What a tree reports to its hooks after each mutation.

    ``state`` is the whole tree after the mutation and ``value`` the new
    value at ``path``; either is :data:`ABSENT` when removed. Both are live
    references: hooks must copy them before keeping them.
    """

    path: Path
    state: Any
    value: Any
    merged: Mapping[str, Any] | None = None
    context: Any = None

    @property
    def has_state(self) -> bool:
        return self.state is not ABSENT


class TreeHooks(Protocol):
    def on_set(self, mutation: Mutation) -> None: ...

    def on_batch_start(self, context: Any) -> None: ...

    def on_batch_finish(self, context: Any) -> None: ...

    def on_destroy(self) -> None: ...


def _child(node: Any, segment: str | int) -> Any:
    if isinstance(node, Mapping):
        return node.get(segment, ABSENT)
    if isinstance(node, list):
        try:
            index = _list_index(segment)
        except TreePathError:
            return ABSENT
        if 0 <= index < len(node):
            return node[index]
    return ABSENT


def _list_index(segment: str | int) -> int:
    if isinstance(segment, bool):
        raise TreePathError(f"Invalid list index {segment!r}")
    if isinstance(segment, int):
        return segment
    try:
        return int(segment)
    except ValueError as exc:
        raise TreePathError(f"Invalid list index {segment!r}") from exc


def _assign(parent: Any, segment: str | int, value: Any) -> None:
    if isinstance(parent, dict):
        if value is ABSENT:
            parent.pop(segment, None)
        else:
            parent[segment] = copy.deepcopy(value)
        return
    if isinstance(parent, list):
        index = _list_index(segment)
        if value is ABSENT:
            if 0 <= index < len(parent):
                del parent[index]
            return
        if index == len(parent):
            parent.append(copy.deepcopy(value))
        elif 0 <= index < len(parent):
            parent[index] = copy.deepcopy(value)
        else:
            raise TreePathError(f"List index {index} out of range (len={len(parent)})")
        return
    raise TreePathError(f"Cannot assign {segment!r} on a {type(parent).__name__}")


class StateTree:
    """Mutable JSON-like tree with mutation hooks and atomic batches.

    Usage::

        tree = StateTree({"a": [], "b": {"c": 2}})
        tree.set(("b", "c"), 3)
        tree.merge(("b",), {"x": 1})
        tree.batch(lambda t: t.set(("a",), [1]), context={"why": "demo"})
    """

    def __init__(self, initial: Any = ABSENT) -> None:
        self._value: Any = copy.deepcopy(initial)
        self._hooks: list[TreeHooks] = []
        self._contexts: list[Any] = []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, path: Sequence[str | int] = ()) -> Any:
        """Return a copy of the value at *path*, or :data:`ABSENT`."""
        node = self._value
        for segment in path:
            node = _child(node, segment)
            if node is ABSENT:
                return ABSENT
        return copy.deepcopy(node)

    @property
    def in_batch(self) -> bool:
        return bool(self._contexts)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def set(self, path: Sequence[str | int], value: Any) -> None:
        """Replace the value at *path*; :data:`ABSENT` deletes it."""
        key = tuple(path)
        if not key:
            self._value = copy.deepcopy(value)
        else:
            _assign(self._resolve(key[:-1]), key[-1], value)
        self._notify(key, value=ABSENT if value is ABSENT else self._lookup(key), merged=None)

    def merge(self, path: Sequence[str | int], entries: Mapping[str, Any]) -> None:
        """Merge *entries* into the mapping (or list) at *path*.

        Entries set to :data:`ABSENT` are removed. For lists the keys are
        indices; removals are applied last, highest index first.
        """
        key = tuple(path)
        target = self._resolve(key)
        if isinstance(target, dict):
            for name, value in entries.items():
                _assign(target, name, value)
        elif isinstance(target, list):
            removed: list[int] = []
            for name, value in entries.items():
                if value is ABSENT:
                    removed.append(_list_index(name))
                else:
                    _assign(target, name, value)
            for index in sorted(removed, reverse=True):
                _assign(target, index, ABSENT)
        else:
            raise TreePathError(f"Cannot merge into a {type(target).__name__} at {list(key)!r}")
        self._notify(key, value=target, merged=dict(entries))

    def batch(self, fn: Callable[[StateTree], T], context: Any = None) -> T:
        """Run *fn* as one atomic batch.

        *context* is attached to every mutation made inside the batch. Batch
        hooks fire for the outermost batch only; a nested batch without its
        own context inherits the enclosing one.
        """
        outermost = not self._contexts
        effective = context if context is not None else (self._contexts[-1] if self._contexts else None)
        self._contexts.append(effective)
        if outermost:
            for hook in list(self._hooks):
                hook.on_batch_start(effective)
        try:
            return fn(self)
        finally:
            self._contexts.pop()
            if outermost:
                for hook in list(self._hooks):
                    hook.on_batch_finish(effective)

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def attach(self, hooks: TreeHooks) -> None:
        if hooks not in self._hooks:
            self._hooks.append(hooks)

    def detach(self, hooks: TreeHooks) -> None:
        """Remove *hooks* and fire its ``on_destroy``."""
        if hooks in self._hooks:
            self._hooks.remove(hooks)
            hooks.on_destroy()

    def destroy(self) -> None:
        """Detach every hook."""
        for hooks in list(self._hooks):
            self.detach(hooks)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _resolve(self, path: Path) -> Any:
        node = self._value
        for depth, segment in enumerate(path):
            node = _child(node, segment)
            if node is ABSENT:
                raise TreePathError(f"No value at {list(path[: depth + 1])!r}")
        if node is ABSENT:
            raise TreePathError("Tree has no value")
        return node

    def _lookup(self, path: Path) -> Any:
        node = self._value
        for segment in path:
            node = _child(node, segment)
            if node is ABSENT:
                break
        return node

    def _notify(self, path: Path, *, value: Any, merged: Mapping[str, Any] | None) -> None:
        mutation = Mutation(
            path=path,
            state=self._value,
            value=value,
            merged=merged,
            context=self._contexts[-1] if self._contexts else None,
        )
        _logger.debug("Tree mutation path=%s merged=%s", list(path), merged is not None)
        for hook in list(self._hooks):
            hook.on_set(mutation)
