"""Remote → local: apply updates received through the change feed."""

from __future__ import annotations

import logging
from collections.abc import Callable, Collection, Mapping
from typing import Any, assert_never

from treesync._constants import STATE_UPDATE_KEY
from treesync._logfmt import shorten_for_log
from treesync.codec import classify, decode
from treesync.exceptions import DecodeError, TreePathError
from treesync.models import ABSENT, BatchContext, FullReplace, StorageChange, SubtreeMerge, SubtreeSet, SyncSource
from treesync.state.tree import StateTree
from treesync.sync.guard import LoopGuard

_logger = logging.getLogger(__name__)


class ChangeListener:
    """Change-feed callback for one engine.

    Only notifications carrying the reserved update key are considered.
    Everything it applies runs inside one tree batch tagged with the remote
    origin, which keeps the publisher from writing it back.
    """

    def __init__(
        self,
        *,
        tree: StateTree,
        guard: LoopGuard,
        state_keys: Collection[str],
        report: Callable[[BaseException], None],
    ) -> None:
        self._tree = tree
        self._guard = guard
        self._state_keys = frozenset(state_keys)
        self._report = report

    def __call__(self, changes: Mapping[str, StorageChange]) -> None:
        self.handle(changes)

    def handle(self, changes: Mapping[str, StorageChange]) -> bool:
        """Apply one notification; return ``True`` when the tree was mutated."""
        entry = changes.get(STATE_UPDATE_KEY)
        if entry is None or not entry.has_new_value:
            return False

        try:
            update = decode(entry.new_value)
        except DecodeError as exc:
            self._report(exc)
            return False

        if self._guard.is_echo(update):
            _logger.debug("Ignoring own update path=%s", list(update.path))
            return False

        try:
            shape = classify(update)
        except DecodeError as exc:
            self._report(exc)
            return False

        apply: Callable[[StateTree], Any]
        match shape:
            case SubtreeMerge(path=path, merged=merged):
                apply = lambda tree: tree.merge(path, merged)  # noqa: E731
            case SubtreeSet(path=path, value=value):
                apply = lambda tree: tree.set(path, value)  # noqa: E731
            case FullReplace():
                replacements = {
                    key: change.new_value if change.has_new_value else ABSENT
                    for key, change in changes.items()
                    if key in self._state_keys
                }
                if not replacements:
                    self._report(DecodeError(f"Malformed whole-tree update from {update.origin!r}: no state keys changed"))
                    return False
                apply = lambda tree: _replace_top_level(tree, replacements)  # noqa: E731
            case _:
                assert_never(shape)

        _logger.debug(
            "Applying update from=%s shape=%s path=%s",
            update.origin,
            type(shape).__name__,
            shorten_for_log(list(update.path)),
        )
        try:
            self._tree.batch(apply, BatchContext(origin=update.origin, source=SyncSource.REMOTE))
        except TreePathError as exc:
            self._report(exc)
            return False
        return True


def _replace_top_level(tree: StateTree, replacements: Mapping[str, Any]) -> None:
    for key, value in replacements.items():
        tree.set((key,), value)
