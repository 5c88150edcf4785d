"""Echo and feedback-loop suppression."""

from __future__ import annotations

from typing import Any

from treesync.models import BatchContext, StateUpdate, SyncSource


class LoopGuard:
    """Per-engine identity and batch marker.

    Two things must never be published: updates this instance already
    wrote (echoes coming back through the change feed) and mutations the
    engine applied itself from the store. The first is recognized by
    origin, the second by the :class:`~treesync.models.BatchContext` the
    engine tags its own batches with.

    The context is normally threaded explicitly through each mutation. The
    active slot, filled from the tree's batch hooks, covers trees that do
    not pass it along.
    """

    def __init__(self, instance_id: str) -> None:
        self._instance_id = instance_id
        self._active: BatchContext | None = None

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def active(self) -> BatchContext | None:
        return self._active

    def tag(self, source: SyncSource) -> BatchContext:
        return BatchContext(origin=self._instance_id, source=source)

    def begin(self, context: Any) -> None:
        self._active = context if isinstance(context, BatchContext) else None

    def end(self) -> None:
        self._active = None

    def is_echo(self, update: StateUpdate) -> bool:
        return update.origin == self._instance_id

    def should_publish(self, context: Any = None) -> bool:
        effective = context if context is not None else self._active
        return not isinstance(effective, BatchContext)
