"""Local → remote: publish every local tree mutation."""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Callable, Coroutine, Mapping
from typing import Any

from treesync._constants import STATE_UPDATE_KEY
from treesync._logfmt import shorten_for_log
from treesync.codec import encode
from treesync.exceptions import EncodeError, InvariantViolation, StoreError
from treesync.models import ABSENT
from treesync.state.tree import Mutation
from treesync.storage.base import StorageArea
from treesync.sync._store import guarded
from treesync.sync.guard import LoopGuard

_logger = logging.getLogger(__name__)


class MutationPublisher:
    """Turns tree mutations into store writes.

    A mutation below the root writes its top-level key together with the
    update record; a root mutation writes every top-level key and an update
    record with an empty path, from which receivers rebuild the change.
    Writes are fire-and-forget tasks run one at a time in mutation order;
    :meth:`drain` awaits them.
    """

    def __init__(
        self,
        *,
        area: StorageArea,
        guard: LoopGuard,
        report: Callable[[BaseException], None],
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self._area = area
        self._guard = guard
        self._report = report
        self._loop = loop
        self._pending: set[asyncio.Task[None]] = set()
        self._write_lock = asyncio.Lock()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def on_set(self, mutation: Mutation) -> None:
        if not self._guard.should_publish(mutation.context):
            return

        if not mutation.has_state:
            self._report(InvariantViolation("State completely removed; nothing to persist"))
            return
        state = mutation.state
        if not isinstance(state, Mapping):
            self._report(InvariantViolation(f"Root state must be a mapping, got {type(state).__name__}"))
            return

        origin = self._guard.instance_id
        stale: tuple[str, ...] = ()
        if mutation.path:
            head = mutation.path[0]
            merged = None if mutation.merged is None else {str(key): value for key, value in mutation.merged.items()}
            try:
                record = encode(origin, mutation.path, mutation.value, merged)
            except EncodeError as exc:
                self._report(exc)
                return
            current = state.get(head, ABSENT)
            if current is ABSENT:
                items: dict[str, Any] = {STATE_UPDATE_KEY: record}
                stale = (str(head),)
            else:
                items = {str(head): copy.deepcopy(current), STATE_UPDATE_KEY: record}
        else:
            items = {str(key): copy.deepcopy(value) for key, value in state.items()}
            items[STATE_UPDATE_KEY] = encode(origin, ())

        _logger.debug(
            "Publishing path=%s keys=%s value=%s",
            list(mutation.path),
            list(items),
            shorten_for_log(mutation.value),
        )
        self._spawn(self._write(items, stale))

    async def drain(self) -> None:
        """Wait until every scheduled write has completed."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = self._loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, items: dict[str, Any], stale: tuple[str, ...]) -> None:
        # Writes land in mutation order; a delete and its removal are one unit.
        async with self._write_lock:
            try:
                await guarded("set", list(items), self._area.set(items))
                if stale:
                    await guarded("remove", stale, self._area.remove(list(stale)))
            except StoreError as exc:
                self._report(exc)
