"""One-time load and reconcile sequence run when an engine attaches."""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable

from treesync._constants import STATE_VERSION_KEY
from treesync.config import SyncConfig
from treesync.exceptions import StoreError, TreePathError
from treesync.models import SyncSource
from treesync.state.tree import StateTree
from treesync.storage.base import StorageArea
from treesync.sync._store import guarded
from treesync.sync.guard import LoopGuard

_logger = logging.getLogger(__name__)


class BootstrapCoordinator:
    """Restore persisted state, or seed a virgin store.

    The version key tells both cases apart. On a seeded store every
    instance merges what it fetched and the leader removes the keys it
    does not persist. On a virgin store only the leader writes, seeding
    the default state and the version tag; followers keep their defaults.
    """

    def __init__(
        self,
        *,
        tree: StateTree,
        area: StorageArea,
        guard: LoopGuard,
        config: SyncConfig,
        report: Callable[[BaseException], None],
    ) -> None:
        self._tree = tree
        self._area = area
        self._guard = guard
        self._config = config
        self._report = report

    async def run(self) -> None:
        try:
            await self._run()
        except (StoreError, TreePathError) as exc:
            self._report(exc)

    async def _run(self) -> None:
        config = self._config
        keys = [*config.keys_to_load, STATE_VERSION_KEY]
        values = await guarded("get", keys, self._area.get(keys))

        if STATE_VERSION_KEY in values:
            # TODO: run schema migrations when the stored version differs from config.stored_version.
            restored = {key: value for key, value in values.items() if key != STATE_VERSION_KEY}
            _logger.debug(
                "Restoring %d keys (stored version %s) leader=%s",
                len(restored),
                values[STATE_VERSION_KEY],
                config.is_leader,
            )
            if restored:
                self._tree.batch(
                    lambda tree: tree.merge((), restored),
                    self._guard.tag(SyncSource.BOOTSTRAP),
                )
            stale = list(config.keys_to_clear)
            if stale:
                await guarded("remove", stale, self._area.remove(stale))
            return

        if config.is_leader:
            _logger.debug("Seeding virgin store with version %s", config.stored_version)
            seed = copy.deepcopy(dict(config.initial_state))
            seed[STATE_VERSION_KEY] = config.stored_version
            await guarded("set", list(seed), self._area.set(seed))
        else:
            _logger.debug("Store not seeded yet; keeping defaults")
