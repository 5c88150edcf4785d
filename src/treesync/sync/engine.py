"""Sync engine: one instance's attachment of a state tree to a shared store."""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from typing import Any

from treesync.config import SyncConfig
from treesync.exceptions import TreeSyncStateError
from treesync.state.tree import Mutation, StateTree
from treesync.storage.base import Storage, StorageArea
from treesync.sync.bootstrap import BootstrapCoordinator
from treesync.sync.guard import LoopGuard
from treesync.sync.listener import ChangeListener
from treesync.sync.publisher import MutationPublisher

_logger = logging.getLogger(__name__)


class SyncPhase(StrEnum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    SYNCED = "synced"
    DETACHED = "detached"


def _log_error(err: BaseException) -> None:
    _logger.error("treesync error: %s", err, exc_info=err)


class SyncEngine:
    """Keeps a :class:`~treesync.state.StateTree` in sync through a shared store.

    Usage::

        storage = MemoryStorage()
        tree = StateTree({"a": [], "b": {"c": 2}})
        config = SyncConfig(instance_id="popup", initial_state={"a": [], "b": {"c": 2}})

        async with SyncEngine(tree, storage, config) as engine:
            tree.set(("b", "c"), 3)
            await engine.drain()

    :meth:`attach` starts the bootstrap in the background and mutations
    are published right away, even before the bootstrap finished; await
    :meth:`wait_ready` first to avoid racing it.
    """

    def __init__(
        self,
        tree: StateTree,
        storage: Storage | StorageArea,
        config: SyncConfig,
    ) -> None:
        self._tree = tree
        self._config = config
        if isinstance(storage, Storage):
            self._area: StorageArea = storage.area(config.area_name)
        else:
            self._area = storage
        self._on_error = config.on_error or _log_error
        self._guard = LoopGuard(config.instance_id)
        self._listener = ChangeListener(
            tree=tree,
            guard=self._guard,
            state_keys=config.state_keys,
            report=self._report,
        )
        self._publisher: MutationPublisher | None = None
        self._bootstrap_task: asyncio.Task[None] | None = None
        self._ready = asyncio.Event()
        self._phase = SyncPhase.UNINITIALIZED

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def instance_id(self) -> str:
        return self._guard.instance_id

    @property
    def area(self) -> StorageArea:
        return self._area

    @property
    def guard(self) -> LoopGuard:
        return self._guard

    @property
    def listener(self) -> ChangeListener:
        return self._listener

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def attach(self) -> None:
        """Hook into the tree and the change feed, then start the bootstrap.

        Must be called from a running event loop.
        """
        if self._phase is not SyncPhase.UNINITIALIZED:
            raise TreeSyncStateError(f"Cannot attach an engine in phase {self._phase}")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            raise TreeSyncStateError("SyncEngine.attach() requires a running event loop") from exc

        self._publisher = MutationPublisher(
            area=self._area,
            guard=self._guard,
            report=self._report,
            loop=loop,
        )
        self._tree.attach(self)
        self._area.add_listener(self._listener)
        self._phase = SyncPhase.LOADING
        _logger.debug(
            "Engine %s attached area=%s leader=%s",
            self._config.instance_id,
            self._config.area_name,
            self._config.is_leader,
        )

        bootstrap = BootstrapCoordinator(
            tree=self._tree,
            area=self._area,
            guard=self._guard,
            config=self._config,
            report=self._report,
        )
        self._bootstrap_task = loop.create_task(self._run_bootstrap(bootstrap))

    async def _run_bootstrap(self, bootstrap: BootstrapCoordinator) -> None:
        await bootstrap.run()
        if self._phase is SyncPhase.LOADING:
            self._phase = SyncPhase.SYNCED
            _logger.debug("Engine %s synced", self._config.instance_id)
        self._ready.set()

    async def wait_ready(self) -> None:
        """Wait until the bootstrap has finished (or the engine was detached)."""
        if self._phase is SyncPhase.UNINITIALIZED:
            raise TreeSyncStateError("Engine is not attached")
        await self._ready.wait()

    async def drain(self) -> None:
        """Wait for the bootstrap and every pending store write."""
        if self._bootstrap_task is not None:
            await self._bootstrap_task
        if self._publisher is not None:
            await self._publisher.drain()

    async def detach(self) -> None:
        """Stop syncing; in-flight writes are awaited, not cancelled."""
        if self._phase is SyncPhase.UNINITIALIZED:
            self._phase = SyncPhase.DETACHED
            self._ready.set()
            return
        self._tree.detach(self)
        self._release()
        await self.drain()

    def _release(self) -> None:
        if self._phase is SyncPhase.DETACHED:
            return
        self._area.remove_listener(self._listener)
        self._phase = SyncPhase.DETACHED
        self._ready.set()
        _logger.debug("Engine %s detached", self._config.instance_id)

    async def __aenter__(self) -> SyncEngine:
        self.attach()
        await self.wait_ready()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.detach()

    # ------------------------------------------------------------------
    # Tree hooks
    # ------------------------------------------------------------------

    def on_set(self, mutation: Mutation) -> None:
        if self._publisher is not None and self._phase is not SyncPhase.DETACHED:
            self._publisher.on_set(mutation)

    def on_batch_start(self, context: Any) -> None:
        self._guard.begin(context)

    def on_batch_finish(self, context: Any) -> None:
        self._guard.end()

    def on_destroy(self) -> None:
        self._release()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _report(self, err: BaseException) -> None:
        try:
            self._on_error(err)
        except Exception:
            _logger.warning("on_error callback failed", exc_info=True)
