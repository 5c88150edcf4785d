"""Synchronization protocol: listener, publisher, bootstrap and engine."""

from treesync.sync.bootstrap import BootstrapCoordinator
from treesync.sync.engine import SyncEngine, SyncPhase
from treesync.sync.guard import LoopGuard
from treesync.sync.listener import ChangeListener
from treesync.sync.publisher import MutationPublisher

__all__ = [
    "BootstrapCoordinator",
    "ChangeListener",
    "LoopGuard",
    "MutationPublisher",
    "SyncEngine",
    "SyncPhase",
]
