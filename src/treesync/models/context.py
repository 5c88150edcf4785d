"""Batch metadata threaded through local tree mutations."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class SyncSource(StrEnum):
    REMOTE = "remote"
    BOOTSTRAP = "bootstrap"


@dataclass(frozen=True, slots=True)
class BatchContext:
    """Marks a tree batch as applied by the sync engine itself.

    Mutations carrying one of these must not be published again: either
    they replay a remote update (``origin`` is the remote instance) or they
    restore values that were just loaded from the store.
    """

    origin: str
    source: SyncSource = SyncSource.REMOTE
