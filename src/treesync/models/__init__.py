"""Data models exchanged by the sync engine."""

from treesync.models._base import ABSENT, AbsentType, Path, PathSegment, is_absent
from treesync.models.changes import StorageChange
from treesync.models.context import BatchContext, SyncSource
from treesync.models.update import (
    FullReplace,
    StateUpdate,
    SubtreeMerge,
    SubtreeSet,
    UpdateShape,
)

__all__ = [
    "ABSENT",
    "AbsentType",
    "BatchContext",
    "FullReplace",
    "Path",
    "PathSegment",
    "StateUpdate",
    "StorageChange",
    "SubtreeMerge",
    "SubtreeSet",
    "SyncSource",
    "UpdateShape",
    "is_absent",
]
