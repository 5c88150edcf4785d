"""treesync - Keep a state tree in sync across contexts through a shared key-value store."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("treesync")
except PackageNotFoundError:
    __version__ = "0+local"
from treesync.codec import classify, decode, encode, encode_update
from treesync.config import MqttStoreConfig, SyncConfig
from treesync.exceptions import (
    DecodeError,
    EncodeError,
    InvariantViolation,
    StoreError,
    TreePathError,
    TreeSyncConfigError,
    TreeSyncError,
    TreeSyncStateError,
)
from treesync.models import (
    ABSENT,
    BatchContext,
    FullReplace,
    StateUpdate,
    StorageChange,
    SubtreeMerge,
    SubtreeSet,
    SyncSource,
)
from treesync.state import Mutation, StateTree
from treesync.storage import MemoryStorage, MemoryStorageArea, MqttStorage, MqttStorageArea
from treesync.sync import SyncEngine, SyncPhase

__all__ = [
    "__version__",
    "ABSENT",
    "BatchContext",
    "DecodeError",
    "EncodeError",
    "FullReplace",
    "InvariantViolation",
    "MemoryStorage",
    "MemoryStorageArea",
    "MqttStorage",
    "MqttStorageArea",
    "MqttStoreConfig",
    "Mutation",
    "StateTree",
    "StateUpdate",
    "StorageChange",
    "StoreError",
    "SubtreeMerge",
    "SubtreeSet",
    "SyncConfig",
    "SyncEngine",
    "SyncPhase",
    "SyncSource",
    "TreePathError",
    "TreeSyncConfigError",
    "TreeSyncError",
    "TreeSyncStateError",
    "classify",
    "decode",
    "encode",
    "encode_update",
]
