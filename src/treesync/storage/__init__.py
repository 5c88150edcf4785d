"""Shared key-value stores with a change feed."""

from treesync.storage.base import ChangeCallback, Storage, StorageArea, compute_changes
from treesync.storage.memory import MemoryStorage, MemoryStorageArea
from treesync.storage.mqtt import MqttStorage, MqttStorageArea

__all__ = [
    "ChangeCallback",
    "MemoryStorage",
    "MemoryStorageArea",
    "MqttStorage",
    "MqttStorageArea",
    "Storage",
    "StorageArea",
    "compute_changes",
]
