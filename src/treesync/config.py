"""Engine and store configuration for treesync."""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Callable, Mapping
from typing import Any

from treesync._constants import DEFAULT_AREA, RESERVED_KEYS
from treesync.exceptions import TreeSyncConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _env_list(value: str | None) -> tuple[str, ...] | None:
    if value is None:
        return None
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclasses.dataclass(frozen=True)
class SyncConfig:
    """Sync engine configuration.

    Parameters
    ----------
    instance_id : str
        Identifier of this instance. Must be unique among all instances
        sharing one storage area; it tags every published update.
    initial_state : Mapping[str, Any]
        Default tree value. Its keys are the top-level state keys.
    area_name : str
        Storage area to synchronize through (e.g. ``"local"``).
    is_leader : bool
        Whether this instance seeds the store and cleans stale keys.
        Exactly one instance per store should be the leader.
    stored_version : int or None
        Version tag written when seeding a virgin store. Required for
        leaders, ignored otherwise.
    persisted_keys : tuple[str, ...]
        Top-level keys the leader keeps across sessions. Ignored for
        followers, which load every top-level key.
    on_error : callable or None
        Receives every runtime error (decode, store, invariant). Defaults to
        logging the error.
    """

    instance_id: str
    initial_state: Mapping[str, Any]
    area_name: str = DEFAULT_AREA
    is_leader: bool = False
    stored_version: int | None = None
    persisted_keys: tuple[str, ...] = ()
    on_error: Callable[[BaseException], None] | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.instance_id, str) or not self.instance_id.strip():
            raise TreeSyncConfigError("instance_id must be a non-empty string")
        if not isinstance(self.initial_state, Mapping):
            raise TreeSyncConfigError("initial_state must be a mapping of top-level keys")
        collisions = RESERVED_KEYS.intersection(self.initial_state)
        if collisions:
            raise TreeSyncConfigError(f"initial_state uses reserved keys: {sorted(collisions)}")
        if not self.area_name:
            raise TreeSyncConfigError("area_name must be non-empty")
        # Accept any iterable of keys but store a tuple.
        object.__setattr__(self, "persisted_keys", tuple(self.persisted_keys))
        if self.is_leader:
            if self.stored_version is None or isinstance(self.stored_version, bool):
                raise TreeSyncConfigError("stored_version (int) is required for the leader")
            unknown = [key for key in self.persisted_keys if key not in self.initial_state]
            if unknown:
                raise TreeSyncConfigError(f"persisted_keys not present in initial_state: {unknown}")

    @property
    def state_keys(self) -> tuple[str, ...]:
        """Top-level keys of the state tree, in declaration order."""
        return tuple(self.initial_state)

    @property
    def keys_to_load(self) -> tuple[str, ...]:
        """Keys fetched at bootstrap: persisted keys for the leader, all keys otherwise."""
        return self.persisted_keys if self.is_leader else self.state_keys

    @property
    def keys_to_clear(self) -> tuple[str, ...]:
        """Stale keys the leader removes from a previously seeded store."""
        if not self.is_leader:
            return ()
        return tuple(key for key in self.state_keys if key not in self.persisted_keys)

    @classmethod
    def from_env(cls, **overrides: Any) -> SyncConfig:
        """Create configuration from environment variables.

        Reads ``TREESYNC_INSTANCE_ID``, ``TREESYNC_AREA``,
        ``TREESYNC_LEADER``, ``TREESYNC_STORED_VERSION`` and
        ``TREESYNC_PERSISTED_KEYS`` (comma separated). Explicit keyword
        arguments override environment values; ``initial_state`` must be
        passed explicitly.
        """
        env = os.environ
        config_kwargs: dict[str, Any] = {}

        instance_id = env.get("TREESYNC_INSTANCE_ID")
        if instance_id is not None:
            config_kwargs["instance_id"] = instance_id

        area = env.get("TREESYNC_AREA")
        if area is not None:
            config_kwargs["area_name"] = area

        if "is_leader" not in overrides:
            config_kwargs["is_leader"] = _env_bool(env.get("TREESYNC_LEADER"), False)

        version_env = env.get("TREESYNC_STORED_VERSION")
        if version_env is not None and "stored_version" not in overrides:
            try:
                config_kwargs["stored_version"] = int(version_env)
            except ValueError as exc:
                raise TreeSyncConfigError(f"TREESYNC_STORED_VERSION is not an integer: {version_env!r}") from exc

        persisted = _env_list(env.get("TREESYNC_PERSISTED_KEYS"))
        if persisted is not None:
            config_kwargs["persisted_keys"] = persisted

        config_kwargs.update(overrides)
        if "instance_id" not in config_kwargs:
            raise TreeSyncConfigError("instance_id missing (set TREESYNC_INSTANCE_ID or pass instance_id=)")
        if "initial_state" not in config_kwargs:
            raise TreeSyncConfigError("initial_state must be passed explicitly")

        return cls(**config_kwargs)


@dataclasses.dataclass(frozen=True)
class MqttStoreConfig:
    """Connection settings for :class:`~treesync.storage.mqtt.MqttStorage`.

    Parameters
    ----------
    host : str
        Broker host name.
    port : int
        Broker port.
    topic_prefix : str
        Root of every topic used by the store.
    client_id : str
        MQTT client id prefix; the area name is appended. Empty lets the
        broker assign one.
    username, password : str or None
        Broker credentials.
    tls : bool
        Connect with TLS using the system CA bundle.
    keepalive : int
        MQTT keepalive in seconds.
    qos : int
        QoS used for publishes and subscriptions.
    settle_seconds : float
        Retained messages have no end marker; reads wait this long after
        the subscription is acknowledged before serving the cache.
    publish_timeout : float
        Seconds to wait for a publish to be acknowledged.
    """

    host: str = "localhost"
    port: int = 1883
    topic_prefix: str = "treesync"
    client_id: str = ""
    username: str | None = None
    password: str | None = None
    tls: bool = False
    keepalive: int = 60
    qos: int = 1
    settle_seconds: float = 0.5
    publish_timeout: float = 10.0

    def __post_init__(self) -> None:
        if self.qos not in (0, 1, 2):
            raise TreeSyncConfigError(f"qos must be 0, 1 or 2, got {self.qos}")
        if not self.topic_prefix or any(ch in self.topic_prefix for ch in "+#"):
            raise TreeSyncConfigError(f"Invalid topic_prefix {self.topic_prefix!r}")

    @classmethod
    def from_env(cls, **overrides: Any) -> MqttStoreConfig:
        """Create configuration from ``TREESYNC_MQTT_*`` environment variables."""
        env = os.environ
        config_kwargs: dict[str, Any] = {}

        _ENV_CONFIG_MAP = {
            "TREESYNC_MQTT_HOST": "host",
            "TREESYNC_MQTT_TOPIC_PREFIX": "topic_prefix",
            "TREESYNC_MQTT_CLIENT_ID": "client_id",
            "TREESYNC_MQTT_USERNAME": "username",
            "TREESYNC_MQTT_PASSWORD": "password",
        }
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        port_env = env.get("TREESYNC_MQTT_PORT")
        if port_env is not None and "port" not in overrides:
            try:
                config_kwargs["port"] = int(port_env)
            except ValueError as exc:
                raise TreeSyncConfigError(f"TREESYNC_MQTT_PORT is not an integer: {port_env!r}") from exc

        if "tls" not in overrides:
            config_kwargs["tls"] = _env_bool(env.get("TREESYNC_MQTT_TLS"), False)

        settle_env = env.get("TREESYNC_MQTT_SETTLE_SECONDS")
        if settle_env is not None and "settle_seconds" not in overrides:
            try:
                config_kwargs["settle_seconds"] = float(settle_env)
            except ValueError as exc:
                raise TreeSyncConfigError(f"TREESYNC_MQTT_SETTLE_SECONDS is not a number: {settle_env!r}") from exc

        config_kwargs.update(overrides)
        return cls(**config_kwargs)
