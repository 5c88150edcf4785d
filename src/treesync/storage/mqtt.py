"""Shared store over an MQTT broker.

Layout of one area under ``<prefix>/<area>``:

- ``keys/<key>``: retained JSON value of each stored key. An empty
  retained payload clears the key.
- ``changes``: one non-retained change-set message per ``set`` or
  ``remove`` call, listing every key the call touched.

Each area keeps a local cache. Retained key messages fill it while the
area starts; afterwards only change-set messages update it, and each of
them becomes a single change notification, so the update record and the
raw values it refers to always arrive together. A writer receives its own
change sets back like every other subscriber.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any, cast

import paho.mqtt.client as mqtt
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from treesync.config import MqttStoreConfig
from treesync.exceptions import StoreError
from treesync.storage.base import ListenerRegistry, apply_changes, compute_changes

_logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], mqtt.Client]


class ChangeSet(BaseModel):
    """Payload of a ``changes`` message."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    updated: dict[str, Any] = Field(default_factory=dict)
    removed: list[str] = Field(default_factory=list)


def _default_client_factory(client_id: str) -> mqtt.Client:
    return mqtt.Client(
        callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
        client_id=client_id,
        protocol=mqtt.MQTTv5,
    )


def _check_key(key: str, operation: str) -> None:
    if not key or any(ch in key for ch in "/+#"):
        raise StoreError(f"Key {key!r} cannot be used as an MQTT topic level", operation=operation, keys=[key])


class MqttStorageArea(ListenerRegistry):
    """One storage area backed by retained MQTT topics.

    The paho network loop runs in its own thread; every inbound message is
    handed to the asyncio loop with ``call_soon_threadsafe`` before it
    touches the cache or the listeners.
    """

    def __init__(
        self,
        name: str,
        config: MqttStoreConfig,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        client_factory: ClientFactory | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__()
        self.name = name
        self._config = config
        self._loop = loop
        self._client_factory = client_factory or _default_client_factory
        self._logger = logger or _logger
        self._client: mqtt.Client | None = None
        self._running = False
        self._cache: dict[str, Any] = {}
        self._subscribed = asyncio.Event()
        self._ready = asyncio.Event()
        self._start_lock = asyncio.Lock()

        base = f"{config.topic_prefix}/{name}"
        self._keys_prefix = f"{base}/keys/"
        self._changes_topic = f"{base}/changes"

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect, subscribe and wait for retained values to settle."""
        async with self._start_lock:
            if self._running:
                return
            loop = self._loop or asyncio.get_running_loop()
            self._loop = loop
            try:
                await loop.run_in_executor(None, self._start_client)
                await asyncio.wait_for(self._subscribed.wait(), self._config.publish_timeout)
            except (OSError, TimeoutError, ValueError) as exc:
                await loop.run_in_executor(None, self.stop)
                raise StoreError(
                    f"MQTT area {self.name!r} failed to start: {exc!r}",
                    operation="start",
                ) from exc
            await asyncio.sleep(self._config.settle_seconds)
            self._ready.set()
            self._logger.debug("MQTT area %s ready with %d cached keys", self.name, len(self._cache))

    def _start_client(self) -> None:
        config = self._config
        client_id = f"{config.client_id}-{self.name}" if config.client_id else ""
        self._logger.debug(
            "MQTT area start requested host=%s port=%s prefix=%s client_id=%s",
            config.host,
            config.port,
            self._keys_prefix,
            client_id,
        )

        client = self._client_factory(client_id)
        client.enable_logger(self._logger)
        if config.username is not None:
            client.username_pw_set(config.username, config.password)
        if config.tls:
            client.tls_set()

        client.on_connect = self._on_connect
        client.on_subscribe = self._on_subscribe
        client.on_message = self._on_message
        client.on_disconnect = self._on_disconnect

        client.connect(config.host, config.port, keepalive=config.keepalive)
        client.loop_start()

        self._client = client
        self._running = True
        self._logger.debug("MQTT network loop started")

    def stop(self) -> None:
        """Stop and disconnect the MQTT client if running."""
        client = self._client
        self._client = None
        was_running = self._running
        self._running = False

        if client is None:
            return
        try:
            if was_running:
                self._logger.debug("MQTT disconnect requested")
                client.disconnect()
        finally:
            client.loop_stop()
            self._logger.debug("MQTT network loop stopped")

    async def close(self) -> None:
        loop = self._loop or asyncio.get_running_loop()
        await loop.run_in_executor(None, self.stop)

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------

    def _on_connect(
        self,
        c: mqtt.Client,
        _userdata: Any,
        _flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        if reason_code.value != 0:
            self._logger.warning("MQTT connect failed: %s", reason_code)
            return
        self._logger.debug("MQTT connected reason=%s", reason_code)
        c.subscribe([(f"{self._keys_prefix}+", self._config.qos), (self._changes_topic, self._config.qos)])

    def _on_subscribe(
        self,
        _c: mqtt.Client,
        _userdata: Any,
        _mid: int,
        _reason_codes: Any,
        _properties: Any,
    ) -> None:
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._subscribed.set)

    def _on_message(self, _c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._handle_message, msg.topic, bytes(msg.payload))

    def _on_disconnect(
        self,
        _client: mqtt.Client,
        _userdata: Any,
        _disconnect_flags: Any,
        reason_code: Any,
        _properties: Any,
    ) -> None:
        if self._running:
            self._logger.debug("MQTT disconnected: %s", reason_code)

    # ------------------------------------------------------------------
    # Inbound messages (event loop)
    # ------------------------------------------------------------------

    def _handle_message(self, topic: str, payload: bytes) -> None:
        if topic == self._changes_topic:
            try:
                change_set = ChangeSet.model_validate_json(payload)
            except ValidationError:
                self._logger.warning("Ignoring malformed change set on %s", topic, exc_info=True)
                return
            self._apply_change_set(change_set)
            return

        if not topic.startswith(self._keys_prefix) or self._ready.is_set():
            return
        key = topic[len(self._keys_prefix) :]
        if not payload:
            self._cache.pop(key, None)
            return
        try:
            self._cache[key] = json.loads(payload)
        except ValueError:
            self._logger.warning("Ignoring non-JSON retained value for %s", key)

    def _apply_change_set(self, change_set: ChangeSet) -> None:
        changes = compute_changes(self._cache, updated=change_set.updated, removed=change_set.removed)
        apply_changes(self._cache, changes)
        self._logger.debug("MQTT area %s change set changed=%s", self.name, list(changes))
        if changes:
            self.dispatch(changes)

    # ------------------------------------------------------------------
    # StorageArea API
    # ------------------------------------------------------------------

    async def get(self, keys: Sequence[str] | None = None) -> dict[str, Any]:
        await self.start()
        await self._ready.wait()
        if keys is None:
            return copy.deepcopy(self._cache)
        return {key: copy.deepcopy(self._cache[key]) for key in keys if key in self._cache}

    async def set(self, items: Mapping[str, Any]) -> None:
        if not items:
            return
        for key in items:
            _check_key(key, "set")
        try:
            payloads = {key: json.dumps(value) for key, value in items.items()}
            change_set = json.dumps({"updated": dict(items)})
        except (TypeError, ValueError) as exc:
            raise StoreError(f"Value is not JSON serializable: {exc}", operation="set", keys=list(items)) from exc

        await self.start()
        infos = [self._publish(f"{self._keys_prefix}{key}", payload, retain=True) for key, payload in payloads.items()]
        infos.append(self._publish(self._changes_topic, change_set, retain=False))
        await asyncio.gather(*(self._wait_published(info) for info in infos))

    async def remove(self, keys: Sequence[str]) -> None:
        if not keys:
            return
        for key in keys:
            _check_key(key, "remove")

        await self.start()
        infos = [self._publish(f"{self._keys_prefix}{key}", b"", retain=True) for key in keys]
        infos.append(self._publish(self._changes_topic, json.dumps({"removed": list(keys)}), retain=False))
        await asyncio.gather(*(self._wait_published(info) for info in infos))

    def _publish(self, topic: str, payload: str | bytes, *, retain: bool) -> mqtt.MQTTMessageInfo:
        client = self._client
        if client is None:
            raise StoreError(f"MQTT area {self.name!r} is not running", operation="publish")
        info = client.publish(topic, payload, qos=self._config.qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise StoreError(f"Publish to {topic} failed: {mqtt.error_string(info.rc)}", operation="publish")
        return info

    async def _wait_published(self, info: mqtt.MQTTMessageInfo) -> None:
        loop = self._loop or asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, info.wait_for_publish, self._config.publish_timeout)
        except (RuntimeError, ValueError) as exc:
            raise StoreError(f"Publish failed: {exc}", operation="publish") from exc
        if not info.is_published():
            raise StoreError("Publish not acknowledged in time", operation="publish")


class MqttStorage:
    """Collection of :class:`MqttStorageArea` objects sharing one configuration.

    Usage::

        async with MqttStorage(MqttStoreConfig(host="broker")) as storage:
            engine = SyncEngine(tree, storage, config)
    """

    def __init__(
        self,
        config: MqttStoreConfig,
        *,
        client_factory: ClientFactory | None = None,
    ) -> None:
        self._config = config
        self._client_factory = client_factory
        self._areas: dict[str, MqttStorageArea] = {}

    def area(self, name: str) -> MqttStorageArea:
        existing = self._areas.get(name)
        if existing is None:
            existing = MqttStorageArea(name, self._config, client_factory=self._client_factory)
            self._areas[name] = existing
        return existing

    async def close(self) -> None:
        for area in list(self._areas.values()):
            try:
                await area.close()
            except Exception:
                _logger.debug("MQTT area %s stop failed", area.name, exc_info=True)

    async def __aenter__(self) -> MqttStorage:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
