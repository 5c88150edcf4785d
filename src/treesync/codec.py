"""Update codec.

Converts :class:`~treesync.models.StateUpdate` records to and from the JSON
text stored under the reserved update key. :data:`~treesync.models.ABSENT`
cannot be written as JSON, so it is swapped with a reserved string token on
the way out and swapped back on the way in, at any nesting depth.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import ValidationError

from treesync._constants import ABSENT_TOKEN
from treesync.exceptions import DecodeError, EncodeError
from treesync.models import (
    ABSENT,
    FullReplace,
    StateUpdate,
    SubtreeMerge,
    SubtreeSet,
    UpdateShape,
)

_OMITTED: Any = object()


def _to_wire(value: Any) -> Any:
    if value is ABSENT:
        return ABSENT_TOKEN
    if isinstance(value, Mapping):
        return {key: _to_wire(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_wire(item) for item in value]
    return value


def _from_wire(value: Any) -> Any:
    if value == ABSENT_TOKEN:
        return ABSENT
    if isinstance(value, dict):
        return {key: _from_wire(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_from_wire(item) for item in value]
    return value


def encode_update(update: StateUpdate) -> str:
    """Serialize *update* to its storage-safe text form."""
    payload: dict[str, Any] = {"from": update.origin, "path": list(update.path)}
    if update.has_value:
        payload["value"] = _to_wire(update.value)
    if update.merged is not None:
        payload["merged"] = _to_wire(update.merged)
    try:
        return json.dumps(payload, separators=(",", ":"))
    except (TypeError, ValueError) as exc:
        raise EncodeError(f"Update at path {list(update.path)!r} is not JSON serializable: {exc}") from exc


def encode(
    origin: str,
    path: Sequence[str | int],
    value: Any = _OMITTED,
    merged: Mapping[str, Any] | None = None,
) -> str:
    """Build and serialize an update record.

    ``value`` left out means "no value field"; pass :data:`ABSENT` to
    publish a deletion.
    """
    fields: dict[str, Any] = {"origin": origin, "path": tuple(path)}
    if value is not _OMITTED:
        fields["value"] = value
    if merged is not None:
        fields["merged"] = dict(merged)
    try:
        update = StateUpdate.model_validate(fields)
    except ValidationError as exc:
        raise EncodeError(f"Invalid update record: {exc}") from exc
    return encode_update(update)


def decode(text: Any) -> StateUpdate:
    """Parse an encoded update record.

    Raises :class:`~treesync.exceptions.DecodeError` when *text* is not a
    JSON object with a string ``from``/``origin`` and a list ``path``.
    """
    if not isinstance(text, (str, bytes, bytearray)):
        raise DecodeError(f"Update payload must be text, got {type(text).__name__}")
    try:
        raw = json.loads(text)
    except ValueError as exc:
        raise DecodeError(f"Update payload is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise DecodeError("Update payload is not a JSON object")

    revived = _from_wire(raw)
    try:
        return StateUpdate.model_validate(revived)
    except ValidationError as exc:
        raise DecodeError(f"Malformed update record: {exc}") from exc


def classify(update: StateUpdate) -> UpdateShape:
    """Return the shape of *update*.

    A non-empty merge descriptor wins; otherwise an empty path is a
    whole-tree change and a non-empty path must carry a value.
    """
    if update.has_merged:
        assert update.merged is not None  # noqa: S101
        return SubtreeMerge(origin=update.origin, path=update.path, merged=update.merged)
    if not update.path:
        return FullReplace(origin=update.origin)
    if update.has_value:
        return SubtreeSet(origin=update.origin, path=update.path, value=update.value)
    raise DecodeError(f"Update at path {list(update.path)!r} carries neither value nor merged")
