"""Update records exchanged through the shared store."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, TypeAlias

from pydantic import BaseModel, ConfigDict, Field, StrictStr

from treesync.models._base import Path, PathSegment


class StateUpdate(BaseModel):
    """One tree mutation, as published by the instance that made it.

    ``value`` and ``merged`` are optional; whether they were given is
    tracked through ``model_fields_set`` so that an omitted ``value`` is not
    confused with ``None``. The originating instance is serialized under the
    ``"from"`` key.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )

    origin: StrictStr = Field(..., alias="from")
    path: tuple[PathSegment, ...]
    value: Any = None
    merged: dict[str, Any] | None = None

    @property
    def has_value(self) -> bool:
        return "value" in self.model_fields_set

    @property
    def has_merged(self) -> bool:
        """``True`` when a non-empty merge descriptor is attached."""
        return bool(self.merged)


@dataclass(frozen=True, slots=True)
class FullReplace:
    """Root mutation; receivers rebuild it from the raw changed keys."""

    origin: str


@dataclass(frozen=True, slots=True)
class SubtreeMerge:
    """Merge of ``merged`` into the subtree at ``path``."""

    origin: str
    path: Path
    merged: Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class SubtreeSet:
    """Replacement (or deletion, with ``ABSENT``) of the value at ``path``."""

    origin: str
    path: Path
    value: Any


UpdateShape: TypeAlias = FullReplace | SubtreeMerge | SubtreeSet
