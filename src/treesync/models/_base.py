"""Base types shared by the treesync models.

:data:`ABSENT` is the in-memory marker for an explicit deletion. It is
distinct from ``None`` (a legitimate JSON ``null`` value) and from a field
that was simply not mentioned. Only :mod:`treesync.codec` knows how it is
spelled on the wire.
"""

from __future__ import annotations

from typing import Any, Final, TypeAlias

from pydantic import StrictInt, StrictStr


class AbsentType:
    """Type of the :data:`ABSENT` singleton."""

    _instance: AbsentType | None = None

    def __new__(cls) -> AbsentType:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> AbsentType:
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> AbsentType:
        return self

    def __reduce__(self) -> str:
        return "ABSENT"


ABSENT: Final = AbsentType()
"""Explicit deletion marker."""


def is_absent(value: Any) -> bool:
    """Return ``True`` when *value* is the :data:`ABSENT` marker."""
    return value is ABSENT


PathSegment: TypeAlias = StrictStr | StrictInt
"""A dict key or a list index. Booleans are rejected."""

Path: TypeAlias = tuple[str | int, ...]
