"""Store call wrapper shared by the publisher and bootstrap."""

from __future__ import annotations

from collections.abc import Awaitable, Sequence
from typing import TypeVar

from treesync.exceptions import StoreError

T = TypeVar("T")


async def guarded(operation: str, keys: Sequence[str], call: Awaitable[T]) -> T:
    """Await *call*, turning any failure into :class:`StoreError`."""
    try:
        return await call
    except StoreError:
        raise
    except Exception as exc:
        raise StoreError(
            f"Store {operation} failed for {list(keys)!r}: {exc!r}",
            operation=operation,
            keys=keys,
        ) from exc
