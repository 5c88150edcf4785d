"""Custom exception hierarchy for treesync."""

from __future__ import annotations

from collections.abc import Sequence


class TreeSyncError(Exception):
    """Base exception for all treesync errors."""


class TreeSyncConfigError(TreeSyncError):
    """Invalid or missing configuration."""


class TreeSyncStateError(TreeSyncError):
    """Engine used outside of its lifecycle (attach twice, attach after detach)."""


class DecodeError(TreeSyncError):
    """A change-feed payload is not a well-formed update record.

    The update is dropped and no local mutation is applied.
    """


class StoreError(TreeSyncError):
    """A fetch, write or removal against the shared store failed.

    Store errors are reported, never retried.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str = "",
        keys: Sequence[str] = (),
    ) -> None:
        self.operation = operation
        self.keys = tuple(keys)
        super().__init__(message)


class InvariantViolation(TreeSyncError):
    """The local tree lost all of its value during a mutation.

    There is no recovery value to persist, so nothing is written.
    """


class TreePathError(TreeSyncError, LookupError):
    """A path does not address a value the tree can read or write."""


class EncodeError(TreeSyncError, ValueError):
    """A local mutation cannot be written as an update record.

    Raised for values JSON cannot represent. Nothing is written.
    """
