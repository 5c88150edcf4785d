"""Helpers for compact debug logging.

State trees and update records can be arbitrarily large. This module
shortens them before they are emitted in DEBUG logs.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from treesync.models import ABSENT


def shorten_for_log(
    value: Any,
    *,
    max_string: int = 256,
    max_items: int = 20,
    _depth: int = 0,
) -> Any:
    """Return a shortened copy of *value* suitable for debug logs."""
    if _depth > 8:
        return "<max-depth>"

    if value is None or value is ABSENT:
        return value

    if isinstance(value, str):
        if len(value) > max_string:
            return f"{value[:max_string]}…<truncated>"
        return value

    if isinstance(value, (int, float, bool)):
        return value

    if isinstance(value, bytes):
        return f"<bytes:{len(value)}b>"

    if isinstance(value, Mapping):
        shortened: dict[str, Any] = {}
        for index, (k, v) in enumerate(value.items()):
            if index >= max_items:
                shortened["…"] = f"<{len(value) - max_items} more>"
                break
            shortened[str(k)] = shorten_for_log(v, max_string=max_string, max_items=max_items, _depth=_depth + 1)
        return shortened

    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        items = [
            shorten_for_log(v, max_string=max_string, max_items=max_items, _depth=_depth + 1)
            for v in list(value)[:max_items]
        ]
        if len(value) > max_items:
            items.append(f"<{len(value) - max_items} more>")
        return items

    return repr(value)
