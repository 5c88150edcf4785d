"""Change-feed entries emitted by storage areas."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class StorageChange(BaseModel):
    """Old and new value of one key after a store write.

    Serialized with camelCase keys (``oldValue`` / ``newValue``). A missing
    ``new_value`` means the key was removed; a missing ``old_value`` means
    it did not exist before.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    old_value: Any = None
    new_value: Any = None

    @property
    def has_old_value(self) -> bool:
        return "old_value" in self.model_fields_set

    @property
    def has_new_value(self) -> bool:
        return "new_value" in self.model_fields_set
