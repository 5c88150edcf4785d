"""Internal constants shared across the library."""

#: Store key holding the encoded :class:`~treesync.models.StateUpdate`.
STATE_UPDATE_KEY = "__state_update"

#: Store key holding the persisted format version.
STATE_VERSION_KEY = "__state_version"

#: Wire token standing in for :data:`~treesync.models.ABSENT`.
ABSENT_TOKEN = "__NONE__"

RESERVED_KEYS: frozenset[str] = frozenset({STATE_UPDATE_KEY, STATE_VERSION_KEY})

DEFAULT_AREA = "local"
