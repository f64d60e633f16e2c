"""Fixed partition layout and index declarations shared by every storage backend."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final, Mapping

from .errors import UnknownIndexError, UnknownPartitionError

CREDENTIALS: Final[str] = "credentials"
HANDSHAKE: Final[str] = "handshake"
PROFILE: Final[str] = "profile"
CACHE: Final[str] = "cache"
SYNC: Final[str] = "sync"

PARTITIONS: Final[tuple[str, ...]] = (CREDENTIALS, HANDSHAKE, PROFILE, CACHE, SYNC)

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(slots=True, frozen=True)
class IndexSpec:
    """Secondary index over a key path of the stored envelope.

    ``key_path`` is either ``timestamp`` (the envelope write time) or
    ``data.<field>`` (a top-level field of the payload).
    """

    name: str
    key_path: str
    unique: bool = False

    @property
    def payload_field(self) -> str | None:
        if not self.key_path.startswith("data."):
            return None
        return self.key_path.split(".", 1)[1]


INDEXES: Final[Mapping[str, tuple[IndexSpec, ...]]] = {
    CREDENTIALS: (
        IndexSpec("type", "data.type"),
        IndexSpec("status", "data.status"),
        IndexSpec("issuer", "data.issuer"),
        IndexSpec("timestamp", "timestamp"),
    ),
    HANDSHAKE: (
        IndexSpec("status", "data.status"),
        IndexSpec("requester", "data.requester"),
        IndexSpec("timestamp", "timestamp"),
    ),
    PROFILE: (),
    CACHE: (
        IndexSpec("key", "data.key", unique=True),
        IndexSpec("expires", "data.expires"),
    ),
    SYNC: (),
}

for _specs in INDEXES.values():
    for _spec in _specs:
        _field_name = _spec.payload_field
        if _field_name is not None and not _FIELD_RE.fullmatch(_field_name):
            raise RuntimeError(f"invalid index field {_field_name!r}")


def check_partition(partition: str) -> str:
    if partition not in PARTITIONS:
        raise UnknownPartitionError(partition)
    return partition


def get_index(partition: str, index_name: str) -> IndexSpec:
    check_partition(partition)
    for spec in INDEXES[partition]:
        if spec.name == index_name:
            return spec
    raise UnknownIndexError(partition, index_name)
