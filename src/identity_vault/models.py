"""SQLModel table for stored envelopes plus the value types shared by the engine and queue."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from sqlalchemy import Column, Index
from sqlalchemy.types import JSON
from sqlmodel import Field, SQLModel


class StoredRecord(SQLModel, table=True):
    """Row form of a stored envelope; one table holds every partition."""

    __tablename__ = "stored_items"
    __table_args__ = (
        Index("idx_stored_items_partition_timestamp", "partition", "timestamp"),
        Index("idx_stored_items_expires_at", "expires_at"),
    )

    partition: str = Field(primary_key=True, max_length=32)
    item_id: str = Field(primary_key=True, max_length=255)
    data: Any = Field(default=None, sa_column=Column(JSON, nullable=True))
    timestamp: int
    version: int = Field(default=1)
    ttl: Optional[int] = Field(default=None)
    # timestamp + ttl, NULL when the item never expires
    expires_at: Optional[int] = Field(default=None)


@dataclass(slots=True)
class StoredItem:
    """Envelope wrapped around every persisted payload."""

    id: str
    data: Any
    timestamp: int
    version: int = 1
    ttl: Optional[int] = None

    @property
    def expires_at(self) -> Optional[int]:
        if not self.ttl:
            return None
        return self.timestamp + self.ttl

    def is_expired(self, now: int) -> bool:
        expires_at = self.expires_at
        return expires_at is not None and now > expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "data": self.data,
            "timestamp": self.timestamp,
            "version": self.version,
            "ttl": self.ttl,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "StoredItem":
        return cls(
            id=str(raw["id"]),
            data=raw.get("data"),
            timestamp=int(raw["timestamp"]),
            version=int(raw.get("version") or 1),
            ttl=raw.get("ttl"),
        )

    @classmethod
    def from_record(cls, record: StoredRecord) -> "StoredItem":
        return cls(
            id=record.item_id,
            data=record.data,
            timestamp=record.timestamp,
            version=record.version,
            ttl=record.ttl,
        )


class MutationType(str, Enum):
    """Remote-side effect a queue item replays."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SHARE = "share"
    VERIFY = "verify"


class ResourceKind(str, Enum):
    """Resource a queue item targets."""

    CREDENTIAL = "credential"
    HANDSHAKE = "handshake"
    PROFILE = "profile"


@dataclass(slots=True)
class QueueItem:
    """A pending remote mutation awaiting successful dispatch."""

    id: str
    type: MutationType
    resource: ResourceKind
    data: Any
    timestamp: int
    retry_count: int = 0
    last_error: Optional[str] = None

    def is_failed(self, max_retries: int) -> bool:
        return self.retry_count >= max_retries

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "resource": self.resource.value,
            "data": self.data,
            "timestamp": self.timestamp,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "QueueItem":
        return cls(
            id=str(raw["id"]),
            type=MutationType(raw["type"]),
            resource=ResourceKind(raw["resource"]),
            data=raw.get("data"),
            timestamp=int(raw["timestamp"]),
            retry_count=int(raw.get("retry_count") or 0),
            last_error=raw.get("last_error"),
        )


@dataclass(slots=True)
class QueueState:
    """Mutable queue state owned by exactly one OfflineMutationQueue.

    Only ``items`` and ``last_sync`` are durable; the flags are re-derived at start.
    """

    items: list[QueueItem] = field(default_factory=list)
    last_sync: Optional[int] = None
    is_online: bool = False
    is_processing: bool = False

    def find(self, item_id: str) -> Optional[QueueItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def failed_count(self, max_retries: int) -> int:
        return sum(1 for item in self.items if item.is_failed(max_retries))

    def to_document(self) -> dict[str, Any]:
        return {"items": [item.to_dict() for item in self.items], "last_sync": self.last_sync}


@dataclass(slots=True, frozen=True)
class SyncStatus:
    """Snapshot of queue health for display."""

    is_online: bool
    last_sync: Optional[int]
    pending_items: int
    failed_items: int
    is_processing_queue: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class DrainResult:
    """Outcome of one process_queue() call."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: bool = False


@dataclass(slots=True, frozen=True)
class StorageStats:
    """Storage diagnostics across all partitions."""

    backend: str
    partitions: tuple[str, ...]
    total_items: int
    storage_size: int
    last_modified: int
    per_partition: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["partitions"] = list(self.partitions)
        return payload
