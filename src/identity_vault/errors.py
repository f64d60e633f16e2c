"""Exception taxonomy for the storage engine, persistence layer and offline queue."""

from __future__ import annotations


class VaultError(Exception):
    """Base class for all identity vault errors."""


class StorageUnavailableError(VaultError):
    """The primary storage mechanism could not be opened.

    Raised inside backend initialisation only; the engine catches it and
    switches to the fallback store.
    """


class StorageWriteError(VaultError):
    """The underlying store rejected a write (quota, constraint, I/O, aborted transaction)."""

    def __init__(self, partition: str, item_id: str | None, message: str) -> None:
        target = f"{partition}/{item_id}" if item_id is not None else partition
        super().__init__(f"write to {target} failed: {message}")
        self.partition = partition
        self.item_id = item_id


class StorageReadError(VaultError):
    """The primary store failed to serve a read."""

    def __init__(self, partition: str, message: str) -> None:
        super().__init__(f"read from {partition} failed: {message}")
        self.partition = partition


class NotFoundError(VaultError):
    """An update targeted an id that does not exist in the partition."""

    def __init__(self, partition: str, item_id: str) -> None:
        super().__init__(f"{partition} item {item_id!r} not found")
        self.partition = partition
        self.item_id = item_id


class DispatchError(VaultError):
    """A queued mutation could not be delivered to the remote service."""


class UnknownPartitionError(VaultError, ValueError):
    """The partition name is not part of the fixed schema."""

    def __init__(self, partition: str) -> None:
        super().__init__(f"unknown partition {partition!r}")
        self.partition = partition


class UnknownIndexError(VaultError, ValueError):
    """The index is not declared for the partition."""

    def __init__(self, partition: str, index_name: str) -> None:
        super().__init__(f"partition {partition!r} has no index {index_name!r}")
        self.partition = partition
        self.index_name = index_name


class ImportFormatError(VaultError, ValueError):
    """An export document could not be parsed for import."""
